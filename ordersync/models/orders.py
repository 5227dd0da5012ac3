"""
orders 表相关数据库操作，以及同步引擎使用的本地订单存储。
"""
import asyncio
import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import asyncpg
from loguru import logger
from pydantic import BaseModel

from ordersync.core.errors import StorageError, StorageUnavailableError
from ordersync.schemas.orders import OrderRecord

JSON_COLUMNS = ("customer", "billing_address", "line_items")
AMOUNT_COLUMNS = ("subtotal", "shipping_amount", "discount_amount", "total")
# update_fields 允许写入的列
UPDATABLE_COLUMNS = frozenset({
    "external_id",
    "order_number",
    "customer",
    "billing_address",
    "status",
    "payment_method",
    "updated_at",
    "is_synced_to_remote",
    "last_sync_attempt",
    "sync_error",
    *AMOUNT_COLUMNS,
})

# 连接级错误视为数据库整体不可用
_UNAVAILABLE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
)

_SELECT_COLUMNS = """
    id, external_id, order_number, customer, billing_address, line_items,
    subtotal, shipping_amount, discount_amount, total, status, payment_method,
    created_at, updated_at, is_synced_to_remote, last_sync_attempt, sync_error
"""


def _to_db_value(column: str, value: Any) -> Any:
    """将 Python 值转为 asyncpg 可写入的值（jsonb 以 JSON 串传入，金额转 Decimal）。"""
    if column in JSON_COLUMNS:
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json")
        elif isinstance(value, list):
            value = [v.model_dump(mode="json") if isinstance(v, BaseModel) else v for v in value]
        return json.dumps(value, ensure_ascii=False)
    if column in AMOUNT_COLUMNS:
        return Decimal(str(round(float(value or 0), 2)))
    if isinstance(value, Enum):
        return value.value
    return value


def _json_field(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def row_to_record(row: Any) -> OrderRecord:
    """asyncpg Record -> OrderRecord"""
    return OrderRecord(
        id=row["id"],
        external_id=row["external_id"],
        order_number=row["order_number"],
        customer=_json_field(row["customer"], {}),
        billing_address=_json_field(row["billing_address"], {}),
        line_items=_json_field(row["line_items"], []),
        amounts={col: float(row[col] or 0) for col in AMOUNT_COLUMNS},
        status=row["status"],
        payment_method=row["payment_method"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        is_synced_to_remote=row["is_synced_to_remote"],
        last_sync_attempt=row["last_sync_attempt"],
        sync_error=row["sync_error"],
    )


async def get_order_by_external_id(conn: Any, external_id: int) -> Any:
    """按 external_id 查询单条订单，返回 asyncpg Record 或 None。"""
    return await conn.fetchrow(
        f"SELECT {_SELECT_COLUMNS} FROM orders WHERE external_id = $1",
        external_id,
    )


async def insert_order(conn: Any, record: OrderRecord) -> Any:
    """插入一条订单，id 由数据库生成；返回插入后的行。"""
    amounts = record.amounts
    return await conn.fetchrow(
        f"""
        INSERT INTO orders (
            external_id, order_number, customer, billing_address, line_items,
            subtotal, shipping_amount, discount_amount, total,
            status, payment_method, created_at, updated_at,
            is_synced_to_remote, last_sync_attempt, sync_error
        ) VALUES (
            $1, $2, $3::jsonb, $4::jsonb, $5::jsonb, $6, $7, $8, $9,
            $10, $11, COALESCE($12, NOW()), COALESCE($13, NOW()), $14, $15, $16
        )
        RETURNING {_SELECT_COLUMNS}
        """,
        record.external_id,
        record.order_number,
        _to_db_value("customer", record.customer),
        _to_db_value("billing_address", record.billing_address),
        _to_db_value("line_items", record.line_items),
        _to_db_value("subtotal", amounts.subtotal),
        _to_db_value("shipping_amount", amounts.shipping_amount),
        _to_db_value("discount_amount", amounts.discount_amount),
        _to_db_value("total", amounts.total),
        record.status.value,
        record.payment_method,
        record.created_at,
        record.updated_at,
        record.is_synced_to_remote,
        record.last_sync_attempt,
        record.sync_error,
    )


async def update_order_fields(conn: Any, order_id: int, fields: dict[str, Any]) -> Any:
    """
    按 id 更新部分字段，返回更新后的行；订单不存在返回 None。
    fields 的键必须在 UPDATABLE_COLUMNS 内。
    """
    unknown = set(fields) - UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"不允许更新的字段: {sorted(unknown)}")
    if not fields:
        return await conn.fetchrow(f"SELECT {_SELECT_COLUMNS} FROM orders WHERE id = $1", order_id)

    assignments = []
    values: list[Any] = []
    for idx, (column, value) in enumerate(fields.items(), start=2):
        cast = "::jsonb" if column in JSON_COLUMNS else ""
        assignments.append(f"{column} = ${idx}{cast}")
        values.append(_to_db_value(column, value))
    return await conn.fetchrow(
        f"UPDATE orders SET {', '.join(assignments)} WHERE id = $1 RETURNING {_SELECT_COLUMNS}",
        order_id,
        *values,
    )


async def list_pending_outbound_orders(conn: Any, limit: int | None = None) -> list[Any]:
    """待推送订单：未同步，或上次推送失败。"""
    sql = f"""
        SELECT {_SELECT_COLUMNS}
        FROM orders
        WHERE is_synced_to_remote = FALSE OR sync_error IS NOT NULL
        ORDER BY updated_at, id
    """
    if limit is not None:
        return list(await conn.fetch(sql + " LIMIT $1", limit))
    return list(await conn.fetch(sql))


class OrderStore(ABC):
    """本地订单存储接口；每次写入均为单条记录事务。"""

    @abstractmethod
    async def find_by_external_id(self, external_id: int) -> OrderRecord | None:
        ...

    @abstractmethod
    async def insert(self, record: OrderRecord) -> OrderRecord:
        ...

    @abstractmethod
    async def update_fields(self, order_id: int, fields: dict[str, Any]) -> OrderRecord:
        ...

    @abstractmethod
    async def list_pending_outbound_sync(self) -> list[OrderRecord]:
        ...


class PostgresOrderStore(OrderStore):
    """基于 asyncpg 连接池的订单存储"""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    @asynccontextmanager
    async def _connection(self, action: str):
        """取连接并把数据库异常映射为 StorageError / StorageUnavailableError。"""
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except _UNAVAILABLE_ERRORS as e:
            logger.error(f"数据库不可用({action}): {e}")
            raise StorageUnavailableError(f"数据库不可用: {e}") from e
        except asyncpg.PostgresError as e:
            raise StorageError(f"{action} 失败: {e}") from e

    async def find_by_external_id(self, external_id: int) -> OrderRecord | None:
        async with self._connection("查询订单") as conn:
            row = await get_order_by_external_id(conn, external_id)
        return row_to_record(row) if row is not None else None

    async def insert(self, record: OrderRecord) -> OrderRecord:
        async with self._connection("插入订单") as conn:
            row = await insert_order(conn, record)
        return row_to_record(row)

    async def update_fields(self, order_id: int, fields: dict[str, Any]) -> OrderRecord:
        async with self._connection("更新订单") as conn:
            row = await update_order_fields(conn, order_id, fields)
        if row is None:
            raise StorageError(f"订单不存在: id={order_id}")
        return row_to_record(row)

    async def list_pending_outbound_sync(self) -> list[OrderRecord]:
        async with self._connection("查询待推送订单") as conn:
            rows = await list_pending_outbound_orders(conn)
        return [row_to_record(r) for r in rows]
