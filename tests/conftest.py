"""
测试公共夹具：内存订单存储、可编排的假网关、远端订单构造。
"""
import asyncio
import itertools
import os
from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Optional

import pytest
from loguru import logger

# ordersync.main 导入时读取配置
os.environ.setdefault("REMOTE_API_BASE_URL", "https://shop.test")

from ordersync.core.config import Settings
from ordersync.core.errors import StorageError, StorageUnavailableError, ValidationError
from ordersync.models.orders import AMOUNT_COLUMNS, UPDATABLE_COLUMNS, OrderStore
from ordersync.schemas.orders import OrderPatch, OrderRecord, RemoteOrder
from ordersync.services.gateway import OrderPage

T0 = datetime(2026, 3, 1, 8, 0, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(hours=2)


def remote_payload(external_id: int, status: str = "processing", total: str = "120.00", **overrides) -> dict:
    """WooCommerce 订单 JSON（字段与平台一致）"""
    payload = {
        "id": external_id,
        "number": str(external_id),
        "status": status,
        "currency": "SAR",
        "date_created_gmt": "2026-03-01T07:00:00",
        "date_modified_gmt": "2026-03-01T08:00:00",
        "total": total,
        "shipping_total": "20.00",
        "discount_total": "0.00",
        "total_tax": "0.00",
        "payment_method_title": "Cash on Delivery",
        "billing": {
            "first_name": "Sara",
            "last_name": "Ali",
            "address_1": "King Fahd Rd 1",
            "address_2": "",
            "city": "Riyadh",
            "state": "RD",
            "postcode": "12211",
            "country": "SA",
            "email": "sara@example.com",
            "phone": "0500000000",
        },
        "line_items": [
            {"product_id": 11, "name": "Perfume", "quantity": 2, "price": 50, "sku": "PF-11"},
        ],
    }
    payload.update(overrides)
    return payload


def make_remote(external_id: int, status: str = "processing", total: str = "120.00", **overrides) -> RemoteOrder:
    return RemoteOrder.from_payload(remote_payload(external_id, status, total, **overrides))


class InMemoryOrderStore(OrderStore):
    """内存版订单存储，行为与 PostgresOrderStore 一致（external_id 唯一）"""

    def __init__(self):
        self.records: dict[int, OrderRecord] = {}
        self._ids = itertools.count(1)
        self.fail_external_ids: set[int] = set()
        self.unavailable = False
        self.on_insert: Optional[Callable[[OrderRecord], None]] = None
        self.write_delay = 0.0
        # 接下来 N 次 update_fields 抛 StorageError
        self.fail_next_updates = 0

    def _check(self) -> None:
        if self.unavailable:
            raise StorageUnavailableError("数据库不可用: connection refused")

    async def find_by_external_id(self, external_id: int) -> OrderRecord | None:
        self._check()
        for record in self.records.values():
            if record.external_id == external_id:
                return record
        return None

    async def insert(self, record: OrderRecord) -> OrderRecord:
        self._check()
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        if record.external_id in self.fail_external_ids:
            raise StorageError(f"插入订单 失败: external_id={record.external_id}")
        if record.external_id is not None and any(
            r.external_id == record.external_id for r in self.records.values()
        ):
            raise StorageError(f"插入订单 失败: duplicate external_id={record.external_id}")
        stored = record.model_copy(update={"id": next(self._ids)})
        self.records[stored.id] = stored
        if self.on_insert is not None:
            self.on_insert(stored)
        return stored

    async def update_fields(self, order_id: int, fields: dict[str, Any]) -> OrderRecord:
        self._check()
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"不允许更新的字段: {sorted(unknown)}")
        if self.fail_next_updates > 0:
            self.fail_next_updates -= 1
            raise StorageError(f"更新订单 失败: id={order_id}")
        record = self.records.get(order_id)
        if record is None:
            raise StorageError(f"订单不存在: id={order_id}")
        if record.external_id in self.fail_external_ids:
            raise StorageError(f"更新订单 失败: external_id={record.external_id}")
        amounts = {k: v for k, v in fields.items() if k in AMOUNT_COLUMNS}
        others = {k: v for k, v in fields.items() if k not in AMOUNT_COLUMNS}
        updated = record.model_copy(update={**others, "amounts": record.amounts.model_copy(update=amounts)})
        self.records[order_id] = updated
        return updated

    async def list_pending_outbound_sync(self) -> list[OrderRecord]:
        self._check()
        return [r for r in self.records.values() if not r.is_synced_to_remote or r.sync_error is not None]

    def by_external_id(self, external_id: int) -> list[OrderRecord]:
        return [r for r in self.records.values() if r.external_id == external_id]


class FakeGateway:
    """
    假网关：pages[status] 为按页排列的订单列表，最后一页 has_more=False。
    errors[(status, page)] 指定抛出的异常；gate 不为空时 list_orders 先等待它。
    """

    def __init__(self, pages: dict[str, list[list[RemoteOrder]]] | None = None):
        self.pages = pages or {}
        self.errors: dict[tuple[str, int], Exception] = {}
        self.rejected: dict[tuple[str, int], list] = {}
        self.list_calls: list[tuple[str, Optional[datetime], Optional[datetime], int]] = []
        self.pushed: list[tuple[int, OrderPatch]] = []
        self.created: list[dict] = []
        self.push_errors: dict[int, Exception] = {}
        self.gate: Optional[asyncio.Event] = None
        self._new_ids = itertools.count(9001)

    async def list_orders(self, status, date_from=None, date_to=None, page=1, page_size=100) -> OrderPage:
        self.list_calls.append((status, date_from, date_to, page))
        if self.gate is not None:
            await self.gate.wait()
        error = self.errors.get((status, page))
        if error is not None:
            raise error
        pages = self.pages.get(status, [])
        orders = pages[page - 1] if page <= len(pages) else []
        return OrderPage(
            orders=list(orders),
            has_more=page < len(pages),
            rejected=self.rejected.get((status, page), []),
        )

    async def push_order_update(self, external_id: int, patch: OrderPatch) -> RemoteOrder:
        error = self.push_errors.get(external_id)
        if error is not None:
            raise error
        self.pushed.append((external_id, patch))
        return make_remote(external_id, status=patch.status, total=patch.total)

    async def create_order(self, payload: dict) -> RemoteOrder:
        if payload["billing"].get("email") == "reject@example.com":
            raise ValidationError("远端拒绝(400): invalid_email")
        self.created.append(payload)
        new_id = next(self._new_ids)
        return make_remote(new_id, status=payload.get("status", "processing"))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        REMOTE_API_BASE_URL="https://shop.test",
        REMOTE_CONSUMER_KEY="ck_test",
        REMOTE_CONSUMER_SECRET="cs_test",
        FALLBACK_CONTACT_EMAIL="fallback@shop.test",
        TRACKED_STATUSES=["processing", "completed"],
        SYNC_LOOKBACK_DAYS=0,
        SYNC_PAGE_DELAY_SECONDS=0,
        SYNC_WORKERS=4,
    )


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def log_messages():
    """收集 loguru 输出（WARNING 及以上）"""
    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="WARNING")
    yield messages
    logger.remove(handler_id)
