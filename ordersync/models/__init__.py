"""
数据库相关操作统一放在 models 目录。
"""
from ordersync.models.connection import create_pool, get_connection
from ordersync.models.orders import (
    OrderStore,
    PostgresOrderStore,
    get_order_by_external_id,
    insert_order,
    list_pending_outbound_orders,
    update_order_fields,
)

__all__ = [
    "create_pool",
    "get_connection",
    "OrderStore",
    "PostgresOrderStore",
    "get_order_by_external_id",
    "insert_order",
    "list_pending_outbound_orders",
    "update_order_fields",
]
