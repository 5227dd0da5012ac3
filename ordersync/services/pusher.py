"""
出站推送：把本地未同步 / 推送失败的订单推到远端平台。
"""
from typing import Any, Optional

from loguru import logger

from ordersync.core.config import Settings, get_settings
from ordersync.core.errors import AuthError, OrderSyncError, StorageError, StorageUnavailableError
from ordersync.models.orders import OrderStore
from ordersync.schemas.orders import BillingPatch, OrderPatch, OrderRecord, RemoteOrder
from ordersync.schemas.sync import PushResult, RecordError
from ordersync.services.gateway import RemoteOrderGateway
from ordersync.services.status import to_platform_status
from ordersync.sync_utils import is_valid_email, utcnow


def contact_email(record: OrderRecord, fallback: str) -> str:
    """平台拒收格式不对的邮箱，不合法时用配置的备用地址"""
    email = (record.customer.email or "").strip()
    return email if is_valid_email(email) else fallback


def build_billing(record: OrderRecord, fallback_email: str) -> BillingPatch:
    customer = record.customer
    address = record.billing_address
    return BillingPatch(
        first_name=customer.first_name,
        last_name=customer.last_name,
        address_1=address.address_1,
        address_2=address.address_2,
        city=address.city,
        state=address.state,
        postcode=address.postcode,
        country=address.country,
        email=contact_email(record, fallback_email),
        phone=customer.phone,
    )


def build_patch(record: OrderRecord, fallback_email: str) -> OrderPatch:
    return OrderPatch(
        status=to_platform_status(record.status),
        total=f"{record.amounts.total:.2f}",
        billing=build_billing(record, fallback_email),
    )


def build_new_order_payload(record: OrderRecord, fallback_email: str) -> dict[str, Any]:
    """本地新建订单 -> POST /orders 请求体"""
    billing = build_billing(record, fallback_email).model_dump()
    shipping = {k: v for k, v in billing.items() if k != "email"}
    payload: dict[str, Any] = {
        "payment_method_title": record.payment_method,
        "set_paid": False,
        "status": to_platform_status(record.status) or "pending",
        "billing": billing,
        "shipping": shipping,
        "line_items": [
            {"product_id": item.product_id, "quantity": item.quantity}
            for item in record.line_items
            if item.product_id is not None
        ],
        "meta_data": [{"key": "_internal_order_id", "value": str(record.id)}],
    }
    if record.amounts.shipping_amount > 0:
        payload["shipping_lines"] = [{
            "method_id": "flat_rate",
            "method_title": "Standard Shipping",
            "total": f"{record.amounts.shipping_amount:.2f}",
        }]
    return payload


class OutboundPusher:
    """出站推送"""

    def __init__(
        self,
        gateway: RemoteOrderGateway,
        store: OrderStore,
        settings: Settings | None = None,
        export_new_orders: Optional[bool] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.store = store
        self.fallback_email = self.settings.FALLBACK_CONTACT_EMAIL
        self.export_new_orders = (
            self.settings.EXPORT_NEW_ORDERS if export_new_orders is None else export_new_orders
        )

    async def push_pending(self) -> PushResult:
        """
        推送所有待同步订单。
        成功: is_synced_to_remote=True，清空 sync_error；失败: 记录 sync_error，标记不变，下一轮重试。
        external_id 为空的订单默认跳过（需先走导出新订单流程），EXPORT_NEW_ORDERS 开启时直接在远端创建。
        AuthError / 数据库不可用会在记录后向上抛出。
        """
        result = PushResult()
        records = await self.store.list_pending_outbound_sync()
        logger.info(f"待推送订单 {len(records)} 条")

        for record in records:
            if record.external_id is None and not self.export_new_orders:
                result.skipped += 1
                logger.debug(f"跳过未导出的本地订单 id={record.id}")
                continue
            try:
                exported = await self._push_one(record)
            except OrderSyncError as e:
                result.failed += 1
                result.errors.append(RecordError(
                    external_id=record.external_id,
                    order_id=record.id,
                    stage="push",
                    kind=e.kind,
                    message=str(e),
                ))
                if isinstance(e, (AuthError, StorageUnavailableError)):
                    logger.error(f"❌ 出站推送中止: {e}")
                    raise
                continue
            except Exception as e:
                logger.exception(f"推送异常 id={record.id} external_id={record.external_id}")
                result.failed += 1
                result.errors.append(RecordError(
                    external_id=record.external_id,
                    order_id=record.id,
                    stage="push",
                    kind="unexpected",
                    message=f"{type(e).__name__}: {e}",
                ))
                continue
            if exported:
                result.exported += 1
            else:
                result.pushed += 1

        logger.info(
            f"出站推送完成: 推送 {result.pushed}，导出 {result.exported}，失败 {result.failed}，跳过 {result.skipped}"
        )
        return result

    async def _push_one(self, record: OrderRecord) -> bool:
        """推送单条；返回是否为新导出。推送失败时写入 sync_error 后重新抛出。"""
        email = contact_email(record, self.fallback_email)
        if email != (record.customer.email or "").strip():
            logger.info(f"订单 id={record.id} 邮箱不合法({record.customer.email!r})，使用备用地址 {email}")

        try:
            if record.external_id is None:
                remote = await self.gateway.create_order(build_new_order_payload(record, self.fallback_email))
            else:
                await self.gateway.push_order_update(record.external_id, build_patch(record, self.fallback_email))
                remote = None
        except OrderSyncError as e:
            logger.warning(f"推送失败 id={record.id} external_id={record.external_id}: {e}")
            await self.store.update_fields(record.id, {
                "sync_error": str(e),
                "last_sync_attempt": utcnow(),
            })
            raise

        external_id = record.external_id
        if remote is not None:
            # POST 不幂等：远端 ID 先单独落库，之后的写入失败只会导致下一轮走 PUT
            await self._save_remote_identity(record, remote)
            external_id = remote.id

        await self.store.update_fields(record.id, {
            "is_synced_to_remote": True,
            "sync_error": None,
            "last_sync_attempt": utcnow(),
        })
        logger.info(f"✅ 订单 id={record.id} 已同步到远端 external_id={external_id}")
        return record.external_id is None

    async def _save_remote_identity(self, record: OrderRecord, remote: RemoteOrder) -> None:
        """写入新建远端订单的 external_id / order_number，失败重试一次"""
        identity = {"external_id": remote.id, "order_number": f"#{remote.number or remote.id}"}
        try:
            await self.store.update_fields(record.id, identity)
            return
        except StorageError as e:
            logger.warning(f"写入远端订单号失败，重试 id={record.id} external_id={remote.id}: {e}")
        try:
            await self.store.update_fields(record.id, identity)
        except StorageError as e:
            logger.error(f"❌ 远端已创建订单 external_id={remote.id}，本地 id={record.id} 未能关联，需人工处理: {e}")
            raise
