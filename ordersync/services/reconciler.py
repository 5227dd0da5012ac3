"""
对账：比较一条远端订单与本地记录，决定 新建 / 更新 / 跳过。

纯函数，不做任何 I/O（日志除外）；写入由调用方根据返回的动作执行。
规则：
  1. 远端状态先归一化
  2. 本地没有 -> Create，字段一一映射，is_synced_to_remote=True
  3. 本地有 -> 远端更新更晚（或时间相同），或状态/总价直接不同，才比较字段；无差异 -> Skip
  4. 有差异 -> Update，仅包含变化的字段（状态与金额类、支付方式），updated_at=now
  5. external_id / order_number / 行项目 创建后不再由导入修改
时间相同但字段不同时以远端为准（有 external_id 后远端是状态的权威来源）。
本地有未推送的修改且比远端新时，保留本地，交给出站推送。
"""
from datetime import datetime
from typing import Any, Optional

from loguru import logger

from ordersync.schemas.orders import (
    Amounts,
    BillingAddress,
    CanonicalStatus,
    Customer,
    LineItem,
    OrderRecord,
    RemoteOrder,
)
from ordersync.schemas.sync import Action, Create, Skip, Update
from ordersync.services.status import StatusNormalizer, normalize
from ordersync.sync_utils import amounts_differ, utcnow

AMOUNT_FIELDS = ("total", "subtotal", "shipping_amount", "discount_amount")

SKIP_UP_TO_DATE = "already up to date"
SKIP_LOCAL_PENDING = "local changes pending push"


def remote_to_record(remote: RemoteOrder, status: CanonicalStatus, now: datetime) -> OrderRecord:
    """远端订单 -> 新的本地记录（导入产生，视为已同步）"""
    billing = remote.billing
    return OrderRecord(
        external_id=remote.id,
        order_number=f"#{remote.number or remote.id}",
        customer=Customer(
            first_name=billing.first_name,
            last_name=billing.last_name,
            phone=billing.phone,
            email=billing.email or None,
        ),
        billing_address=BillingAddress(
            address_1=billing.address_1,
            address_2=billing.address_2,
            city=billing.city,
            state=billing.state,
            country=billing.country,
            postcode=billing.postcode,
        ),
        line_items=[
            LineItem(
                product_id=item.product_id,
                name=item.name,
                quantity=item.quantity,
                unit_price=item.price,
                sku=item.sku,
            )
            for item in remote.line_items
        ],
        amounts=Amounts(
            subtotal=remote.subtotal,
            shipping_amount=remote.shipping_total,
            discount_amount=remote.discount_total,
            total=remote.total,
        ),
        status=status,
        payment_method=remote.payment_method_title,
        created_at=remote.date_created or now,
        updated_at=remote.date_modified or now,
        is_synced_to_remote=True,
        last_sync_attempt=now,
        sync_error=None,
    )


def _remote_values(remote: RemoteOrder, status: CanonicalStatus) -> dict[str, Any]:
    return {
        "status": status,
        "total": remote.total,
        "subtotal": remote.subtotal,
        "shipping_amount": remote.shipping_total,
        "discount_amount": remote.discount_total,
        "payment_method": remote.payment_method_title,
    }


def _local_values(local: OrderRecord) -> dict[str, Any]:
    amounts = local.amounts
    return {
        "status": local.status,
        "total": amounts.total,
        "subtotal": amounts.subtotal,
        "shipping_amount": amounts.shipping_amount,
        "discount_amount": amounts.discount_amount,
        "payment_method": local.payment_method,
    }


def diff_fields(remote_values: dict[str, Any], local: OrderRecord) -> dict[str, Any]:
    """返回远端与本地不同的字段（取远端值）；金额按 0.01 容差比较。"""
    local_values = _local_values(local)
    changes: dict[str, Any] = {}
    for name, value in remote_values.items():
        if name in AMOUNT_FIELDS:
            if amounts_differ(value, local_values[name]):
                changes[name] = value
        elif value != local_values[name]:
            changes[name] = value
    return changes


def _check_amounts(amounts: Amounts, external_id: Optional[int]) -> None:
    """金额不自洽只记日志，不修正"""
    if not amounts.is_consistent():
        logger.warning(
            f"订单金额不一致 external_id={external_id}: total={amounts.total} "
            f"subtotal={amounts.subtotal} shipping={amounts.shipping_amount} discount={amounts.discount_amount}"
        )


class Reconciler:
    """对账决策"""

    def __init__(self, normalizer: StatusNormalizer | None = None):
        self._normalize = normalizer.normalize if normalizer is not None else normalize

    def reconcile(
        self,
        remote: RemoteOrder,
        local: OrderRecord | None,
        now: datetime | None = None,
    ) -> Action:
        now = now or utcnow()
        status = self._normalize(remote.status)

        if local is None:
            record = remote_to_record(remote, status, now)
            _check_amounts(record.amounts, remote.id)
            return Create(record)

        remote_values = _remote_values(remote, status)
        status_or_total_differ = (
            local.status != status or amounts_differ(local.amounts.total, remote.total)
        )
        remote_ts = remote.date_modified
        local_ts = local.updated_at
        remote_newer = remote_ts is not None and (local_ts is None or remote_ts > local_ts)
        same_instant = remote_ts is not None and local_ts is not None and remote_ts == local_ts
        local_newer = remote_ts is not None and local_ts is not None and local_ts > remote_ts

        if local_newer and not local.is_synced_to_remote:
            if status_or_total_differ:
                logger.debug(
                    f"对账冲突 external_id={remote.id}: 本地有未推送修改且更新({local_ts} > {remote_ts})，保留本地"
                )
            return Skip(SKIP_LOCAL_PENDING, order_id=local.id)

        if not (remote_newer or same_instant or status_or_total_differ):
            return Skip(SKIP_UP_TO_DATE, order_id=local.id)

        changes = diff_fields(remote_values, local)
        if not changes:
            return Skip(SKIP_UP_TO_DATE, order_id=local.id)

        if not remote_newer:
            # 时间相同或本地更晚但状态/总价不同：以远端为准
            logger.debug(
                f"对账冲突 external_id={remote.id}: remote={remote_ts} local={local_ts}，"
                f"字段 {sorted(changes)} 以远端为准"
            )

        merged = local.amounts.model_copy(
            update={k: v for k, v in changes.items() if k in AMOUNT_FIELDS}
        )
        _check_amounts(merged, remote.id)
        return Update(order_id=local.id, changes=changes, updated_at=now)


_default = Reconciler()


def reconcile(remote: RemoteOrder, local: OrderRecord | None, now: datetime | None = None) -> Action:
    return _default.reconcile(remote, local, now)
