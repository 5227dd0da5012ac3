"""
平台状态 -> 内部统一状态 映射。
映射表之外的状态一律归为 pending，每种未知取值只告警一次。
"""
import threading

from loguru import logger

from ordersync.schemas.orders import CanonicalStatus

STATUS_MAP: dict[str, CanonicalStatus] = {
    "pending": CanonicalStatus.PENDING,
    "on-hold": CanonicalStatus.PENDING,
    "checkout-draft": CanonicalStatus.PENDING,
    "processing": CanonicalStatus.PROCESSING,
    "shipped": CanonicalStatus.SHIPPED,
    "completed": CanonicalStatus.COMPLETED,
    "delivered": CanonicalStatus.COMPLETED,
    "cancelled": CanonicalStatus.CANCELLED,
    "canceled": CanonicalStatus.CANCELLED,
    "refunded": CanonicalStatus.REFUNDED,
    "failed": CanonicalStatus.FAILED,
}


class StatusNormalizer:
    def __init__(self, mapping: dict[str, CanonicalStatus] | None = None):
        self.mapping = dict(mapping or STATUS_MAP)
        self._unknown_seen: set[str] = set()
        self._lock = threading.Lock()

    def normalize(self, remote_status) -> CanonicalStatus:
        key = str(remote_status or "").strip().lower()
        if key.startswith("wc-"):
            key = key[3:]
        status = self.mapping.get(key)
        if status is not None:
            return status
        # 支付网关自带的取消状态，如 tamara-o-canceled
        if "cancel" in key:
            return CanonicalStatus.CANCELLED
        self._warn_unknown(key)
        return CanonicalStatus.PENDING

    def _warn_unknown(self, key: str) -> None:
        with self._lock:
            if key in self._unknown_seen:
                return
            self._unknown_seen.add(key)
        logger.warning(f"未知的平台订单状态 {key!r}，按 pending 处理")


_default = StatusNormalizer()


def normalize(remote_status) -> CanonicalStatus:
    """模块级入口，共用一个去重告警集合"""
    return _default.normalize(remote_status)


# 内部状态 -> 推送给平台的状态；pending 由多个平台状态合并而来，不回写
PLATFORM_STATUS_MAP: dict[CanonicalStatus, str] = {
    CanonicalStatus.PROCESSING: "processing",
    CanonicalStatus.SHIPPED: "completed",
    CanonicalStatus.COMPLETED: "completed",
    CanonicalStatus.CANCELLED: "cancelled",
    CanonicalStatus.REFUNDED: "refunded",
    CanonicalStatus.FAILED: "failed",
}


def to_platform_status(status: CanonicalStatus) -> str | None:
    """
    内部状态转平台状态。平台没有 shipped，按 completed 推送；
    pending 返回 None（可能对应平台的 pending / on-hold / checkout-draft，回写会改掉平台原状态）。
    """
    return PLATFORM_STATUS_MAP.get(status)
