"""
同步引擎错误分类。

- TransportError: 网络/超时/限流，下一轮再试，本轮不重试
- AuthError: 凭证被拒，整轮失败
- ValidationError: 平台拒收单条数据，记到该订单 sync_error，继续
- StorageError: 本地写入失败，单条计错，继续
- StorageUnavailableError: 数据库整体不可用，整轮失败
"""
from typing import Optional


class OrderSyncError(Exception):
    """同步引擎错误基类"""

    kind = "error"

    def __init__(self, message: str, *, external_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.external_id = external_id

    def __str__(self) -> str:
        return self.message


class TransportError(OrderSyncError):
    kind = "transport"


class AuthError(OrderSyncError):
    kind = "auth"


class ValidationError(OrderSyncError):
    kind = "validation"


class StorageError(OrderSyncError):
    kind = "storage"


class StorageUnavailableError(StorageError):
    kind = "storage_unavailable"


class AlreadyRunningError(OrderSyncError):
    """已有同步在运行时再次触发"""

    kind = "already_running"

    def __init__(self, message: str = "同步正在运行中"):
        super().__init__(message)


# 整轮致命错误：遇到即中止
FATAL_ERRORS = (AuthError, StorageUnavailableError)
