"""
同步过程相关 Schema：对账动作、运行状态与结果汇总。
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ordersync.schemas.orders import OrderRecord


# ---- 对账动作（Reconciler 输出）----

@dataclass(frozen=True)
class Create:
    """本地无此订单：新建"""
    record: OrderRecord


@dataclass(frozen=True)
class Update:
    """本地已有：仅更新变化的字段；changes 不含 updated_at"""
    order_id: int
    changes: dict[str, Any]
    updated_at: datetime

    def as_fields(self) -> dict[str, Any]:
        return {**self.changes, "updated_at": self.updated_at}


@dataclass(frozen=True)
class Skip:
    reason: str
    order_id: Optional[int] = None


Action = Union[Create, Update, Skip]


# ---- 运行状态与结果 ----

class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RecordError(BaseModel):
    """单条订单的处理错误"""
    external_id: Optional[int] = None
    order_id: Optional[int] = None
    stage: str
    kind: str
    message: str


class RunCounters(BaseModel):
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0


class RunResult(BaseModel):
    """一次同步运行的结果"""
    state: RunState
    started_at: datetime
    finished_at: Optional[datetime] = None
    counters: RunCounters = Field(default_factory=RunCounters)
    errors: list[RecordError] = []
    cancelled: bool = False
    fatal_error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def summary(self) -> str:
        c = self.counters
        return f"{c.created} imported, {c.updated} updated, {c.skipped} skipped, {c.errors} errors"


class RunSummary(BaseModel):
    """最近一次运行摘要"""
    timestamp: datetime
    state: RunState
    created: int
    updated: int
    skipped: int
    errors: int

    @classmethod
    def from_result(cls, result: RunResult) -> "RunSummary":
        return cls(
            timestamp=result.finished_at or result.started_at,
            state=result.state,
            created=result.counters.created,
            updated=result.counters.updated,
            skipped=result.counters.skipped,
            errors=result.counters.errors,
        )


class PushResult(BaseModel):
    """一次出站推送的结果"""
    pushed: int = 0
    exported: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[RecordError] = []
