"""
同步编排：一次完整的拉取对账。

平台没有「任意状态」的查询，只能按 TRACKED_STATUSES 逐个状态、逐个时间窗口、逐页拉取，
每页内的订单交给有限并发的 worker 对账写库。同一时间只允许一轮在跑。
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from loguru import logger

from ordersync.core.config import Settings, get_settings
from ordersync.core.errors import (
    FATAL_ERRORS,
    AlreadyRunningError,
    OrderSyncError,
    TransportError,
    ValidationError,
)
from ordersync.models.orders import OrderStore
from ordersync.schemas.orders import RemoteOrder
from ordersync.schemas.sync import (
    Action,
    Create,
    RecordError,
    RunResult,
    RunState,
    RunSummary,
    Skip,
    Update,
)
from ordersync.services.gateway import RemoteOrderGateway
from ordersync.services.reconciler import Reconciler
from ordersync.sync_utils import sync_date_windows, utcnow


class RunCancelled(Exception):
    """调用方请求取消，在两条订单之间检查"""


@dataclass
class _RunContext:
    result: RunResult
    semaphore: asyncio.Semaphore
    # 同一 external_id 在本轮内串行处理（订单中途换状态会在两个状态桶里各出现一次）
    key_locks: dict[int, asyncio.Lock] = field(default_factory=dict)

    def record_error(self, error: RecordError) -> None:
        self.result.errors.append(error)
        self.result.counters.errors += 1


class SyncOrchestrator:
    """拉取同步编排器：Idle -> Running -> Completed | Failed"""

    def __init__(
        self,
        gateway: RemoteOrderGateway,
        store: OrderStore,
        settings: Settings | None = None,
        reconciler: Reconciler | None = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.store = store
        self.reconciler = reconciler or Reconciler()
        self.tracked_statuses = list(self.settings.TRACKED_STATUSES)
        self.state = RunState.IDLE
        self._run_lock = asyncio.Lock()
        self._cancel_requested = asyncio.Event()
        self._last_result: Optional[RunResult] = None
        self._auto_task: Optional[asyncio.Task] = None
        self._auto_interval: Optional[float] = None
        self._background_runs: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    @property
    def last_result(self) -> Optional[RunResult]:
        return self._last_result

    # ---- 对外触发接口 ----

    async def run_sync_now(self) -> RunResult:
        """手动触发一轮同步；已有同步在跑时抛 AlreadyRunningError"""
        return await self.run()

    def request_cancel(self) -> bool:
        """请求取消当前运行；没有运行时返回 False"""
        if not self.is_running:
            return False
        logger.info("收到取消请求，将在当前订单处理完后停止")
        self._cancel_requested.set()
        return True

    def get_last_run_summary(self) -> Optional[RunSummary]:
        if self._last_result is None:
            return None
        return RunSummary.from_result(self._last_result)

    @property
    def auto_sync_interval(self) -> Optional[float]:
        """自动同步间隔（秒），未开启为 None"""
        return self._auto_interval if self._auto_task is not None else None

    def enable_auto_sync(self, interval_seconds: float | None = None) -> None:
        """开启定时同步；已开启时按新间隔重启定时器"""
        interval = interval_seconds if interval_seconds is not None else self.settings.SYNC_INTERVAL_SECONDS
        if interval <= 0:
            raise ValueError("同步间隔必须大于 0")
        self.disable_auto_sync()
        self._auto_interval = interval
        self._auto_task = asyncio.create_task(self._auto_loop(interval), name="order-auto-sync")
        logger.info(f"开启自动同步，每 {interval} 秒执行一次")

    def disable_auto_sync(self) -> None:
        """关闭定时同步；正在跑的那一轮不受影响"""
        task, self._auto_task = self._auto_task, None
        if task is not None:
            task.cancel()
            logger.info("关闭自动同步")

    async def shutdown(self) -> None:
        """停止定时器，取消并等待后台运行结束"""
        self.disable_auto_sync()
        self.request_cancel()
        if self._background_runs:
            await asyncio.gather(*self._background_runs, return_exceptions=True)

    async def _auto_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self.is_running:
                logger.debug("上一轮同步仍在运行，跳过本次定时触发")
                continue
            task = asyncio.create_task(self._scheduled_run())
            self._background_runs.add(task)
            task.add_done_callback(self._background_runs.discard)

    async def _scheduled_run(self) -> None:
        try:
            await self.run()
        except AlreadyRunningError:
            logger.debug("同步已在运行，跳过本次定时触发")
        except Exception:
            logger.exception("本轮定时同步异常")

    # ---- 单轮运行 ----

    async def run(self, now: datetime | None = None) -> RunResult:
        """
        执行一轮完整同步。
        单条订单失败只计入 errors 并继续；AuthError 或数据库整体不可用时整轮失败。
        被取消时返回 Failed 及已完成部分的计数。
        """
        if self._run_lock.locked():
            raise AlreadyRunningError()

        async with self._run_lock:
            self._cancel_requested.clear()
            self.state = RunState.RUNNING
            result = RunResult(state=RunState.RUNNING, started_at=utcnow())
            ctx = _RunContext(result=result, semaphore=asyncio.Semaphore(self.settings.SYNC_WORKERS))
            logger.info(f"🔄 开始同步远端订单，状态桶: {self.tracked_statuses}")

            try:
                await self._pull_all(ctx, now or result.started_at)
            except FATAL_ERRORS as e:
                result.state = RunState.FAILED
                result.fatal_error = str(e)
                logger.error(f"❌ 同步中止（{e.kind}）: {e}")
            except RunCancelled:
                result.state = RunState.FAILED
                result.cancelled = True
                logger.warning("同步已取消，返回部分结果")
            except Exception as e:
                result.state = RunState.FAILED
                result.fatal_error = f"{type(e).__name__}: {e}"
                logger.exception("同步异常")
                raise
            else:
                result.state = RunState.COMPLETED
            finally:
                result.finished_at = utcnow()
                self.state = result.state
                self._last_result = result
                self._cancel_requested.clear()
                logger.info(f"同步结束[{result.state.value}]: {result.summary}")

        return result

    def _raise_if_cancelled(self) -> None:
        if self._cancel_requested.is_set():
            raise RunCancelled()

    async def _pull_all(self, ctx: _RunContext, now: datetime) -> None:
        windows: list[tuple[Optional[datetime], Optional[datetime]]] = list(
            sync_date_windows(self.settings.SYNC_LOOKBACK_DAYS, self.settings.SYNC_WINDOW_DAYS, now)
        ) or [(None, None)]
        # 状态桶之间串行，照顾平台限流
        for status in self.tracked_statuses:
            for date_from, date_to in windows:
                await self._drain_bucket(ctx, status, date_from, date_to)

    async def _drain_bucket(
        self,
        ctx: _RunContext,
        status: str,
        date_from: Optional[datetime],
        date_to: Optional[datetime],
    ) -> None:
        """把一个状态桶 + 时间窗的分页全部拉完"""
        page = 1
        while True:
            self._raise_if_cancelled()
            try:
                order_page = await self.gateway.list_orders(
                    status,
                    date_from,
                    date_to,
                    page=page,
                    page_size=self.settings.SYNC_PAGE_SIZE,
                )
            except (TransportError, ValidationError) as e:
                # 本轮不重试，下一轮再拉
                logger.warning(f"拉取失败 status={status} page={page}: {e}")
                ctx.record_error(RecordError(stage="list", kind=e.kind, message=f"status={status} page={page}: {e}"))
                return

            for rejected in order_page.rejected:
                ctx.record_error(RecordError(
                    external_id=rejected.external_id,
                    stage="validate",
                    kind=ValidationError.kind,
                    message=rejected.message,
                ))

            await self._process_batch(ctx, order_page.orders)
            self._raise_if_cancelled()

            if not order_page.has_more:
                return
            page += 1
            if self.settings.SYNC_PAGE_DELAY_SECONDS > 0:
                await asyncio.sleep(self.settings.SYNC_PAGE_DELAY_SECONDS)

    async def _process_batch(self, ctx: _RunContext, orders: list[RemoteOrder]) -> None:
        async def worker(remote: RemoteOrder) -> None:
            async with ctx.semaphore:
                if self._cancel_requested.is_set():
                    return
                await self._process_one(ctx, remote)

        outcomes = await asyncio.gather(*(worker(r) for r in orders), return_exceptions=True)
        # 等所有 worker 结束后再抛致命错误，避免留下写到一半的记录
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    async def _process_one(self, ctx: _RunContext, remote: RemoteOrder) -> None:
        lock = ctx.key_locks.setdefault(remote.id, asyncio.Lock())
        async with lock:
            stage = "lookup"
            try:
                local = await self.store.find_by_external_id(remote.id)
                stage = "reconcile"
                action = self.reconciler.reconcile(remote, local)
                stage = "write"
                await self._apply(action)
            except FATAL_ERRORS:
                raise
            except OrderSyncError as e:
                logger.warning(f"订单处理失败 external_id={remote.id} ({stage}): {e}")
                ctx.record_error(RecordError(
                    external_id=remote.id, stage=stage, kind=e.kind, message=str(e),
                ))
                return
            except Exception as e:
                logger.exception(f"订单处理异常 external_id={remote.id} ({stage})")
                ctx.record_error(RecordError(
                    external_id=remote.id, stage=stage, kind="unexpected", message=f"{type(e).__name__}: {e}",
                ))
                return

        counters = ctx.result.counters
        if isinstance(action, Create):
            counters.created += 1
            logger.debug(f"新建订单 external_id={remote.id}")
        elif isinstance(action, Update):
            counters.updated += 1
            logger.debug(f"更新订单 external_id={remote.id}: {sorted(action.changes)}")
        else:
            counters.skipped += 1
            logger.debug(f"跳过订单 external_id={remote.id}: {action.reason}")

    async def _apply(self, action: Action) -> None:
        if isinstance(action, Create):
            await self.store.insert(action.record)
        elif isinstance(action, Update):
            await self.store.update_fields(action.order_id, action.as_fields())
        elif not isinstance(action, Skip):
            raise TypeError(f"未知的对账动作: {action!r}")
