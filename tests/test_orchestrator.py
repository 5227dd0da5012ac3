"""
同步编排测试：分页、错误隔离、单轮互斥、取消与定时同步
"""
import asyncio

import pytest

from ordersync.core.errors import AlreadyRunningError, AuthError, TransportError
from ordersync.schemas.orders import CanonicalStatus
from ordersync.schemas.sync import RunState
from ordersync.services.gateway import RejectedOrder
from ordersync.services.orchestrator import SyncOrchestrator

from conftest import T0, T1, make_remote


def orders(*ids, status="processing", **overrides):
    return [make_remote(i, status=status, **overrides) for i in ids]


@pytest.mark.asyncio
async def test_new_remote_order_is_imported(settings, store, gateway):
    gateway.pages = {"completed": [[make_remote(501, status="completed", total="120.00")]]}
    orchestrator = SyncOrchestrator(gateway, store, settings)

    result = await orchestrator.run_sync_now()

    assert result.state == RunState.COMPLETED
    assert result.counters.created == 1
    assert result.summary == "1 imported, 0 updated, 0 skipped, 0 errors"
    [record] = store.by_external_id(501)
    assert record.status == CanonicalStatus.COMPLETED
    assert record.amounts.total == pytest.approx(120.00)
    assert record.is_synced_to_remote is True


@pytest.mark.asyncio
async def test_second_run_skips_unchanged_orders(settings, store, gateway):
    gateway.pages = {"processing": [orders(1, 2, 3)]}
    orchestrator = SyncOrchestrator(gateway, store, settings)

    await orchestrator.run()
    result = await orchestrator.run()

    assert result.counters.created == 0
    assert result.counters.skipped == 3
    assert len(store.records) == 3


@pytest.mark.asyncio
async def test_order_moving_between_buckets_is_not_duplicated(settings, store, gateway):
    gateway.pages = {
        "processing": [orders(600)],
        "completed": [orders(600, status="completed", date_modified_gmt=T1.isoformat())],
    }
    orchestrator = SyncOrchestrator(gateway, store, settings)

    result = await orchestrator.run()

    assert result.counters.created == 1
    assert result.counters.updated == 1
    [record] = store.by_external_id(600)
    assert record.status == CanonicalStatus.COMPLETED


@pytest.mark.asyncio
async def test_same_order_twice_in_one_page_is_serialised(settings, store, gateway):
    store.write_delay = 0.01
    gateway.pages = {"processing": [orders(700, 700)]}
    orchestrator = SyncOrchestrator(gateway, store, settings)

    result = await orchestrator.run()

    assert result.counters.created == 1
    assert result.counters.skipped == 1
    assert len(store.by_external_id(700)) == 1


@pytest.mark.asyncio
async def test_single_order_failure_does_not_stop_run(settings, store, gateway):
    gateway.pages = {"processing": [orders(*range(1, 11))]}
    store.fail_external_ids = {5}
    orchestrator = SyncOrchestrator(gateway, store, settings)

    result = await orchestrator.run()

    assert result.state == RunState.COMPLETED
    assert result.counters.created == 9
    assert result.counters.errors == 1
    [error] = result.errors
    assert error.external_id == 5
    assert error.stage == "write"
    assert error.kind == "storage"
    assert store.by_external_id(5) == []


@pytest.mark.asyncio
async def test_auth_error_fails_the_run_immediately(settings, store, gateway):
    gateway.pages = {"completed": [orders(1, status="completed")]}
    gateway.errors[("processing", 1)] = AuthError("远端认证失败(401)")
    orchestrator = SyncOrchestrator(gateway, store, settings)

    result = await orchestrator.run()

    assert result.state == RunState.FAILED
    assert "401" in result.fatal_error
    assert len(gateway.list_calls) == 1
    assert store.records == {}
    assert orchestrator.state == RunState.FAILED


@pytest.mark.asyncio
async def test_transport_error_on_one_bucket_continues_with_next(settings, store, gateway):
    gateway.pages = {"completed": [orders(1, status="completed")]}
    gateway.errors[("processing", 1)] = TransportError("请求超时")
    orchestrator = SyncOrchestrator(gateway, store, settings)

    result = await orchestrator.run()

    assert result.state == RunState.COMPLETED
    assert result.counters.created == 1
    assert result.counters.errors == 1
    assert result.errors[0].stage == "list"
    assert result.errors[0].kind == "transport"


@pytest.mark.asyncio
async def test_storage_unavailable_fails_the_run(settings, store, gateway):
    gateway.pages = {"processing": [orders(1, 2)]}
    store.unavailable = True
    orchestrator = SyncOrchestrator(gateway, store, settings)

    result = await orchestrator.run()

    assert result.state == RunState.FAILED
    assert "数据库不可用" in result.fatal_error
    # 第一个状态桶出错后不再拉后续状态
    assert [call[0] for call in gateway.list_calls] == ["processing"]


@pytest.mark.asyncio
async def test_all_pages_are_drained(settings, store, gateway):
    gateway.pages = {"processing": [orders(1, 2), orders(3, 4), orders(5)]}
    orchestrator = SyncOrchestrator(gateway, store, settings)

    result = await orchestrator.run()

    assert result.counters.created == 5
    pages = [call[3] for call in gateway.list_calls if call[0] == "processing"]
    assert pages == [1, 2, 3]


@pytest.mark.asyncio
async def test_rejected_orders_are_counted_as_errors(settings, store, gateway):
    gateway.pages = {"processing": [orders(1)]}
    gateway.rejected[("processing", 1)] = [RejectedOrder(external_id=77, message="订单数据不合法: id=77")]
    orchestrator = SyncOrchestrator(gateway, store, settings)

    result = await orchestrator.run()

    assert result.counters.created == 1
    assert result.counters.errors == 1
    assert result.errors[0].external_id == 77
    assert result.errors[0].stage == "validate"


@pytest.mark.asyncio
async def test_lookback_is_split_into_date_windows(settings, store, gateway):
    settings = settings.model_copy(update={"SYNC_LOOKBACK_DAYS": 2, "SYNC_WINDOW_DAYS": 1})
    orchestrator = SyncOrchestrator(gateway, store, settings)

    await orchestrator.run(now=T1)

    processing = [call for call in gateway.list_calls if call[0] == "processing"]
    assert len(processing) == 2
    assert processing[0][1] < processing[0][2] == processing[1][1] < processing[1][2] == T1


@pytest.mark.asyncio
async def test_concurrent_run_is_rejected(settings, store, gateway):
    gateway.pages = {"processing": [orders(1)]}
    gateway.gate = asyncio.Event()
    orchestrator = SyncOrchestrator(gateway, store, settings)

    first = asyncio.create_task(orchestrator.run_sync_now())
    while not gateway.list_calls:
        await asyncio.sleep(0)

    assert orchestrator.is_running
    assert orchestrator.state == RunState.RUNNING
    with pytest.raises(AlreadyRunningError):
        await orchestrator.run_sync_now()

    gateway.gate.set()
    result = await first
    assert result.state == RunState.COMPLETED
    assert result.counters.created == 1


@pytest.mark.asyncio
async def test_cancel_returns_partial_counts(settings, store, gateway):
    settings = settings.model_copy(update={"SYNC_WORKERS": 1})
    gateway.pages = {"processing": [orders(1, 2, 3, 4, 5)], "completed": [orders(6, status="completed")]}
    orchestrator = SyncOrchestrator(gateway, store, settings)
    store.on_insert = lambda record: orchestrator.request_cancel()

    result = await orchestrator.run()

    assert result.state == RunState.FAILED
    assert result.cancelled is True
    assert result.counters.created == 1
    assert len(store.records) == 1
    assert [call[0] for call in gateway.list_calls] == ["processing"]


def test_cancel_without_run_is_noop(settings, store, gateway):
    assert SyncOrchestrator(gateway, store, settings).request_cancel() is False


@pytest.mark.asyncio
async def test_last_run_summary(settings, store, gateway):
    gateway.pages = {"processing": [orders(1, 2)]}
    orchestrator = SyncOrchestrator(gateway, store, settings)
    assert orchestrator.get_last_run_summary() is None

    await orchestrator.run()
    summary = orchestrator.get_last_run_summary()

    assert summary.state == RunState.COMPLETED
    assert (summary.created, summary.updated, summary.skipped, summary.errors) == (2, 0, 0, 0)
    assert summary.timestamp >= T0


@pytest.mark.asyncio
async def test_auto_sync_runs_on_interval(settings, store, gateway):
    gateway.pages = {"processing": [orders(1)]}
    orchestrator = SyncOrchestrator(gateway, store, settings)

    orchestrator.enable_auto_sync(0.01)
    assert orchestrator.auto_sync_interval == 0.01
    for _ in range(100):
        if store.records:
            break
        await asyncio.sleep(0.01)
    orchestrator.disable_auto_sync()
    await orchestrator.shutdown()

    assert orchestrator.auto_sync_interval is None
    assert orchestrator.last_result is not None
    assert len(store.by_external_id(1)) == 1


@pytest.mark.asyncio
async def test_auto_sync_rejects_non_positive_interval(settings, store, gateway):
    orchestrator = SyncOrchestrator(gateway, store, settings)

    with pytest.raises(ValueError):
        orchestrator.enable_auto_sync(0)
    assert orchestrator.auto_sync_interval is None


@pytest.mark.asyncio
async def test_auto_sync_tick_skipped_while_running(settings, store, gateway):
    gateway.pages = {"processing": [orders(1)]}
    gateway.gate = asyncio.Event()
    orchestrator = SyncOrchestrator(gateway, store, settings)

    manual = asyncio.create_task(orchestrator.run())
    while not gateway.list_calls:
        await asyncio.sleep(0)
    orchestrator.enable_auto_sync(0.01)
    await asyncio.sleep(0.05)

    # 定时触发全部被跳过，只有手动那一轮在拉取
    assert len(gateway.list_calls) == 1

    orchestrator.disable_auto_sync()
    gateway.gate.set()
    result = await manual
    await orchestrator.shutdown()
    assert result.state == RunState.COMPLETED
