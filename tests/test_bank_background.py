from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi import FastAPI

from bankagg.services.background import BackgroundTasks
from bankagg.services.bank_errors import PersistenceError, ProviderAPIError
from bankagg.services.bank_metrics import MetricsRecorder, TableCostModel, summarize
from bankagg.services.bank_repositories import SqlJobLockRepository
from bankagg.services.bank_sync import BankingService
from bankagg.services.bank_sync_scheduler import run_scheduled_syncs, run_scheduler_tick


class _ListSink:
    def __init__(self, fail: bool = False) -> None:
        self.rows: list[dict] = []
        self.fail = fail

    async def record(self, **kwargs) -> None:
        if self.fail:
            raise PersistenceError("Database operation failed (OperationalError)")
        self.rows.append(kwargs)


def test_cost_model_adds_payment_rate_and_honors_provider_scoped_keys() -> None:
    model = TableCostModel({"bridge.get_transactions": 0.5})

    assert model.estimate(provider="mock", operation="process_payment", amount=Decimal("100.00")) == 3.2
    assert model.estimate(provider="mock", operation="get_transactions") == 0.05
    assert model.estimate(provider="bridge", operation="get_transactions") == 0.5
    assert model.estimate(provider="mock", operation="list_institutions") == 0.01


def test_summarize_groups_by_provider_and_orders_by_cost() -> None:
    rows = [
        SimpleNamespace(provider="bridge", request_count=2, success_count=2, error_count=0, total_response_ms=300, total_cost=1.0),
        SimpleNamespace(provider="mock", request_count=3, success_count=2, error_count=1, total_response_ms=30, total_cost=0.03),
        SimpleNamespace(provider="mock", request_count=1, success_count=1, error_count=0, total_response_ms=10, total_cost=0.01),
    ]

    out = summarize(rows)

    assert [r["provider"] for r in out] == ["mock", "bridge"]
    mock = out[0]
    assert mock["request_count"] == 4
    assert mock["success_rate"] == 0.75
    assert mock["avg_response_ms"] == 10.0
    assert mock["cost_per_request"] == 0.01
    assert summarize([]) == []


@pytest.mark.asyncio
async def test_recorder_meters_failures_and_re_raises() -> None:
    sink = _ListSink()
    recorder = MetricsRecorder(sink, TableCostModel())

    with pytest.raises(ProviderAPIError):
        async with recorder.track(provider="mock", operation="get_balance", workspace_id="ws-1"):
            raise ProviderAPIError("upstream down", provider="mock")
    async with recorder.track(provider="mock", operation="get_balance", workspace_id="ws-1"):
        pass

    assert [r["success"] for r in sink.rows] == [False, True]
    assert sink.rows[0]["cost"] == 0.01


@pytest.mark.asyncio
async def test_recorder_survives_a_failing_sink(caplog) -> None:
    recorder = MetricsRecorder(_ListSink(fail=True), TableCostModel())

    with caplog.at_level(logging.ERROR):
        async with recorder.track(provider="mock", operation="get_balance", workspace_id="ws-1") as outcome:
            pass

    assert outcome.success is True
    assert "Failed to record banking API metric" in caplog.text


@pytest.mark.asyncio
async def test_background_failures_are_logged(caplog) -> None:
    tasks = BackgroundTasks()

    async def boom() -> None:
        raise RuntimeError("sync exploded")

    with caplog.at_level(logging.ERROR):
        task = tasks.spawn(boom(), name="boom", context={"workspace_id": "ws-1"})
        assert await tasks.wait(task, 1.0) is True
        await asyncio.sleep(0)

    assert len(tasks) == 0
    assert "Background task failed" in caplog.text
    record = next(r for r in caplog.records if r.message == "Background task failed")
    assert record.workspace_id == "ws-1"


@pytest.mark.asyncio
async def test_wait_times_out_without_cancelling_and_shutdown_cancels() -> None:
    tasks = BackgroundTasks()
    release = asyncio.Event()

    async def slow() -> str:
        await release.wait()
        return "done"

    task = tasks.spawn(slow(), name="slow")
    assert await tasks.wait(task, 0.01) is False
    assert await tasks.wait(task, 0) is False
    assert not task.cancelled()
    assert len(tasks) == 1

    await tasks.shutdown()
    assert task.cancelled()
    assert len(tasks) == 0


@pytest.mark.asyncio
async def test_scheduler_lock_is_exclusive_per_name(session_factory) -> None:
    locks = SqlJobLockRepository(session_factory)

    assert await locks.acquire("sync", "host-a:1", ttl_seconds=60) is True
    # Same holder renews; a different one is refused while the lease is live.
    assert await locks.acquire("sync", "host-a:1", ttl_seconds=60) is True
    assert await locks.acquire("sync", "host-b:2", ttl_seconds=60) is False
    # Independent lock names do not contend.
    assert await locks.acquire("other", "host-b:2", ttl_seconds=60) is True

    # Only the holder can hand the lease back; then anyone may take it.
    assert await locks.release("sync", "host-b:2") is False
    assert await locks.release("sync", "host-a:1") is True
    assert await locks.acquire("sync", "host-b:2", ttl_seconds=60) is True


@pytest.mark.asyncio
async def test_scheduled_sync_skips_failing_workspaces(banking_service: BankingService, monkeypatch) -> None:
    for ws in ("ws-1", "ws-2"):
        await banking_service.start_connection(ws, user_id="user-1")
        await banking_service.complete_connection(ws)
    # Pending connections are not part of the scheduled sweep.
    await banking_service.start_connection("ws-3", user_id="user-3")

    original = banking_service.sync_transactions

    async def flaky(workspace_id, *args, **kwargs):
        if workspace_id == "ws-2":
            raise ProviderAPIError("upstream down", provider="mock")
        return await original(workspace_id, *args, **kwargs)

    monkeypatch.setattr(banking_service, "sync_transactions", flaky)

    stats = await run_scheduled_syncs(banking_service)

    assert stats == {"workspaces": 2, "synced": 1, "failed": 1}
    account = await banking_service.accounts.get("ws-1", "mock", "mock_acc_1")
    assert account.last_transaction_sync_at is not None


@pytest.mark.asyncio
async def test_scheduler_tick_purges_expired_webhook_claims(app: FastAPI, banking_service: BankingService) -> None:
    ingestor = app.state.webhook_ingestor
    for event_id in ("t-1", "t-2"):
        await ingestor.events.claim("mock", event_id, event_type="test", retention=ingestor.retention)

    stats = await run_scheduler_tick(banking_service, ingestor)
    assert stats["webhook_events_purged"] == 0

    ingestor.retention = timedelta(0)
    stats = await run_scheduler_tick(banking_service, ingestor)
    assert stats["webhook_events_purged"] == 2
    assert stats["workspaces"] == 0
