from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from datetime import timedelta

import pytest
from fastapi import FastAPI

from bankagg.core.enums import AccountStatus, ConnectionState
from bankagg.services.bank_errors import PersistenceError, SignatureError
from bankagg.services.bank_repositories import SqlWebhookEventRepository, TransactionFilters
from bankagg.services.bank_sync import BankingService
from bankagg.services.bank_webhooks import WebhookIngestor


WS = "ws-1"


def _body(**payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


def _sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


async def _connected(service: BankingService) -> None:
    await service.start_connection(WS, user_id="user-1")
    await service.complete_connection(WS)
    await service.sync_accounts(WS)
    # Widen the incremental window to a week so yesterday's seed transaction is always in range.
    await service.connections.upsert(WS, "mock", last_sync_at=None)


def _ingestor(app: FastAPI) -> WebhookIngestor:
    return app.state.webhook_ingestor


@pytest.mark.asyncio
async def test_signed_transaction_event_triggers_incremental_sync(app: FastAPI, banking_service: BankingService) -> None:
    await _connected(banking_service)
    provider = await banking_service.get_provider("mock")
    provider.config.webhook_secret = "s3cret"

    body = _body(id="evt-1", type="transaction.created", workspace_id=WS, data={"account_id": "mock_acc_1"})
    ack = await _ingestor(app).ingest("mock", body, {"X-Mock-Signature": f"v1={_sign('s3cret', body)}"})

    assert ack.status == "processed"
    assert ack.event_id == "evt-1"
    rows, total = await banking_service.transactions.list(WS, TransactionFilters())
    assert total == 1
    assert rows[0].account_external_id == "mock_acc_1"


@pytest.mark.asyncio
async def test_tampered_body_is_rejected(app: FastAPI, banking_service: BankingService) -> None:
    provider = await banking_service.get_provider("mock")
    provider.config.webhook_secret = "s3cret"
    body = _body(id="evt-1", type="test")

    with pytest.raises(SignatureError):
        await _ingestor(app).ingest("mock", body + b" ", {"X-Mock-Signature": _sign("s3cret", body)})
    with pytest.raises(SignatureError):
        await _ingestor(app).ingest("mock", body, {})


@pytest.mark.asyncio
async def test_unsigned_webhook_rejected_when_signature_required(app: FastAPI) -> None:
    ingestor = _ingestor(app)
    ingestor.require_signature = True
    with pytest.raises(SignatureError):
        await ingestor.ingest("mock", _body(id="evt-1", type="test"), {})


@pytest.mark.asyncio
async def test_duplicate_delivery_is_acknowledged_without_resync(app: FastAPI, banking_service: BankingService) -> None:
    await _connected(banking_service)
    provider = await banking_service.get_provider("mock")
    body = _body(id="evt-dup", type="transaction.updated", workspace_id=WS)

    first = await _ingestor(app).ingest("mock", body, {})
    fetches = provider.calls.count("get_transactions")
    second = await _ingestor(app).ingest("mock", body, {})

    assert first.status == "processed"
    assert second.status == "duplicate"
    assert provider.calls.count("get_transactions") == fetches


@pytest.mark.asyncio
async def test_dedup_records_expire_after_retention(session_factory) -> None:
    events = SqlWebhookEventRepository(session_factory)
    assert await events.claim("mock", "evt-1", event_type="test", retention=timedelta(days=7)) is True
    assert await events.claim("mock", "evt-1", event_type="test", retention=timedelta(days=7)) is False
    assert await events.claim("mock", "evt-1", event_type="test", retention=timedelta(0)) is True
    # Same id from another provider is a different event.
    assert await events.claim("bridge", "evt-1", event_type="test", retention=timedelta(days=7)) is True


@pytest.mark.asyncio
async def test_acknowledgements_for_events_that_do_not_sync(app: FastAPI) -> None:
    ingestor = _ingestor(app)

    assert (await ingestor.ingest("mock", _body(id="t-1", type="test"), {})).status == "test"
    assert (await ingestor.ingest("mock", _body(id="u-1", type="item.exploded", workspace_id=WS), {})).status == "ignored"
    assert (await ingestor.ingest("mock", b"not json", {})).status == "ignored"
    assert (await ingestor.ingest("mock", b"[1, 2]", {})).status == "ignored"
    # No tenant reference at all: nothing to resolve, retries would not help.
    assert (await ingestor.ingest("mock", _body(id="r-1", type="transaction.created"), {})).status == "unresolved"


@pytest.mark.asyncio
async def test_account_connected_event_marks_connection_and_runs_full_sync(
    app: FastAPI, banking_service: BankingService
) -> None:
    await banking_service.start_connection(WS, user_id="user-1")

    ack = await _ingestor(app).ingest("mock", _body(id="c-1", type="account.connected", workspace_id=WS), {})

    assert ack.status == "processed"
    conn = await banking_service.connections.get(WS, "mock")
    assert conn.state == ConnectionState.CONNECTED
    assert len(await banking_service.accounts.list(WS)) == 2
    _rows, total = await banking_service.transactions.list(WS, TransactionFilters())
    assert total == 1


@pytest.mark.asyncio
async def test_account_disconnected_event_deactivates_account(app: FastAPI, banking_service: BankingService) -> None:
    await _connected(banking_service)

    ack = await _ingestor(app).ingest(
        "mock",
        _body(id="d-1", type="account.disconnected", workspace_id=WS, data={"account_id": "mock_acc_2"}),
        {},
    )

    assert ack.status == "processed"
    account = await banking_service.accounts.get(WS, "mock", "mock_acc_2")
    assert account.status == AccountStatus.INACTIVE


@pytest.mark.asyncio
async def test_event_for_disconnected_workspace_is_acknowledged_without_sync(
    app: FastAPI, banking_service: BankingService
) -> None:
    await _connected(banking_service)
    await banking_service.disconnect(WS)
    provider = await banking_service.get_provider("mock")
    fetches = provider.calls.count("get_transactions")

    ack = await _ingestor(app).ingest("mock", _body(id="x-1", type="transaction.created", workspace_id=WS), {})

    assert ack.status == "processed"
    assert provider.calls.count("get_transactions") == fetches


@pytest.mark.asyncio
async def test_slow_sync_is_acknowledged_and_finishes_in_background(
    app: FastAPI, banking_service: BankingService
) -> None:
    await _connected(banking_service)
    provider = await banking_service.get_provider("mock")
    provider.config.simulate_delay_seconds = 0.05
    ingestor = _ingestor(app)
    ingestor.ack_timeout_seconds = 0.001

    ack = await ingestor.ingest("mock", _body(id="s-1", type="transaction.created", workspace_id=WS), {})
    assert ack.status == "accepted"

    for _ in range(100):
        if not len(app.state.background_tasks):
            break
        await asyncio.sleep(0.02)
    _rows, total = await banking_service.transactions.list(WS, TransactionFilters())
    assert total == 1


@pytest.mark.asyncio
async def test_failed_background_sync_is_reported(app: FastAPI, banking_service: BankingService, monkeypatch) -> None:
    await _connected(banking_service)

    async def boom(*_args, **_kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(banking_service, "sync_transactions", boom)

    ack = await _ingestor(app).ingest("mock", _body(id="f-1", type="transaction.created", workspace_id=WS), {})
    assert ack.status == "failed"


@pytest.mark.asyncio
async def test_redelivery_after_storage_failure_is_processed(
    app: FastAPI, banking_service: BankingService, monkeypatch
) -> None:
    await _connected(banking_service)
    provider = await banking_service.get_provider("mock")
    fetches = provider.calls.count("get_transactions")
    original = banking_service.connections.find_by_external_ref
    failures = [PersistenceError("Database operation failed (OperationalError)")]

    async def flaky(*args, **kwargs):
        if failures:
            raise failures.pop()
        return await original(*args, **kwargs)

    monkeypatch.setattr(banking_service.connections, "find_by_external_ref", flaky)
    body = _body(id="evt-retry", type="transaction.created", workspace_id=WS, data={"account_id": "mock_acc_1"})

    with pytest.raises(PersistenceError):
        await _ingestor(app).ingest("mock", body, {})
    ack = await _ingestor(app).ingest("mock", body, {})

    assert ack.status == "processed"
    assert provider.calls.count("get_transactions") > fetches
