from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import httpx
import pytest

from bankagg.core.enums import AccountStatus, ConnectionState, SyncStatus, TransactionDirection, TransactionStatus
from bankagg.models.base import utcnow
from bankagg.schemas.bank import PaymentRequest, RefundRequest, TransactionBatch
from bankagg.services.bank_errors import (
    ConnectionBlockedError,
    InvalidRequestError,
    NotFoundError,
    ProviderAPIError,
    RefundNotAllowedError,
)
from bankagg.services.bank_providers.base import ProviderConfig
from bankagg.services.bank_providers.gocardless import GoCardlessProvider
from bankagg.services.bank_repositories import TransactionFilters
from bankagg.services.bank_sync import BankingService


WS = "ws-1"


async def _connect(service: BankingService, workspace_id: str = WS) -> None:
    await service.start_connection(workspace_id, user_id="user-1")
    await service.complete_connection(workspace_id)


@pytest.mark.asyncio
async def test_sync_without_connection_is_blocked(banking_service: BankingService) -> None:
    with pytest.raises(ConnectionBlockedError) as exc_info:
        await banking_service.sync_accounts(WS)
    assert exc_info.value.state == ConnectionState.NOT_CONNECTED.value
    assert await banking_service.accounts.list(WS) == []


@pytest.mark.asyncio
async def test_start_connection_records_pending_authorization(banking_service: BankingService) -> None:
    link = await banking_service.start_connection(WS, user_id="user-1", institution_hint="MOCK_BANK_FR")
    assert link.url.startswith("https://mock-bank.local/connect")

    conn = await banking_service.connections.get(WS, "mock")
    assert conn.state == ConnectionState.PENDING_AUTHORIZATION
    assert conn.external_user_ref == WS
    assert conn.user_id == "user-1"


@pytest.mark.asyncio
async def test_pending_connection_becomes_connected_after_first_account_sync(banking_service: BankingService) -> None:
    await banking_service.start_connection(WS, user_id="user-1")
    result = await banking_service.sync_accounts(WS)

    assert len(result.accounts) == 2
    conn = await banking_service.connections.get(WS, "mock")
    assert conn.state == ConnectionState.CONNECTED
    assert conn.last_sync_at is not None


@pytest.mark.asyncio
async def test_account_sync_is_idempotent(banking_service: BankingService) -> None:
    await _connect(banking_service)

    first = await banking_service.sync_accounts(WS)
    second = await banking_service.sync_accounts(WS)

    assert {a.id for a in first.accounts} == {a.id for a in second.accounts}
    rows = await banking_service.accounts.list(WS)
    assert len(rows) == 2
    by_external = {r.external_id: r for r in rows}
    assert by_external["mock_acc_1"].balance == Decimal("2500.00")
    assert by_external["mock_acc_2"].balance == Decimal("5000.00")
    assert by_external["mock_acc_1"].user_id == "user-1"


@pytest.mark.asyncio
async def test_user_disconnect_survives_later_syncs(banking_service: BankingService) -> None:
    await _connect(banking_service)
    await banking_service.sync_accounts(WS)
    account = await banking_service.accounts.get(WS, "mock", "mock_acc_1")

    result = await banking_service.disconnect(WS, account_id=account.id)
    assert result.accounts_disconnected == 1

    again = await banking_service.sync_accounts(WS)
    assert again.excluded_disconnected == ["mock_acc_1"]
    assert [a.external_id for a in again.accounts] == ["mock_acc_2"]
    assert (await banking_service.accounts.get(WS, "mock", "mock_acc_1")).status == AccountStatus.DISCONNECTED

    with pytest.raises(ConnectionBlockedError):
        await banking_service.sync_transactions(WS, account_external_id="mock_acc_1")

    report = await banking_service.sync_transactions(WS)
    assert [a.account_external_id for a in report.accounts] == ["mock_acc_2"]


@pytest.mark.asyncio
async def test_explicit_reconnect_clears_user_disconnects(banking_service: BankingService) -> None:
    await _connect(banking_service)
    await banking_service.sync_accounts(WS)
    account = await banking_service.accounts.get(WS, "mock", "mock_acc_1")
    await banking_service.disconnect(WS, account_id=account.id)

    await banking_service.complete_connection(WS)
    result = await banking_service.sync_accounts(WS)

    assert result.excluded_disconnected == []
    assert (await banking_service.accounts.get(WS, "mock", "mock_acc_1")).status == AccountStatus.ACTIVE


@pytest.mark.asyncio
async def test_transaction_sync_deduplicates_and_detects_changes(banking_service: BankingService) -> None:
    await _connect(banking_service)

    first = await banking_service.sync_all(WS)
    assert first.transactions.transactions_created == 1
    second = await banking_service.sync_all(WS)
    assert second.transactions.transactions_created == 0
    assert second.transactions.transactions_updated == 0

    provider = await banking_service.get_provider("mock")
    provider.transactions["mock_tx_1"]["description"] = "Electricity bill (corrected)"
    third = await banking_service.sync_transactions(WS)
    assert third.transactions_updated == 1

    rows, total = await banking_service.transactions.list(WS, TransactionFilters())
    assert total == 1
    assert rows[0].description == "Electricity bill (corrected)"
    assert rows[0].amount == Decimal("150.00")
    assert rows[0].direction == TransactionDirection.DEBIT
    assert rows[0].booked_date == date.today() - timedelta(days=1)

    account = await banking_service.accounts.get(WS, "mock", "mock_acc_1")
    assert account.transactions_count == 1
    assert account.sync_status == SyncStatus.COMPLETE
    assert account.last_transaction_sync_at is not None
    assert len(account.sync_history) == 3
    assert account.sync_history[0]["updated"] == 1


@pytest.mark.asyncio
async def test_one_failing_account_does_not_abort_the_others(banking_service: BankingService) -> None:
    await _connect(banking_service)
    await banking_service.sync_accounts(WS)
    provider = await banking_service.get_provider("mock")
    original = provider.get_transactions

    async def flaky(account_id, *args, **kwargs):
        if account_id == "mock_acc_2":
            raise ProviderAPIError("mock error: upstream timeout", provider="mock")
        return await original(account_id, *args, **kwargs)

    provider.get_transactions = flaky
    report = await banking_service.sync_transactions(WS)

    assert report.failed_accounts == ["Savings Account"]
    assert report.transactions_created == 1
    statuses = {a.account_external_id: a.status for a in report.accounts}
    assert statuses == {"mock_acc_1": SyncStatus.COMPLETE, "mock_acc_2": SyncStatus.FAILED}

    failed = await banking_service.accounts.get(WS, "mock", "mock_acc_2")
    assert failed.sync_status == SyncStatus.FAILED
    assert failed.last_sync_error == "mock error: upstream timeout"
    assert failed.last_transaction_sync_at is None
    assert failed.sync_history[0]["status"] == "failed"


@pytest.mark.asyncio
async def test_truncated_fetch_marks_account_partial(banking_service: BankingService) -> None:
    await _connect(banking_service)
    await banking_service.sync_accounts(WS)
    provider = await banking_service.get_provider("mock")
    original = provider.get_transactions

    async def capped(account_id, *args, **kwargs):
        batch = await original(account_id, *args, **kwargs)
        return TransactionBatch(transactions=batch.transactions, truncated=True, pages=50)

    provider.get_transactions = capped
    report = await banking_service.sync_transactions(WS, account_external_id="mock_acc_1")

    assert report.accounts[0].status == SyncStatus.PARTIAL
    account = await banking_service.accounts.get(WS, "mock", "mock_acc_1")
    assert account.sync_status == SyncStatus.PARTIAL
    assert account.last_transaction_sync_at is not None


@pytest.mark.asyncio
async def test_sync_window_validation(banking_service: BankingService) -> None:
    await _connect(banking_service)
    with pytest.raises(InvalidRequestError):
        await banking_service.sync_transactions(WS, since=date(2026, 2, 1), until=date(2026, 1, 1))
    with pytest.raises(NotFoundError):
        await banking_service.sync_transactions(WS, account_external_id="unknown")


@pytest.mark.asyncio
async def test_refund_guards_run_before_any_provider_call(banking_service: BankingService) -> None:
    await _connect(banking_service)
    provider = await banking_service.get_provider("mock")
    payment = await banking_service.process_payment(WS, PaymentRequest(amount=Decimal("40.00"), description="Supplies"))
    assert payment.direction == TransactionDirection.DEBIT
    assert payment.status == TransactionStatus.COMPLETED

    with pytest.raises(RefundNotAllowedError):
        await banking_service.process_refund(WS, RefundRequest(transaction_id=payment.id, amount=Decimal("40.01")))

    await banking_service.transactions.set_status(payment.id, TransactionStatus.PENDING)
    with pytest.raises(RefundNotAllowedError):
        await banking_service.process_refund(WS, RefundRequest(transaction_id=payment.id))
    assert "process_refund" not in provider.calls


@pytest.mark.asyncio
async def test_refund_links_to_original_and_marks_it_refunded(banking_service: BankingService) -> None:
    await _connect(banking_service)
    payment = await banking_service.process_payment(WS, PaymentRequest(amount=Decimal("40.00")))

    refund = await banking_service.process_refund(
        WS, RefundRequest(transaction_id=payment.id, amount=Decimal("15.00"), reason="Damaged")
    )

    assert refund.original_transaction_id == payment.id
    assert refund.amount == Decimal("15.00")
    assert refund.direction == TransactionDirection.CREDIT
    original = await banking_service.transactions.get_by_id(WS, payment.id)
    assert original.status == TransactionStatus.REFUNDED

    # Neither a refunded payment nor a refund can be refunded again.
    with pytest.raises(RefundNotAllowedError):
        await banking_service.process_refund(WS, RefundRequest(transaction_id=payment.id))
    with pytest.raises(RefundNotAllowedError):
        await banking_service.process_refund(WS, RefundRequest(transaction_id=refund.id))

    # A provider resync of the original payment does not undo the refund bookkeeping.
    report = await banking_service.sync_all(WS)
    assert report.transactions.transactions_fetched == 3
    assert (await banking_service.transactions.get_by_id(WS, payment.id)).status == TransactionStatus.REFUNDED


@pytest.mark.asyncio
async def test_refund_of_unknown_transaction_is_not_found(banking_service: BankingService) -> None:
    await _connect(banking_service)
    payment = await banking_service.process_payment(WS, PaymentRequest(amount=Decimal("5.00")))
    with pytest.raises(NotFoundError):
        await banking_service.process_refund("ws-other", RefundRequest(transaction_id=payment.id))


@pytest.mark.asyncio
async def test_provider_calls_are_metered_with_cost(banking_service: BankingService) -> None:
    await _connect(banking_service)
    await banking_service.process_payment(WS, PaymentRequest(amount=Decimal("100.00")))

    today = utcnow().date()
    rows = await banking_service.cost_comparison(today, today, workspace_id=WS)
    assert [r["provider"] for r in rows] == ["mock"]
    row = rows[0]
    assert row["request_count"] >= 2
    assert row["error_count"] == 0
    assert row["success_rate"] == 1.0
    # 0.30 flat + 2.9% of 100.00 for the payment, plus the connect URL call.
    assert row["total_cost"] >= 3.2


@pytest.mark.asyncio
async def test_failed_provider_calls_are_metered_as_errors(banking_service: BankingService) -> None:
    await _connect(banking_service)
    provider = await banking_service.get_provider("mock")
    provider.config.failure_rate = 1.0

    with pytest.raises(ProviderAPIError):
        await banking_service.process_payment(WS, PaymentRequest(amount=Decimal("1.00")))

    today = utcnow().date()
    rows = await banking_service.metrics_repository.between(today, today, workspace_id=WS)
    payments = [r for r in rows if r.operation == "process_payment"]
    assert payments[0].error_count == 1
    assert payments[0].success_count == 0


@pytest.mark.asyncio
async def test_full_disconnect_deletes_data_and_blocks_sync(banking_service: BankingService) -> None:
    await _connect(banking_service)
    await banking_service.sync_all(WS)

    result = await banking_service.disconnect(WS)

    assert result.providers == ["mock"]
    assert result.accounts_deleted == 2
    assert result.transactions_deleted == 1
    assert result.remote_revocation_failures == []
    assert await banking_service.accounts.list(WS) == []
    conn = await banking_service.connections.get(WS, "mock")
    assert conn.state == ConnectionState.DISCONNECTED
    with pytest.raises(ConnectionBlockedError):
        await banking_service.sync_accounts(WS)


@pytest.mark.asyncio
async def test_remote_revocation_failure_does_not_block_local_deletion(banking_service: BankingService) -> None:
    await _connect(banking_service)
    await banking_service.sync_accounts(WS)
    provider = await banking_service.get_provider("mock")

    async def refuse(*args, **kwargs):
        raise ProviderAPIError("mock error: revoke refused", provider="mock")

    provider.revoke_connection = refuse
    result = await banking_service.disconnect(WS, provider_name="mock")

    assert result.remote_revocation_failures == ["mock"]
    assert result.accounts_deleted == 2


@pytest.mark.asyncio
async def test_provider_side_deactivation_is_not_sticky(banking_service: BankingService) -> None:
    await _connect(banking_service)
    await banking_service.sync_accounts(WS)

    assert await banking_service.deactivate_accounts(WS, "mock", ["mock_acc_2"]) == 1
    assert (await banking_service.accounts.get(WS, "mock", "mock_acc_2")).status == AccountStatus.INACTIVE

    await banking_service.sync_accounts(WS)
    assert (await banking_service.accounts.get(WS, "mock", "mock_acc_2")).status == AccountStatus.ACTIVE


@pytest.mark.asyncio
async def test_refresh_balance_and_connection_status(banking_service: BankingService) -> None:
    await _connect(banking_service)
    await banking_service.sync_accounts(WS)
    provider = await banking_service.get_provider("mock")
    provider.accounts["mock_acc_1"]["balance"] = 3000
    account = await banking_service.accounts.get(WS, "mock", "mock_acc_1")

    refreshed = await banking_service.refresh_balance(WS, account.id)
    assert refreshed.balance == Decimal("30.00")

    status = await banking_service.connection_status(WS)
    assert status.is_connected is True
    assert status.provider == "mock"
    assert status.accounts_count == 2
    assert status.last_sync is not None


@pytest.mark.asyncio
async def test_incremental_window_overlaps_last_sync_by_one_day(banking_service: BankingService) -> None:
    assert await banking_service.incremental_since(WS, "mock") == date.today() - timedelta(days=7)

    await _connect(banking_service)
    await banking_service.sync_accounts(WS)
    conn = await banking_service.connections.get(WS, "mock")
    assert await banking_service.incremental_since(WS, "mock") == conn.last_sync_at.date() - timedelta(days=1)


@pytest.mark.asyncio
async def test_workspaces_are_isolated(banking_service: BankingService) -> None:
    await _connect(banking_service, "ws-a")
    await _connect(banking_service, "ws-b")
    await banking_service.sync_all("ws-a")

    assert len(await banking_service.accounts.list("ws-a")) == 2
    assert await banking_service.accounts.list("ws-b") == []
    _rows, total = await banking_service.transactions.list("ws-b", TransactionFilters())
    assert total == 0


@pytest.mark.asyncio
async def test_expired_upstream_consent_marks_connection_revoked(banking_service: BankingService) -> None:
    provider = GoCardlessProvider(ProviderConfig(name="gocardless", access_token="static", retries=1))
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(request.url.path)
        if request.url.path.endswith("/requisitions/"):
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"id": "req-1", "status": "EX", "reference": f"{WS}:abc", "accounts": ["acc-1"]},
                        {"id": "req-2", "status": "CR", "reference": f"{WS}:def", "accounts": []},
                        {"id": "req-3", "status": "LN", "reference": "ws-2:xyz", "accounts": ["acc-9"]},
                    ],
                    "next": None,
                },
            )
        return httpx.Response(404)

    provider._client = lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))
    banking_service._providers["gocardless"] = provider
    await banking_service.connections.upsert(WS, "gocardless", state=ConnectionState.CONNECTED, user_id="user-1")

    with pytest.raises(ConnectionBlockedError) as exc_info:
        await banking_service.sync_accounts(WS, "gocardless")

    assert exc_info.value.state == ConnectionState.REVOKED.value
    conn = await banking_service.connections.get(WS, "gocardless")
    assert conn.state == ConnectionState.REVOKED
    assert "reconnect" in conn.last_error
    # No account of the expired requisition was read.
    assert not any("/accounts/" in path for path in requested)

    with pytest.raises(ConnectionBlockedError):
        await banking_service.sync_transactions(WS, "gocardless")
