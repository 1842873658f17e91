from __future__ import annotations

import hashlib
import hmac
import json
from datetime import date, timedelta
from decimal import Decimal

import httpx
import pytest

from bankagg.core.config import Settings
from bankagg.core.enums import AccountType, ConnectionState, TransactionDirection, WebhookEventCategory
from bankagg.schemas.bank import PaymentRequest
from bankagg.services.bank_errors import (
    AuthenticationError,
    ConfigurationError,
    ConnectionBlockedError,
    NotFoundError,
    NotImplementedByProviderError,
    ProviderAPIError,
)
from bankagg.services.bank_providers.base import BankingProvider, ProviderConfig
from bankagg.services.bank_providers.bridge import BridgeProvider
from bankagg.services.bank_providers.gocardless import GoCardlessProvider
from bankagg.services.bank_providers.mock import MockProvider
from bankagg.services.bank_providers.registry import ProviderRegistry


def _settings(**values) -> Settings:
    return Settings(_env_file=None, **values)


def _use_transport(provider: BankingProvider, handler) -> None:
    provider._client = lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


# --- Registry ---


@pytest.mark.asyncio
async def test_startup_falls_back_to_mock_when_configured_provider_is_unusable() -> None:
    registry = ProviderRegistry(_settings(BANKING_PROVIDER="bridge"))
    provider = await registry.create_startup_provider()
    assert provider.name == "mock"
    assert registry.default_provider == "mock"


@pytest.mark.asyncio
async def test_switching_to_an_invalid_provider_keeps_the_current_default() -> None:
    registry = ProviderRegistry(_settings())
    await registry.create_startup_provider()

    with pytest.raises(ConfigurationError):
        registry.set_default_provider("bridge")
    with pytest.raises(ConfigurationError):
        registry.set_default_provider("does-not-exist")
    assert registry.default_provider == "mock"


@pytest.mark.asyncio
async def test_switching_to_a_configured_provider_changes_the_default() -> None:
    registry = ProviderRegistry(_settings(BRIDGE_CLIENT_ID="cid", BRIDGE_CLIENT_SECRET="csecret"))
    registry.set_default_provider("Bridge")
    assert registry.default_provider == "bridge"


def test_provider_name_resolution_order() -> None:
    assert ProviderRegistry(_settings(DEFAULT_BANKING_PROVIDER="GoCardless")).resolve_name(None) == "gocardless"
    assert ProviderRegistry(_settings(BANKING_PROVIDER="bridge", DEFAULT_BANKING_PROVIDER="gocardless")).resolve_name(None) == "bridge"
    assert ProviderRegistry(_settings()).resolve_name(None) == "mock"
    assert ProviderRegistry(_settings()).resolve_name("MOCK") == "mock"


def test_config_merge_call_site_beats_provider_beats_base() -> None:
    registry = ProviderRegistry(
        _settings(
            BANKING_TIMEOUT_SECONDS=10,
            BRIDGE_CLIENT_ID="cid",
            BRIDGE_CLIENT_SECRET="csecret",
            BRIDGE_MAX_PAGES=3,
        )
    )
    cfg = registry.provider_config("bridge")
    assert cfg.timeout_seconds == 10
    assert cfg.client_id == "cid"
    assert cfg.max_pages == 3

    overridden = registry.provider_config("bridge", {"max_pages": 7, "timeout_seconds": 2})
    assert overridden.max_pages == 7
    assert overridden.timeout_seconds == 2


def test_bridge_placeholder_credentials_are_rejected() -> None:
    registry = ProviderRegistry(_settings(BRIDGE_CLIENT_ID="your_bridge_client_id", BRIDGE_CLIENT_SECRET="x"))
    with pytest.raises(ConfigurationError):
        registry.create_provider("bridge")


@pytest.mark.asyncio
async def test_create_many_skips_unconfigured_providers() -> None:
    registry = ProviderRegistry(_settings(GOCARDLESS_BANK_DATA_ACCESS_TOKEN="tok"))
    built = await registry.create_many(["gocardless", "bridge", "mock"])
    assert sorted(built) == ["gocardless", "mock"]


# --- Mock provider ---


@pytest.mark.asyncio
async def test_mock_provider_seed_data() -> None:
    provider = MockProvider(ProviderConfig(name="mock"))
    await provider.initialize()

    accounts = await provider.sync_user_accounts("user-1", "ws-1")
    assert [(a.external_id, a.balance, a.currency, a.account_type) for a in accounts] == [
        ("mock_acc_1", Decimal("2500.00"), "EUR", AccountType.CHECKING),
        ("mock_acc_2", Decimal("5000.00"), "EUR", AccountType.SAVINGS),
    ]

    batch = await provider.get_transactions("mock_acc_1", "user-1", "ws-1")
    assert len(batch.transactions) == 1
    tx = batch.transactions[0]
    assert tx.amount == Decimal("150.00")
    assert tx.direction == TransactionDirection.DEBIT
    assert tx.booked_date == date.today() - timedelta(days=1)
    assert batch.truncated is False

    assert (await provider.get_transactions("mock_acc_2", "user-1", "ws-1")).transactions == []
    with pytest.raises(NotFoundError):
        await provider.get_transactions("nope", "user-1", "ws-1")


@pytest.mark.asyncio
async def test_mock_provider_failure_rate_is_deterministic() -> None:
    provider = MockProvider(ProviderConfig(name="mock", failure_rate=1.0))
    with pytest.raises(ProviderAPIError):
        await provider.process_payment(PaymentRequest(amount=Decimal("10.00")), workspace_id="ws-1")

    ok = MockProvider(ProviderConfig(name="mock", failure_rate=0.0))
    tx = await ok.process_payment(PaymentRequest(amount=Decimal("10.00")), workspace_id="ws-1")
    assert tx.direction == TransactionDirection.DEBIT
    assert ok.accounts["mock_acc_1"]["balance"] == 250000 - 1000


@pytest.mark.asyncio
async def test_sync_all_transactions_lists_failed_accounts_without_aborting() -> None:
    provider = MockProvider(ProviderConfig(name="mock"))
    await provider.initialize()
    provider.accounts["ghost"] = {"id": "ghost", "name": "Ghost", "type": "checking", "balance": 0}
    original = provider.get_transactions

    async def flaky(account_id, *args, **kwargs):
        if account_id == "ghost":
            raise ProviderAPIError("mock error: boom", provider="mock")
        return await original(account_id, *args, **kwargs)

    provider.get_transactions = flaky
    result = await provider.sync_all_transactions("user-1", "ws-1")
    assert len(result.accounts) == 3
    assert len(result.transactions) == 1
    assert result.failed_accounts == ["ghost"]


def test_unsupported_capability_raises_not_implemented() -> None:
    provider = MockProvider(ProviderConfig(name="mock"))
    with pytest.raises(NotImplementedByProviderError):
        provider.map_to_standard_format({}, "institution")


# --- Webhook signatures ---


def test_webhook_signature_formats() -> None:
    provider = MockProvider(ProviderConfig(name="mock", webhook_secret="s3cret"))
    body = b'{"id":"evt-1","type":"test"}'
    sig = _sign("s3cret", body)

    assert provider.webhook_signature_valid(body, sig) is True
    assert provider.webhook_signature_valid(body, f"v1={sig.upper()}") is True
    assert provider.webhook_signature_valid(body, f"deadbeef, v1={sig}") is True
    assert provider.webhook_signature_valid(body + b" ", sig) is False
    assert provider.webhook_signature_valid(body, None) is False
    assert MockProvider(ProviderConfig(name="mock")).webhook_signature_valid(body, sig) is False


def test_webhook_event_id_falls_back_to_body_hash() -> None:
    provider = MockProvider(ProviderConfig(name="mock"))
    assert provider.webhook_event_id({"id": "evt-9"}, b"{}") == "evt-9"
    body = b'{"type":"test"}'
    event_id = provider.webhook_event_id(json.loads(body), body)
    assert event_id.startswith("body_")
    assert event_id == provider.webhook_event_id(json.loads(body), body)


# --- GoCardless ---


@pytest.mark.asyncio
async def test_gocardless_reauthenticates_once_on_401() -> None:
    provider = GoCardlessProvider(ProviderConfig(name="gocardless", secret_id="id", secret_key="key", retries=1))
    seen_tokens: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/token/new/"):
            return httpx.Response(200, json={"access": "tok-1", "access_expires": 86400, "refresh": "ref-1", "refresh_expires": 100000})
        if path.endswith("/token/refresh/"):
            return httpx.Response(200, json={"access": "tok-2", "access_expires": 86400})
        if path.endswith("/accounts/acc-1/balances/"):
            token = request.headers["Authorization"].removeprefix("Bearer ")
            seen_tokens.append(token)
            if token == "tok-1":
                return httpx.Response(401, json={"detail": "expired"})
            return httpx.Response(
                200,
                json={
                    "balances": [
                        {"balanceType": "closingBooked", "balanceAmount": {"amount": "1.00", "currency": "EUR"}},
                        {"balanceType": "expected", "balanceAmount": {"amount": "12.34", "currency": "EUR"}},
                    ]
                },
            )
        return httpx.Response(404)

    _use_transport(provider, handler)
    balance = await provider.get_account_balance("acc-1")

    assert seen_tokens == ["tok-1", "tok-2"]
    assert balance.balance == Decimal("12.34")
    assert balance.balance_type == "expected"


@pytest.mark.asyncio
async def test_gocardless_persistent_401_surfaces_as_authentication_error() -> None:
    provider = GoCardlessProvider(ProviderConfig(name="gocardless", access_token="static", retries=1))

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"detail": "nope"})

    _use_transport(provider, handler)
    with pytest.raises(AuthenticationError):
        await provider.get_account_balance("acc-1")


@pytest.mark.asyncio
async def test_gocardless_server_error_becomes_provider_api_error() -> None:
    provider = GoCardlessProvider(ProviderConfig(name="gocardless", access_token="static", retries=1))

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    _use_transport(provider, handler)
    with pytest.raises(ProviderAPIError) as exc_info:
        await provider.get_account_balance("acc-1")
    assert exc_info.value.upstream_status == 503
    assert "maintenance" in (exc_info.value.detail or "")
    assert "maintenance" not in exc_info.value.message


@pytest.mark.asyncio
async def test_gocardless_booked_transaction_wins_over_pending_twin() -> None:
    provider = GoCardlessProvider(ProviderConfig(name="gocardless", access_token="static", retries=1))

    def handler(request: httpx.Request) -> httpx.Response:
        tx = {"transactionId": "t-1", "bookingDate": "2026-01-02", "transactionAmount": {"amount": "-3.00", "currency": "EUR"}}
        return httpx.Response(200, json={"transactions": {"booked": [tx], "pending": [dict(tx)]}})

    _use_transport(provider, handler)
    batch = await provider.get_transactions("acc-1", None, "ws-1", since=date(2026, 1, 1), until=date(2026, 1, 31))
    assert [t.status.value for t in batch.transactions] == ["completed"]


def test_gocardless_webhooks_and_tenant_reference() -> None:
    provider = GoCardlessProvider(ProviderConfig(name="gocardless", access_token="static"))

    event = provider.handle_webhook({"type": "account.transactions.updated", "account_id": "acc-1", "reference": "ws-1:abc"})
    assert event.category == WebhookEventCategory.TRANSACTIONS_UPDATED
    assert event.account_ids == ["acc-1"]
    assert event.external_user_ref == "ws-1:abc"

    assert provider.handle_webhook({"type": "requisition.linked"}).category == WebhookEventCategory.ACCOUNT_CONNECTED
    assert provider.handle_webhook({"type": "requisition.expired"}).category == WebhookEventCategory.CONNECTION_REVOKED
    assert provider.handle_webhook({"type": "whatever"}).category == WebhookEventCategory.UNKNOWN

    assert provider.map_connection_status("LN") == ConnectionState.CONNECTED
    assert provider.map_connection_status("EX") == ConnectionState.REVOKED
    assert provider.map_connection_status("CR") == ConnectionState.PENDING_AUTHORIZATION


@pytest.mark.asyncio
async def test_gocardless_resolves_workspace_from_reference() -> None:
    provider = GoCardlessProvider(ProviderConfig(name="gocardless", access_token="static"))
    assert await provider.resolve_external_user("ws-1:abc") == "ws-1"
    assert await provider.resolve_external_user("no-separator") is None


# --- Bridge ---


def _bridge_handler(pages_available: int, calls: list[str]):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        calls.append(f"{request.method} {path}")
        if path == "/v3/aggregation/users" and request.method == "POST":
            return httpx.Response(201, json={"uuid": "user-uuid-1"})
        if path == "/v3/aggregation/authorization/token":
            return httpx.Response(200, json={"access_token": "bearer-1", "expires_at": "2999-01-01T00:00:00Z"})
        if path == "/v3/aggregation/transactions":
            after = int(request.url.params.get("after", "0"))
            page = after + 1
            payload = {
                "resources": [
                    {
                        "id": page,
                        "amount": -1.5,
                        "currency_code": "EUR",
                        "clean_description": f"Coffee {page}",
                        "date": "2026-01-10",
                        "account_id": 77,
                    }
                ],
                "pagination": {
                    "next_uri": f"/v3/aggregation/transactions?after={page}" if page < pages_available else None
                },
            }
            return httpx.Response(200, json=payload)
        return httpx.Response(404)

    return handler


def _bridge(**overrides) -> BridgeProvider:
    return BridgeProvider(
        ProviderConfig(
            name="bridge",
            client_id="cid",
            client_secret="csecret",
            page_delay_seconds=0,
            retries=1,
            **overrides,
        )
    )


@pytest.mark.asyncio
async def test_bridge_reports_revoked_item_when_no_account_is_readable() -> None:
    provider = _bridge()
    calls: list[str] = []
    fallback = _bridge_handler(pages_available=1, calls=calls)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v3/aggregation/accounts":
            return httpx.Response(200, json={"resources": [{"id": 77, "data_access": "disabled"}], "pagination": {}})
        if request.url.path == "/v3/aggregation/items":
            return httpx.Response(200, json={"resources": [{"id": 5, "status": 1003}], "pagination": {}})
        return fallback(request)

    _use_transport(provider, handler)
    with pytest.raises(ConnectionBlockedError) as exc_info:
        await provider.sync_user_accounts("user-1", "ws-1")
    assert exc_info.value.state == ConnectionState.REVOKED.value


@pytest.mark.asyncio
async def test_bridge_pagination_cap_marks_batch_truncated() -> None:
    provider = _bridge(max_pages=2)
    calls: list[str] = []
    _use_transport(provider, _bridge_handler(pages_available=5, calls=calls))

    batch = await provider.get_transactions("77", None, "ws-1")

    assert batch.truncated is True
    assert batch.pages == 2
    assert [t.external_id for t in batch.transactions] == ["1", "2"]
    # The user and its token are created once and reused across pages.
    assert calls.count("POST /v3/aggregation/users") == 1
    assert calls.count("POST /v3/aggregation/authorization/token") == 1


@pytest.mark.asyncio
async def test_bridge_full_sync_ignores_the_page_cap() -> None:
    provider = _bridge(max_pages=2)
    _use_transport(provider, _bridge_handler(pages_available=3, calls=[]))

    batch = await provider.get_transactions("77", None, "ws-1", full_sync=True)

    assert batch.truncated is False
    assert batch.pages == 3
    assert len(batch.transactions) == 3


def test_bridge_webhook_parsing() -> None:
    provider = _bridge()
    event = provider.handle_webhook(
        {
            "type": "item.account.updated",
            "content": {"user_uuid": "user-uuid-1", "account_id": 77, "item_id": 5, "nb_new_transactions": 0, "nb_updated_transactions": 0},
        }
    )
    assert event.category == WebhookEventCategory.ACCOUNT_UPDATED
    assert event.account_ids == ["77"]
    assert event.item_id == "5"
    assert event.has_transaction_changes is False
    assert event.external_user_ref == "user-uuid-1"

    assert provider.handle_webhook({"type": "TEST_EVENT"}).category == WebhookEventCategory.TEST
    assert provider.handle_webhook({"type": "item.deleted", "content": {"item_id": 5}}).category == WebhookEventCategory.CONNECTION_REVOKED

    assert provider.map_connection_status(0) == ConnectionState.CONNECTED
    assert provider.map_connection_status(1003) == ConnectionState.REVOKED
    assert provider.map_connection_status(402) == ConnectionState.PENDING_AUTHORIZATION
