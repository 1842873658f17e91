from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import date, timedelta
from typing import Any, ClassVar

import httpx
from pydantic import BaseModel, ConfigDict

from bankagg.core.enums import ConnectionState
from bankagg.schemas.bank import (
    AccountData,
    BalanceData,
    ConnectLink,
    Institution,
    PaymentRequest,
    ProviderSyncResult,
    TransactionBatch,
    TransactionData,
)
from bankagg.schemas.bank_webhooks import WebhookEvent
from bankagg.services.bank_errors import (
    AuthenticationError,
    BankingError,
    ConnectionBlockedError,
    InvalidRequestError,
    NotImplementedByProviderError,
    ProviderAPIError,
)


logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {500, 502, 503, 504}
_SIGNATURE_VERSION_PREFIX = "v1="


class ProviderConfig(BaseModel):
    """Merged configuration handed to a provider instance by the registry."""

    model_config = ConfigDict(extra="ignore")

    name: str
    environment: str = "sandbox"
    timeout_seconds: float = 30.0
    retries: int = 3
    log_requests: bool = False

    base_url: str | None = None
    api_version: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    secret_id: str | None = None
    secret_key: str | None = None
    access_token: str | None = None
    redirect_url: str | None = None
    webhook_secret: str | None = None

    page_size: int = 500
    max_pages: int = 50
    page_delay_seconds: float = 0.1
    default_days_back: int = 90
    max_historical_days: int = 90
    access_valid_for_days: int = 90

    simulate_delay_seconds: float = 0.0
    failure_rate: float = 0.0
    seed: int = 42


class BankingProvider(ABC):
    """
    Capability set every aggregation backend exposes.

    Capabilities a provider does not support raise `NotImplementedByProviderError`
    instead of silently returning nothing.
    """

    name: ClassVar[str]
    signature_header: ClassVar[str] = "X-Webhook-Signature"

    def __init__(self, config: ProviderConfig) -> None:
        self.config = config
        self.initialized = False

    async def initialize(self) -> None:
        self.initialized = True

    async def close(self) -> None:
        self.initialized = False

    @abstractmethod
    def validate_config(self) -> bool: ...

    def _not_implemented(self, capability: str) -> NotImplementedByProviderError:
        return NotImplementedByProviderError(
            f"{capability}() is not implemented by provider {self.name}",
            provider=self.name,
        )

    async def list_institutions(self, country_code: str = "FR") -> list[Institution]:
        raise self._not_implemented("list_institutions")

    async def generate_connect_url(
        self,
        user_id: str,
        workspace_id: str,
        institution_hint: str | None = None,
    ) -> ConnectLink:
        raise self._not_implemented("generate_connect_url")

    async def sync_user_accounts(self, user_id: str, workspace_id: str) -> list[AccountData]:
        raise self._not_implemented("sync_user_accounts")

    async def get_transactions(
        self,
        account_id: str,
        user_id: str | None,
        workspace_id: str,
        *,
        since: date | None = None,
        until: date | None = None,
        limit: int | None = None,
        full_sync: bool = False,
    ) -> TransactionBatch:
        raise self._not_implemented("get_transactions")

    async def sync_all_transactions(
        self,
        user_id: str | None,
        workspace_id: str,
        *,
        since: date | None = None,
        until: date | None = None,
        full_sync: bool = False,
    ) -> ProviderSyncResult:
        """
        Accounts plus every account's transactions, straight from the provider.

        One failing account does not abort the others; it is listed in
        `failed_accounts` instead.
        """
        accounts = await self.sync_user_accounts(user_id or "", workspace_id)
        result = ProviderSyncResult(accounts=accounts)
        for account in accounts:
            try:
                batch = await self.get_transactions(
                    account.external_id,
                    user_id,
                    workspace_id,
                    since=since,
                    until=until,
                    full_sync=full_sync,
                )
            except BankingError:
                logger.warning(
                    "Provider transaction fetch failed",
                    extra={"provider": self.name, "workspace_id": workspace_id, "account_id": account.external_id},
                )
                result.failed_accounts.append(account.external_id)
                continue
            result.transactions.extend(batch.transactions)
        return result

    async def get_account_balance(self, account_id: str, *, workspace_id: str | None = None) -> BalanceData:
        raise self._not_implemented("get_account_balance")

    async def process_payment(self, request: PaymentRequest, *, workspace_id: str) -> TransactionData:
        raise self._not_implemented("process_payment")

    async def process_refund(
        self,
        original: TransactionData,
        *,
        workspace_id: str,
        amount: Any = None,
        reason: str | None = None,
    ) -> TransactionData:
        raise self._not_implemented("process_refund")

    async def revoke_connection(self, workspace_id: str, *, item_id: str | None = None) -> int:
        """Best-effort provider-side revocation; returns the number of remote objects removed."""
        raise self._not_implemented("revoke_connection")

    def handle_webhook(self, payload: dict[str, Any]) -> WebhookEvent:
        raise self._not_implemented("handle_webhook")

    async def resolve_external_user(self, external_user_ref: str) -> str | None:
        """Provider-side lookup of the workspace behind an external user reference."""
        return None

    def map_connection_status(self, raw_status: Any) -> ConnectionState:
        return ConnectionState.CONNECTED

    def ensure_consent_live(self, raw_statuses: Iterable[Any]) -> None:
        """
        Raise when no upstream consent is live and at least one was revoked or expired.

        Pending consents alone do not block; the user may still be completing the flow.
        """
        states = {self.map_connection_status(s) for s in raw_statuses}
        if ConnectionState.REVOKED in states and ConnectionState.CONNECTED not in states:
            raise ConnectionBlockedError(
                f"{self.name} consent expired or was revoked; reconnect to sync",
                provider=self.name,
                state=ConnectionState.REVOKED.value,
            )

    # --- Canonical mapping ---

    def map_to_standard_format(self, raw: dict[str, Any], kind: str, **context: Any) -> Any:
        mappers = {
            "account": self._map_account,
            "transaction": self._map_transaction,
            "balance": self._map_balance,
            "institution": self._map_institution,
        }
        mapper = mappers.get(kind)
        if mapper is None:
            raise InvalidRequestError(f"Unknown mapping kind: {kind}", provider=self.name)
        return mapper(raw, **context)

    def _map_account(self, raw: dict[str, Any], **context: Any) -> AccountData:
        raise self._not_implemented("map_to_standard_format[account]")

    def _map_transaction(self, raw: dict[str, Any], **context: Any) -> TransactionData | None:
        raise self._not_implemented("map_to_standard_format[transaction]")

    def _map_balance(self, raw: dict[str, Any], **context: Any) -> BalanceData:
        raise self._not_implemented("map_to_standard_format[balance]")

    def _map_institution(self, raw: dict[str, Any], **context: Any) -> Institution:
        raise self._not_implemented("map_to_standard_format[institution]")

    # --- Errors ---

    def handle_provider_error(self, exc: Exception) -> BankingError:
        """Normalize anything a provider call raised into the banking error taxonomy."""
        if isinstance(exc, BankingError):
            if exc.provider is None:
                exc.provider = self.name
            return exc
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            if status in (401, 403):
                return AuthenticationError(f"{self.name} error: authentication rejected ({status})", provider=self.name)
            return ProviderAPIError(
                f"{self.name} error: upstream request failed ({status})",
                provider=self.name,
                upstream_status=status,
                detail=exc.response.text[:1000],
            )
        if isinstance(exc, httpx.TransportError):
            return ProviderAPIError(f"{self.name} error: network failure", provider=self.name, detail=str(exc))
        return ProviderAPIError(f"{self.name} error: {exc}", provider=self.name)

    # --- Webhooks ---

    def webhook_signature_valid(self, body: bytes, header_value: str | None) -> bool:
        """
        HMAC-SHA256 over the raw body, hex encoded.

        Accepts an optional "v1=" version tag and several comma-separated
        signatures; comparison is case-insensitive and constant-time.
        """
        secret = self.config.webhook_secret
        if not secret or not header_value:
            return False
        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest().lower()
        for candidate in header_value.split(","):
            sig = candidate.strip()
            if sig.lower().startswith(_SIGNATURE_VERSION_PREFIX):
                sig = sig[len(_SIGNATURE_VERSION_PREFIX):]
            if sig and hmac.compare_digest(sig.strip().lower(), expected):
                return True
        return False

    def webhook_event_id(self, payload: dict[str, Any], body: bytes) -> str:
        for key in ("id", "event_id", "eventId"):
            v = payload.get(key)
            if v is not None and str(v).strip():
                return str(v).strip()[:200]
        return f"body_{hashlib.sha256(body).hexdigest()[:32]}"

    # --- Helpers ---

    def default_window(self, since: date | None, until: date | None) -> tuple[date, date]:
        end = until or date.today()
        start = since or (end - timedelta(days=self.config.default_days_back))
        return start, end


class HttpBankingProvider(BankingProvider):
    """Shared httpx plumbing: auth headers, a single re-auth on 401, retries on 5xx/transport errors."""

    default_base_url: ClassVar[str] = ""

    @property
    def base_url(self) -> str:
        return (self.config.base_url or self.default_base_url).rstrip("/")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(timeout=self.config.timeout_seconds))

    async def _auth_headers(self, client: httpx.AsyncClient, *, user: str | None = None) -> dict[str, str]:
        return {"Accept": "application/json"}

    def _invalidate_token(self, *, user: str | None = None) -> None:
        return None

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        *,
        auth: bool = True,
        user: str | None = None,
        allow_status: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        url = self._url(path)
        attempts = max(1, int(self.config.retries))
        reauthenticated = False
        attempt = 0
        while True:
            attempt += 1
            headers = await self._auth_headers(client, user=user) if auth else {"Accept": "application/json"}
            if self.config.log_requests:
                logger.info("Provider request", extra={"provider": self.name, "method": method, "url": url})
            try:
                r = await client.request(method, url, headers=headers, **kwargs)
            except httpx.TransportError as e:
                if attempt < attempts:
                    await asyncio.sleep(min(2 ** (attempt - 1), 8))
                    continue
                raise self.handle_provider_error(e) from e

            if r.status_code in allow_status:
                return r
            if r.status_code == 401 and auth and not reauthenticated:
                # One local re-authentication before surfacing the failure.
                reauthenticated = True
                self._invalidate_token(user=user)
                continue
            if r.status_code in _RETRYABLE_STATUS and attempt < attempts:
                await asyncio.sleep(min(2 ** (attempt - 1), 8))
                continue
            try:
                r.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.warning(
                    "Provider request failed",
                    extra={"provider": self.name, "method": method, "url": url, "status": r.status_code},
                )
                raise self.handle_provider_error(e) from e
            return r

    @staticmethod
    def _json(r: httpx.Response) -> Any:
        if r.status_code == 204 or not r.content:
            return None
        return r.json()
