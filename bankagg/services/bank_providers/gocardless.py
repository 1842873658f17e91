from __future__ import annotations

import logging
import uuid
from datetime import UTC, date, datetime, timedelta
from typing import Any

import httpx

from bankagg.core.enums import AccountStatus, AccountType, ConnectionState, TransactionStatus
from bankagg.schemas.bank import (
    AccountData,
    BalanceData,
    ConnectLink,
    FeeData,
    Institution,
    TransactionBatch,
    TransactionData,
)
from bankagg.schemas.bank_webhooks import (
    AccountConnectedEvent,
    AccountDisconnectedEvent,
    AccountUpdatedEvent,
    ConnectionRevokedEvent,
    TestEvent,
    TransactionsUpdatedEvent,
    UnknownEvent,
    WebhookEvent,
)
from bankagg.services.bank_errors import (
    AuthenticationError,
    ConfigurationError,
    InvalidRequestError,
    ProviderAPIError,
)
from bankagg.services.bank_mapping import (
    clamp,
    first_text,
    map_account_type,
    parse_iso_date,
    split_signed_amount,
    stable_hash_id,
    to_decimal,
)
from bankagg.services.bank_providers.base import HttpBankingProvider


logger = logging.getLogger(__name__)

REQUISITION_LINKED = "LN"
_REQUISITION_REVOKED = {"EX", "RJ", "SU"}

# Preferred balance types, most useful first.
_BALANCE_PREFERENCE = ("expected", "interimAvailable", "closingBooked", "interimBooked")

_ACCOUNT_STATUS = {
    "READY": AccountStatus.ACTIVE,
    "DISCOVERED": AccountStatus.ACTIVE,
    "PROCESSING": AccountStatus.ACTIVE,
    "SUSPENDED": AccountStatus.SUSPENDED,
    "EXPIRED": AccountStatus.INACTIVE,
    "ERROR": AccountStatus.INACTIVE,
}

# Token lifetimes are shortened by this margin so a token is never used at the edge of expiry.
_TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)


def _remittance_info(raw: dict[str, Any]) -> str | None:
    v = raw.get("remittanceInformationUnstructured")
    if isinstance(v, str) and v.strip():
        return v.strip()
    v = raw.get("remittanceInformationStructured")
    if isinstance(v, str) and v.strip():
        return v.strip()
    v = raw.get("remittanceInformationUnstructuredArray")
    if isinstance(v, list):
        parts = [str(p).strip() for p in v if str(p).strip()]
        if parts:
            return " | ".join(parts)
    return None


def _transaction_external_id(raw: dict[str, Any]) -> str:
    # Prefer the provider's stable IDs if present.
    for k in ("transactionId", "internalTransactionId", "entryReference"):
        v = raw.get(k)
        if v is None:
            continue
        s = str(v).strip()
        if s:
            return s[:200]

    # Fallback: stable hash of key fields.
    amount = raw.get("transactionAmount") or {}
    return stable_hash_id(
        {
            "bookingDate": first_text(raw, ("bookingDate", "bookingDateTime", "valueDate", "transactionDate")),
            "valueDate": first_text(raw, ("valueDate",)),
            "amount": amount.get("amount"),
            "currency": amount.get("currency"),
            "counterparty": first_text(raw, ("creditorName", "debtorName", "counterpartyName")),
            "remittance": _remittance_info(raw),
        }
    )


def _select_balance(balances: Any) -> dict[str, Any] | None:
    if not isinstance(balances, list):
        return None
    items = [b for b in balances if isinstance(b, dict)]
    if not items:
        return None
    by_type = {str(b.get("balanceType")): b for b in items}
    for preferred in _BALANCE_PREFERENCE:
        if preferred in by_type:
            return by_type[preferred]
    return items[0]


def _belongs_to_workspace(reference: Any, workspace_id: str) -> bool:
    ref = str(reference or "")
    return ref == workspace_id or ref.startswith(f"{workspace_id}:")


class GoCardlessProvider(HttpBankingProvider):
    """
    GoCardless Bank Account Data (formerly Nordigen).

    Consent is an end-user agreement plus a requisition; the requisition
    reference is "<workspace_id>:<nonce>" so requisitions can be traced back
    to their workspace without local state.
    """

    name = "gocardless"
    signature_header = "Webhook-Signature"
    default_base_url = "https://bankaccountdata.gocardless.com/api/v2"

    def __init__(self, config) -> None:
        super().__init__(config)
        self._access_token: str | None = config.access_token
        self._access_expires_at: datetime | None = None
        self._refresh_token: str | None = None
        self._refresh_expires_at: datetime | None = None

    def validate_config(self) -> bool:
        if self.config.access_token:
            return True
        return bool(self.config.secret_id and self.config.secret_key)

    # --- Auth ---

    def _has_secret_pair(self) -> bool:
        return bool(self.config.secret_id and self.config.secret_key)

    def _token_valid(self, now: datetime) -> bool:
        if not self._access_token:
            return False
        return self._access_expires_at is None or now < self._access_expires_at

    async def _auth_headers(self, client: httpx.AsyncClient, *, user: str | None = None) -> dict[str, str]:
        token = await self._ensure_token(client)
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    def _invalidate_token(self, *, user: str | None = None) -> None:
        # A static access token cannot be renewed; keep it and let the retry surface the 401.
        if self._has_secret_pair():
            self._access_token = None
            self._access_expires_at = None

    async def _ensure_token(self, client: httpx.AsyncClient) -> str:
        now = datetime.now(UTC)
        if self._token_valid(now):
            return str(self._access_token)
        if not self._has_secret_pair():
            raise ConfigurationError(
                "Missing GoCardless Bank Account Data credentials. "
                "Set GOCARDLESS_BANK_DATA_SECRET_ID + GOCARDLESS_BANK_DATA_SECRET_KEY or GOCARDLESS_BANK_DATA_ACCESS_TOKEN.",
                provider=self.name,
            )
        if self._refresh_token and self._refresh_expires_at and now < self._refresh_expires_at:
            try:
                await self._refresh_access_token(client)
                return str(self._access_token)
            except (AuthenticationError, ProviderAPIError):
                logger.info("GoCardless token refresh failed; requesting a new token", extra={"provider": self.name})
        await self._new_token(client)
        return str(self._access_token)

    async def _new_token(self, client: httpx.AsyncClient) -> None:
        r = await self._request(
            client,
            "POST",
            "/token/new/",
            auth=False,
            json={"secret_id": self.config.secret_id, "secret_key": self.config.secret_key},
        )
        data = self._json(r) or {}
        access = data.get("access")
        if not access:
            raise AuthenticationError("GoCardless token/new response missing 'access'", provider=self.name)
        now = datetime.now(UTC)
        self._access_token = str(access)
        self._access_expires_at = now + timedelta(seconds=int(data.get("access_expires") or 86400)) - _TOKEN_EXPIRY_MARGIN
        refresh = data.get("refresh")
        self._refresh_token = str(refresh) if refresh else None
        self._refresh_expires_at = (
            now + timedelta(seconds=int(data.get("refresh_expires") or 2592000)) - _TOKEN_EXPIRY_MARGIN if refresh else None
        )

    async def _refresh_access_token(self, client: httpx.AsyncClient) -> None:
        r = await self._request(client, "POST", "/token/refresh/", auth=False, json={"refresh": self._refresh_token})
        data = self._json(r) or {}
        access = data.get("access")
        if not access:
            raise AuthenticationError("GoCardless token/refresh response missing 'access'", provider=self.name)
        self._access_token = str(access)
        self._access_expires_at = (
            datetime.now(UTC) + timedelta(seconds=int(data.get("access_expires") or 86400)) - _TOKEN_EXPIRY_MARGIN
        )

    # --- Requisitions ---

    async def _paginate(self, client: httpx.AsyncClient, path: str, *, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        next_url: str | None = path
        next_params = params
        while next_url:
            payload = self._json(await self._request(client, "GET", next_url, params=next_params)) or {}
            results = payload.get("results")
            if isinstance(results, list):
                out.extend([x for x in results if isinstance(x, dict)])
            next_url = payload.get("next")
            next_params = None  # 'next' already encodes paging parameters.
        return out

    async def _workspace_requisitions(self, client: httpx.AsyncClient, workspace_id: str) -> list[dict[str, Any]]:
        requisitions = await self._paginate(client, "/requisitions/", params={"limit": 100})
        return [r for r in requisitions if _belongs_to_workspace(r.get("reference"), workspace_id)]

    async def _requisition_accounts(self, client: httpx.AsyncClient, requisition: dict[str, Any]) -> list[str]:
        accounts = requisition.get("accounts")
        if not isinstance(accounts, list):
            # Some list endpoints might not include accounts; fetch detail.
            r = await self._request(client, "GET", f"/requisitions/{requisition.get('id')}/", allow_status=(404,))
            detail = self._json(r) if r.status_code < 400 else None
            accounts = detail.get("accounts") if isinstance(detail, dict) else None
        if not isinstance(accounts, list):
            return []
        return [str(a).strip() for a in accounts if str(a).strip()]

    def map_connection_status(self, raw_status: Any) -> ConnectionState:
        status = str(raw_status or "").upper()
        if status == REQUISITION_LINKED:
            return ConnectionState.CONNECTED
        if status in _REQUISITION_REVOKED:
            return ConnectionState.REVOKED
        return ConnectionState.PENDING_AUTHORIZATION

    # --- Capabilities ---

    async def list_institutions(self, country_code: str = "FR") -> list[Institution]:
        async with self._client() as client:
            r = await self._request(client, "GET", "/institutions/", params={"country": country_code.upper()})
        data = self._json(r) or []
        return [self.map_to_standard_format(raw, "institution") for raw in data if isinstance(raw, dict)]

    async def generate_connect_url(
        self,
        user_id: str,
        workspace_id: str,
        institution_hint: str | None = None,
    ) -> ConnectLink:
        if not institution_hint:
            raise InvalidRequestError("GoCardless requires an institution id to start a connection", provider=self.name)
        if not self.config.redirect_url:
            raise ConfigurationError("GOCARDLESS_REDIRECT_URL is not configured", provider=self.name)

        reference = f"{workspace_id}:{uuid.uuid4().hex[:12]}"
        async with self._client() as client:
            agreement = self._json(
                await self._request(
                    client,
                    "POST",
                    "/agreements/enduser/",
                    json={
                        "institution_id": institution_hint,
                        "max_historical_days": self.config.max_historical_days,
                        "access_valid_for_days": self.config.access_valid_for_days,
                        "access_scope": ["balances", "details", "transactions"],
                    },
                )
            ) or {}
            requisition = self._json(
                await self._request(
                    client,
                    "POST",
                    "/requisitions/",
                    json={
                        "redirect": self.config.redirect_url,
                        "institution_id": institution_hint,
                        "reference": reference,
                        "agreement": agreement.get("id"),
                        "user_language": "EN",
                    },
                )
            ) or {}

        link = requisition.get("link")
        if not link:
            raise ProviderAPIError("GoCardless requisition response missing 'link'", provider=self.name)
        logger.info(
            "GoCardless requisition created",
            extra={"provider": self.name, "workspace_id": workspace_id, "requisition_id": requisition.get("id")},
        )
        return ConnectLink(
            url=str(link),
            provider=self.name,
            external_user_ref=reference,
            consent_reference=str(requisition.get("id")) if requisition.get("id") else None,
            expires_at=datetime.now(UTC) + timedelta(days=self.config.access_valid_for_days),
        )

    async def sync_user_accounts(self, user_id: str, workspace_id: str) -> list[AccountData]:
        out: list[AccountData] = []
        seen: set[str] = set()
        institutions: dict[str, dict[str, Any]] = {}
        async with self._client() as client:
            requisitions = await self._workspace_requisitions(client, workspace_id)
            self.ensure_consent_live(r.get("status") for r in requisitions)
            for requisition in requisitions:
                if self.map_connection_status(requisition.get("status")) != ConnectionState.CONNECTED:
                    continue
                for account_id in await self._requisition_accounts(client, requisition):
                    if account_id in seen:
                        continue
                    seen.add(account_id)
                    try:
                        raw = await self._fetch_account(client, account_id, requisition, institutions)
                    except (ProviderAPIError, AuthenticationError):
                        # Best effort: one unreadable account must not hide the others.
                        logger.warning(
                            "GoCardless account fetch failed",
                            extra={"provider": self.name, "workspace_id": workspace_id, "account_id": account_id},
                        )
                        continue
                    out.append(self.map_to_standard_format(raw, "account"))
        return out

    async def _fetch_account(
        self,
        client: httpx.AsyncClient,
        account_id: str,
        requisition: dict[str, Any],
        institutions: dict[str, dict[str, Any]],
    ) -> dict[str, Any]:
        metadata = self._json(await self._request(client, "GET", f"/accounts/{account_id}/")) or {}
        details = self._json(await self._request(client, "GET", f"/accounts/{account_id}/details/")) or {}
        balances = self._json(await self._request(client, "GET", f"/accounts/{account_id}/balances/")) or {}

        institution_id = str(metadata.get("institution_id") or requisition.get("institution_id") or "")
        if institution_id and institution_id not in institutions:
            r = await self._request(client, "GET", f"/institutions/{institution_id}/", allow_status=(404,))
            institutions[institution_id] = (self._json(r) or {}) if r.status_code < 400 else {}
        return {
            "id": account_id,
            "requisition_id": requisition.get("id"),
            "metadata": metadata,
            "account": details.get("account") if isinstance(details, dict) else None,
            "balances": balances.get("balances") if isinstance(balances, dict) else None,
            "institution": institutions.get(institution_id) or {"id": institution_id or None},
        }

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
        date_from, date_to = self.default_window(since, until)
        async with self._client() as client:
            r = await self._request(
                client,
                "GET",
                f"/accounts/{account_id}/transactions/",
                params={"date_from": date_from.isoformat(), "date_to": date_to.isoformat()},
            )
        payload = self._json(r) or {}
        tx = payload.get("transactions") if isinstance(payload, dict) else None
        if not isinstance(tx, dict):
            return TransactionBatch(pages=1)

        extracted: dict[str, TransactionData] = {}
        for status, items in (
            (TransactionStatus.COMPLETED, tx.get("booked") or []),
            (TransactionStatus.PENDING, tx.get("pending") or []),
        ):
            if not isinstance(items, list):
                continue
            for raw in items:
                if not isinstance(raw, dict):
                    continue
                mapped = self.map_to_standard_format(raw, "transaction", account_id=account_id, status=status)
                if mapped is None:
                    continue
                # Booked wins over a pending twin with the same id.
                extracted.setdefault(mapped.external_id, mapped)

        transactions = list(extracted.values())
        truncated = False
        if limit and not full_sync and len(transactions) > limit:
            transactions = transactions[:limit]
            truncated = True
        return TransactionBatch(transactions=transactions, truncated=truncated, pages=1)

    async def get_account_balance(self, account_id: str, *, workspace_id: str | None = None) -> BalanceData:
        async with self._client() as client:
            r = await self._request(client, "GET", f"/accounts/{account_id}/balances/")
        payload = self._json(r) or {}
        return self.map_to_standard_format(payload, "balance", account_id=account_id)

    async def revoke_connection(self, workspace_id: str, *, item_id: str | None = None) -> int:
        removed = 0
        async with self._client() as client:
            if item_id:
                requisition_ids = [item_id]
            else:
                requisition_ids = [str(r["id"]) for r in await self._workspace_requisitions(client, workspace_id) if r.get("id")]
            for requisition_id in requisition_ids:
                await self._request(client, "DELETE", f"/requisitions/{requisition_id}/", allow_status=(404,))
                removed += 1
        return removed

    async def resolve_external_user(self, external_user_ref: str) -> str | None:
        workspace_id, sep, _nonce = external_user_ref.partition(":")
        return workspace_id if sep and workspace_id else None

    def handle_webhook(self, payload: dict[str, Any]) -> WebhookEvent:
        event_type = str(payload.get("type") or payload.get("event") or "")
        common = {
            "provider": self.name,
            "provider_event_type": event_type,
            "external_user_ref": payload.get("reference"),
            "occurred_at": payload.get("created_at"),
            "raw": payload,
        }
        account_ids = [str(payload["account_id"])] if payload.get("account_id") else []
        if event_type == "test":
            return TestEvent(**common)
        if event_type == "requisition.linked":
            return AccountConnectedEvent(item_id=payload.get("requisition_id"), **common)
        if event_type in {"requisition.expired", "requisition.rejected", "requisition.suspended"}:
            return ConnectionRevokedEvent(item_id=payload.get("requisition_id"), **common)
        if event_type in {"account.updated", "account.balances.updated"}:
            return AccountUpdatedEvent(account_ids=account_ids, has_transaction_changes=False, **common)
        if event_type in {"account.transactions.updated", "account.transactions.created"}:
            return TransactionsUpdatedEvent(account_ids=account_ids, **common)
        if event_type in {"account.suspended", "account.expired"}:
            return AccountDisconnectedEvent(account_ids=account_ids, **common)
        return UnknownEvent(**common)

    # --- Mapping ---

    def _map_institution(self, raw: dict[str, Any], **context: Any) -> Institution:
        countries = raw.get("countries")
        days = raw.get("transaction_total_days")
        return Institution(
            id=str(raw.get("id")),
            name=str(raw.get("name") or raw.get("id")),
            country=countries[0] if isinstance(countries, list) and countries else None,
            bic=raw.get("bic") or None,
            logo=raw.get("logo") or None,
            transaction_total_days=int(days) if str(days or "").isdigit() else None,
        )

    def _map_account(self, raw: dict[str, Any], **context: Any) -> AccountData:
        details = raw.get("account") if isinstance(raw.get("account"), dict) else {}
        metadata = raw.get("metadata") if isinstance(raw.get("metadata"), dict) else {}
        institution = raw.get("institution") if isinstance(raw.get("institution"), dict) else {}
        balance = _select_balance(raw.get("balances")) or {}
        amount = balance.get("balanceAmount") or {}

        iban = first_text(details, ("iban",))
        name = first_text(details, ("name", "displayName", "ownerName", "product"))
        if not name:
            name = f"Account {iban[-4:]}" if iban else "Account"
        currency = first_text(details, ("currency",)) or amount.get("currency") or "EUR"

        return AccountData(
            external_id=str(raw.get("id")),
            name=clamp(name, 200),
            account_type=map_account_type(
                first_text(details, ("product", "cashAccountType")),
                default=AccountType.CHECKING,
            ),
            status=_ACCOUNT_STATUS.get(str(metadata.get("status") or "").upper(), AccountStatus.ACTIVE),
            balance=to_decimal(amount.get("amount")) or 0,
            currency=str(currency)[:3],
            iban=clamp(iban, 34),
            item_id=str(raw["requisition_id"]) if raw.get("requisition_id") else None,
            institution_id=institution.get("id") or metadata.get("institution_id"),
            institution_name=institution.get("name"),
            institution_logo=institution.get("logo"),
            raw=raw,
        )

    def _map_transaction(
        self,
        raw: dict[str, Any],
        *,
        account_id: str | None = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        **context: Any,
    ) -> TransactionData | None:
        amt = raw.get("transactionAmount") or {}
        signed = to_decimal(amt.get("amount"))
        currency = amt.get("currency") or context.get("default_currency")
        if signed is None or currency is None:
            return None
        amount, direction = split_signed_amount(signed)

        counterparty = first_text(raw, ("creditorName", "debtorName", "counterpartyName"))
        description = (
            _remittance_info(raw)
            or counterparty
            or first_text(raw, ("additionalInformation", "proprietaryBankTransactionCode"))
            or "Transaction"
        )
        booked = parse_iso_date(raw.get("bookingDate")) or parse_iso_date(raw.get("valueDate")) or date.today()
        return TransactionData(
            external_id=_transaction_external_id(raw),
            account_external_id=account_id,
            amount=amount,
            direction=direction,
            currency=str(currency)[:3],
            description=description,
            booked_date=booked,
            value_date=parse_iso_date(raw.get("valueDate")),
            status=status,
            category=first_text(raw, ("bankTransactionCode",)),
            counterparty_name=clamp(counterparty, 200),
            fees=FeeData(currency=str(currency)[:3], provider=self.name),
            raw=raw,
        )

    def _map_balance(self, raw: dict[str, Any], *, account_id: str | None = None, **context: Any) -> BalanceData:
        balance = _select_balance(raw.get("balances")) or {}
        amount = balance.get("balanceAmount") or {}
        return BalanceData(
            account_external_id=str(account_id or raw.get("id") or ""),
            balance=to_decimal(amount.get("amount")) or 0,
            currency=str(amount.get("currency") or "EUR")[:3],
            balance_type=balance.get("balanceType"),
            reference_date=parse_iso_date(balance.get("referenceDate")),
        )
