from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
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
from bankagg.services.bank_errors import AuthenticationError, InvalidRequestError, ProviderAPIError
from bankagg.services.bank_mapping import (
    clamp,
    first_text,
    map_account_type,
    parse_iso_date,
    parse_iso_datetime,
    split_signed_amount,
    to_decimal,
)
from bankagg.services.bank_providers.base import HttpBankingProvider


logger = logging.getLogger(__name__)

_PLACEHOLDER_CREDENTIALS = {"your_bridge_client_id", "your_bridge_client_secret", "changeme"}
_USER_TOKEN_TTL = timedelta(hours=2)
_TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)
_FALLBACK_INSTITUTION_NAME = "Bank"

_ACCOUNT_TYPES = {
    "checking": AccountType.CHECKING,
    "savings": AccountType.SAVINGS,
    "special": AccountType.SAVINGS,
    "card": AccountType.CREDIT,
    "credit_card": AccountType.CREDIT,
    "loan": AccountType.LOAN,
    "investment": AccountType.INVESTMENT,
    "brokerage": AccountType.INVESTMENT,
    "life_insurance": AccountType.INVESTMENT,
    "pea": AccountType.INVESTMENT,
    "market": AccountType.INVESTMENT,
    "unknown": AccountType.OTHER,
}


def _category_ranges(*groups: tuple[range, str]) -> dict[int, str]:
    out: dict[int, str] = {}
    for ids, category in groups:
        for category_id in ids:
            out[category_id] = category
    return out


# Bridge category ids -> internal expense categories.
BRIDGE_CATEGORIES = _category_ranges(
    (range(270, 275), "meals"),
    (range(280, 289), "travel"),
    (range(290, 292), "accommodation"),
    (range(300, 301), "office_supplies"),
    (range(301, 302), "hardware"),
    (range(302, 304), "office_supplies"),
    (range(310, 311), "subscriptions"),
    (range(311, 312), "software"),
    (range(312, 315), "subscriptions"),
    (range(320, 323), "services"),
    (range(330, 331), "rent"),
    (range(331, 335), "utilities"),
    (range(335, 336), "maintenance"),
    (range(340, 341), "services"),
    (range(341, 345), "insurance"),
    (range(350, 355), "taxes"),
    (range(360, 364), "other"),
    (range(370, 373), "training"),
    (range(380, 381), "services"),
    (range(381, 382), "marketing"),
    (range(382, 383), "services"),
    (range(383, 384), "salaries"),
    (range(384, 385), "services"),
)
DEFAULT_CATEGORY = "other"

_ITEM_STATUS_PENDING = {402, 429, 430, 1010, 1100}
_ITEM_STATUS_REVOKED = {1003, 1005, 1007}


def map_bridge_category(category_id: Any) -> str:
    try:
        return BRIDGE_CATEGORIES.get(int(category_id), DEFAULT_CATEGORY)
    except (TypeError, ValueError):
        return DEFAULT_CATEGORY


@dataclass(slots=True)
class _UserToken:
    token: str
    user_uuid: str
    expires_at: datetime


class BridgeProvider(HttpBankingProvider):
    """
    Bridge API v3 aggregation.

    Application calls are authenticated with client credentials headers;
    per-user calls additionally carry a short-lived bearer token. The Bridge
    user is created with `external_user_id = workspace_id`.
    """

    name = "bridge"
    signature_header = "BridgeApi-Signature"
    default_base_url = "https://api.bridgeapi.io"

    def __init__(self, config) -> None:
        super().__init__(config)
        self._user_tokens: dict[str, _UserToken] = {}
        self._user_uuids: dict[str, str] = {}
        self._institutions: dict[str, dict[str, Any]] = {}

    def validate_config(self) -> bool:
        client_id = (self.config.client_id or "").strip()
        client_secret = (self.config.client_secret or "").strip()
        if not client_id or not client_secret:
            return False
        return client_id.lower() not in _PLACEHOLDER_CREDENTIALS and client_secret.lower() not in _PLACEHOLDER_CREDENTIALS

    # --- Auth ---

    def _app_headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "Bridge-Version": self.config.api_version or "2025-01-15",
            "Client-Id": self.config.client_id or "",
            "Client-Secret": self.config.client_secret or "",
        }

    async def _auth_headers(self, client: httpx.AsyncClient, *, user: str | None = None) -> dict[str, str]:
        headers = self._app_headers()
        if user is not None:
            headers["Authorization"] = f"Bearer {await self._user_token(client, user)}"
        return headers

    def _invalidate_token(self, *, user: str | None = None) -> None:
        if user is not None:
            self._user_tokens.pop(user, None)

    async def _ensure_user(self, client: httpx.AsyncClient, workspace_id: str) -> str:
        cached = self._user_uuids.get(workspace_id)
        if cached:
            return cached
        r = await self._request(
            client,
            "POST",
            "/v3/aggregation/users",
            json={"external_user_id": workspace_id},
            allow_status=(409,),
        )
        if r.status_code == 409:
            existing = await self._find_user(client, workspace_id)
            if existing is None:
                raise ProviderAPIError("Bridge reported an existing user that cannot be found", provider=self.name)
            user_uuid = existing
        else:
            user_uuid = str((self._json(r) or {}).get("uuid") or "")
        if not user_uuid:
            raise ProviderAPIError("Bridge user response missing 'uuid'", provider=self.name)
        self._user_uuids[workspace_id] = user_uuid
        return user_uuid

    async def _find_user(self, client: httpx.AsyncClient, workspace_id: str) -> str | None:
        r = await self._request(client, "GET", "/v3/aggregation/users", params={"external_user_id": workspace_id})
        payload = self._json(r) or {}
        resources = payload.get("resources") if isinstance(payload, dict) else payload
        for user in resources or []:
            if isinstance(user, dict) and str(user.get("external_user_id")) == workspace_id and user.get("uuid"):
                return str(user["uuid"])
        return None

    async def _user_token(self, client: httpx.AsyncClient, workspace_id: str) -> str:
        now = datetime.now(UTC)
        cached = self._user_tokens.get(workspace_id)
        if cached is not None and now < cached.expires_at:
            return cached.token

        user_uuid = await self._ensure_user(client, workspace_id)
        r = await self._request(client, "POST", "/v3/aggregation/authorization/token", json={"user_uuid": user_uuid})
        data = self._json(r) or {}
        token = data.get("access_token")
        if not token:
            raise AuthenticationError("Bridge authorization response missing 'access_token'", provider=self.name)
        expires_at = parse_iso_datetime(data.get("expires_at")) or (now + _USER_TOKEN_TTL)
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        self._user_tokens[workspace_id] = _UserToken(
            token=str(token),
            user_uuid=user_uuid,
            expires_at=expires_at - _TOKEN_EXPIRY_MARGIN,
        )
        return str(token)

    # --- Pagination ---

    async def _paginate(
        self,
        client: httpx.AsyncClient,
        path: str,
        *,
        user: str,
        params: dict[str, Any] | None = None,
        max_pages: int | None = None,
    ) -> tuple[list[dict[str, Any]], bool, int]:
        """
        Follow `pagination.next_uri` until exhausted or `max_pages` is hit.

        Returns (items, truncated, pages).
        """
        items: list[dict[str, Any]] = []
        next_path: str | None = path
        next_params = params
        pages = 0
        while next_path:
            if max_pages is not None and pages >= max_pages:
                return items, True, pages
            if pages and self.config.page_delay_seconds > 0:
                await asyncio.sleep(self.config.page_delay_seconds)
            payload = self._json(await self._request(client, "GET", next_path, user=user, params=next_params)) or {}
            pages += 1
            resources = payload.get("resources")
            if isinstance(resources, list):
                items.extend([x for x in resources if isinstance(x, dict)])
            pagination = payload.get("pagination") or {}
            next_path = pagination.get("next_uri") if isinstance(pagination, dict) else None
            next_params = None  # next_uri already carries the cursor.
        return items, False, pages

    # --- Capabilities ---

    def map_connection_status(self, raw_status: Any) -> ConnectionState:
        try:
            code = int(raw_status)
        except (TypeError, ValueError):
            return ConnectionState.PENDING_AUTHORIZATION
        if code == 0:
            return ConnectionState.CONNECTED
        if code in _ITEM_STATUS_REVOKED:
            return ConnectionState.REVOKED
        if code in _ITEM_STATUS_PENDING:
            return ConnectionState.PENDING_AUTHORIZATION
        return ConnectionState.PENDING_AUTHORIZATION

    async def list_institutions(self, country_code: str = "FR") -> list[Institution]:
        async with self._client() as client:
            r = await self._request(client, "GET", "/v3/providers", params={"country_code": country_code.upper(), "limit": 200})
        payload = self._json(r) or {}
        out: list[Institution] = []
        for raw in payload.get("resources") or []:
            if not isinstance(raw, dict):
                continue
            capabilities = raw.get("capabilities")
            if isinstance(capabilities, list) and "aggregation" not in capabilities:
                continue
            out.append(self.map_to_standard_format(raw, "institution", country=country_code.upper()))
        return out

    async def generate_connect_url(
        self,
        user_id: str,
        workspace_id: str,
        institution_hint: str | None = None,
    ) -> ConnectLink:
        body: dict[str, Any] = {"user_email": f"workspace-{workspace_id}@example.com"}
        if self.config.redirect_url:
            body["callback_url"] = self.config.redirect_url
        if institution_hint:
            try:
                body["provider_id"] = int(institution_hint)
            except ValueError as e:
                raise InvalidRequestError("Bridge provider id must be numeric", provider=self.name) from e

        async with self._client() as client:
            r = await self._request(client, "POST", "/v3/aggregation/connect-sessions", user=workspace_id, json=body)
            user_uuid = self._user_uuids.get(workspace_id)
        data = self._json(r) or {}
        url = first_text(data, ("redirect_url", "url", "connect_url", "session_url"))
        if not url:
            raise ProviderAPIError("Bridge connect session response missing a URL", provider=self.name)
        return ConnectLink(
            url=url,
            provider=self.name,
            external_user_ref=user_uuid,
            consent_reference=str(data["id"]) if data.get("id") else None,
        )

    async def _institution(self, client: httpx.AsyncClient, provider_id: Any) -> dict[str, Any]:
        key = str(provider_id or "")
        if not key:
            return {}
        if key not in self._institutions:
            try:
                r = await self._request(client, "GET", f"/v3/providers/{key}", allow_status=(404,))
                self._institutions[key] = (self._json(r) or {}) if r.status_code < 400 else {}
            except ProviderAPIError:
                logger.warning("Bridge institution lookup failed", extra={"provider": self.name, "provider_id": key})
                return {}
        return self._institutions[key]

    async def sync_user_accounts(self, user_id: str, workspace_id: str) -> list[AccountData]:
        async with self._client() as client:
            items, _truncated, _pages = await self._paginate(client, "/v3/aggregation/accounts", user=workspace_id)
            out: list[AccountData] = []
            seen: set[str] = set()
            for raw in items:
                if raw.get("data_access", "enabled") != "enabled":
                    continue
                external_id = str(raw.get("id") or "")
                if not external_id or external_id in seen:
                    continue
                seen.add(external_id)
                institution = await self._institution(client, raw.get("provider_id"))
                out.append(self.map_to_standard_format(raw, "account", institution=institution))
            if not out:
                # Nothing readable: tell expired consent apart from an empty bank.
                connections, _truncated, _pages = await self._paginate(client, "/v3/aggregation/items", user=workspace_id)
                self.ensure_consent_live(item.get("status") for item in connections)
        return out

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
        params = {
            "account_id": account_id,
            "limit": self.config.page_size,
            "since": date_from.isoformat(),
            "until": date_to.isoformat(),
        }
        async with self._client() as client:
            items, truncated, pages = await self._paginate(
                client,
                "/v3/aggregation/transactions",
                user=workspace_id,
                params=params,
                max_pages=None if full_sync else self.config.max_pages,
            )

        transactions = [self.map_to_standard_format(raw, "transaction", account_id=account_id) for raw in items]
        if limit and not full_sync and len(transactions) > limit:
            transactions = transactions[:limit]
            truncated = True
        if truncated:
            logger.info(
                "Bridge transaction fetch hit the page cap",
                extra={"provider": self.name, "account_id": account_id, "pages": pages},
            )
        return TransactionBatch(transactions=transactions, truncated=truncated, pages=pages)

    async def get_account_balance(self, account_id: str, *, workspace_id: str | None = None) -> BalanceData:
        if not workspace_id:
            raise InvalidRequestError("Bridge balance lookups need the workspace id", provider=self.name)
        async with self._client() as client:
            r = await self._request(client, "GET", f"/v3/aggregation/accounts/{account_id}", user=workspace_id)
        return self.map_to_standard_format(self._json(r) or {}, "balance")

    async def revoke_connection(self, workspace_id: str, *, item_id: str | None = None) -> int:
        async with self._client() as client:
            if item_id:
                await self._request(client, "DELETE", f"/v3/aggregation/items/{item_id}", user=workspace_id, allow_status=(404,))
                return 1
            user_uuid = self._user_uuids.get(workspace_id) or await self._find_user(client, workspace_id)
            if user_uuid is None:
                return 0
            await self._request(client, "DELETE", f"/v3/aggregation/users/{user_uuid}", allow_status=(404,))
        self._user_tokens.pop(workspace_id, None)
        self._user_uuids.pop(workspace_id, None)
        return 1

    async def resolve_external_user(self, external_user_ref: str) -> str | None:
        async with self._client() as client:
            r = await self._request(client, "GET", f"/v3/aggregation/users/{external_user_ref}", allow_status=(404,))
        if r.status_code == 404:
            return None
        external = (self._json(r) or {}).get("external_user_id")
        return str(external) if external else None

    def handle_webhook(self, payload: dict[str, Any]) -> WebhookEvent:
        event_type = str(payload.get("type") or "")
        content = payload.get("content") if isinstance(payload.get("content"), dict) else {}
        common = {
            "provider": self.name,
            "provider_event_type": event_type,
            "external_user_ref": content.get("user_uuid"),
            "occurred_at": payload.get("timestamp") if isinstance(payload.get("timestamp"), str) else None,
            "raw": payload,
        }
        account_ids = [str(content["account_id"])] if content.get("account_id") is not None else []
        item_id = str(content["item_id"]) if content.get("item_id") is not None else None

        if event_type == "TEST_EVENT":
            return TestEvent(**common)
        if event_type in {"item.created", "account.connected"}:
            return AccountConnectedEvent(item_id=item_id, **common)
        if event_type == "item.refreshed":
            return AccountUpdatedEvent(item_id=item_id, full_refresh=bool(content.get("full_refresh")), **common)
        if event_type in {"item.account.updated", "item.account.created"}:
            changes = [content.get("nb_new_transactions"), content.get("nb_updated_transactions")]
            known = [int(c) for c in changes if isinstance(c, int)]
            return AccountUpdatedEvent(
                item_id=item_id,
                account_ids=account_ids,
                full_refresh=event_type == "item.account.created",
                has_transaction_changes=(not known) or any(c > 0 for c in known),
                **common,
            )
        if event_type in {"transaction.created", "transaction.updated"}:
            return TransactionsUpdatedEvent(account_ids=account_ids, **common)
        if event_type in {"account.disconnected", "item.account.deleted"}:
            return AccountDisconnectedEvent(account_ids=account_ids, **common)
        if event_type == "item.deleted":
            return ConnectionRevokedEvent(item_id=item_id, **common)
        return UnknownEvent(**common)

    # --- Mapping ---

    def _map_institution(self, raw: dict[str, Any], *, country: str | None = None, **context: Any) -> Institution:
        images = raw.get("images") if isinstance(raw.get("images"), dict) else {}
        return Institution(
            id=str(raw.get("id")),
            name=str(raw.get("name") or raw.get("id")),
            country=raw.get("country_code") or country,
            logo=images.get("logo") or raw.get("logo_url"),
        )

    def _map_account(self, raw: dict[str, Any], *, institution: dict[str, Any] | None = None, **context: Any) -> AccountData:
        institution = institution or {}
        images = institution.get("images") if isinstance(institution.get("images"), dict) else {}
        raw_type = str(raw.get("type") or "").lower()
        account_type = _ACCOUNT_TYPES.get(raw_type) or map_account_type(raw_type, default=AccountType.OTHER)
        enabled = raw.get("data_access", "enabled") == "enabled"
        return AccountData(
            external_id=str(raw.get("id")),
            name=clamp(str(raw.get("name") or "Account"), 200),
            account_type=account_type,
            status=AccountStatus.ACTIVE if enabled else AccountStatus.INACTIVE,
            balance=to_decimal(raw.get("balance")) or 0,
            currency=str(raw.get("currency_code") or "EUR")[:3],
            iban=clamp(raw.get("iban"), 34),
            item_id=str(raw["item_id"]) if raw.get("item_id") is not None else None,
            institution_id=str(raw["provider_id"]) if raw.get("provider_id") is not None else None,
            institution_name=institution.get("name") or _FALLBACK_INSTITUTION_NAME,
            institution_logo=images.get("logo"),
            raw=raw,
        )

    def _map_transaction(self, raw: dict[str, Any], *, account_id: str | None = None, **context: Any) -> TransactionData:
        amount, direction = split_signed_amount(to_decimal(raw.get("amount")) or 0)
        currency = str(raw.get("currency_code") or "EUR")[:3]
        if raw.get("deleted"):
            status = TransactionStatus.CANCELLED
        elif raw.get("future"):
            status = TransactionStatus.PENDING
        else:
            status = TransactionStatus.COMPLETED
        booked = (
            parse_iso_date(raw.get("booking_date"))
            or parse_iso_date(raw.get("date"))
            or parse_iso_date(raw.get("transaction_date"))
            or date.today()
        )
        return TransactionData(
            external_id=str(raw.get("id")),
            account_external_id=str(raw.get("account_id") or account_id or "") or None,
            amount=amount,
            direction=direction,
            currency=currency,
            description=first_text(raw, ("clean_description", "provider_description")) or "Transaction",
            booked_date=booked,
            value_date=parse_iso_date(raw.get("value_date")),
            status=status,
            category=map_bridge_category(raw.get("category_id")),
            fees=FeeData(currency=currency, provider=self.name),
            raw=raw,
        )

    def _map_balance(self, raw: dict[str, Any], **context: Any) -> BalanceData:
        return BalanceData(
            account_external_id=str(raw.get("id") or ""),
            balance=to_decimal(raw.get("balance")) or 0,
            currency=str(raw.get("currency_code") or "EUR")[:3],
            balance_type="current",
            reference_date=parse_iso_date(raw.get("updated_at")),
        )
