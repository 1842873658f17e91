from __future__ import annotations

import asyncio
import logging
import random
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

from bankagg.core.enums import AccountStatus, AccountType, TransactionStatus
from bankagg.schemas.bank import (
    AccountData,
    BalanceData,
    ConnectLink,
    FeeData,
    Institution,
    PaymentRequest,
    TransactionBatch,
    TransactionData,
)
from bankagg.schemas.bank_webhooks import (
    AccountConnectedEvent,
    AccountDisconnectedEvent,
    AccountUpdatedEvent,
    TestEvent,
    TransactionsUpdatedEvent,
    UnknownEvent,
    WebhookEvent,
)
from bankagg.services.bank_errors import NotFoundError, ProviderAPIError
from bankagg.services.bank_mapping import amount_to_cents, cents_to_amount, map_account_type, parse_iso_date, split_signed_amount
from bankagg.services.bank_providers.base import BankingProvider


logger = logging.getLogger(__name__)

MOCK_CONNECT_BASE_URL = "https://mock-bank.local/connect"

_WEBHOOK_CATEGORIES = {
    "account.connected": AccountConnectedEvent,
    "account.updated": AccountUpdatedEvent,
    "transaction.created": TransactionsUpdatedEvent,
    "transaction.updated": TransactionsUpdatedEvent,
    "transaction_updated": TransactionsUpdatedEvent,
    "account.disconnected": AccountDisconnectedEvent,
    "test": TestEvent,
}


def _seed_accounts() -> dict[str, dict[str, Any]]:
    return {
        "mock_acc_1": {
            "id": "mock_acc_1",
            "name": "Main Current Account",
            "type": "checking",
            "balance": 250000,
            "currency": "EUR",
            "iban": "FR7630001007941234567890185",
            "bank_name": "Mock Bank France",
        },
        "mock_acc_2": {
            "id": "mock_acc_2",
            "name": "Savings Account",
            "type": "savings",
            "balance": 500000,
            "currency": "EUR",
            "iban": "FR7630001007941234567890186",
            "bank_name": "Mock Bank France",
        },
    }


def _seed_transactions(today: date) -> dict[str, dict[str, Any]]:
    # Amounts are signed cents: negative means money left the account.
    return {
        "mock_tx_1": {
            "id": "mock_tx_1",
            "account_id": "mock_acc_1",
            "amount": -15000,
            "currency": "EUR",
            "description": "Electricity bill payment",
            "date": (today - timedelta(days=1)).isoformat(),
            "status": "processed",
        }
    }


class MockProvider(BankingProvider):
    """
    Deterministic in-process provider for development and tests.

    Latency is simulated with `simulate_delay_seconds`; payment failures are
    drawn from a seeded RNG so a given seed always fails the same calls.
    """

    name = "mock"
    signature_header = "X-Mock-Signature"

    def __init__(self, config) -> None:
        super().__init__(config)
        self._rng = random.Random(config.seed)
        self.accounts: dict[str, dict[str, Any]] = {}
        self.transactions: dict[str, dict[str, Any]] = {}
        self._tx_counter = 1
        self._refund_counter = 0
        self.calls: list[str] = []

    def validate_config(self) -> bool:
        return 0.0 <= self.config.failure_rate <= 1.0 and self.config.simulate_delay_seconds >= 0

    async def initialize(self) -> None:
        self.accounts = _seed_accounts()
        self.transactions = _seed_transactions(date.today())
        await super().initialize()

    async def _simulate(self, operation: str) -> None:
        self.calls.append(operation)
        if self.config.simulate_delay_seconds > 0:
            await asyncio.sleep(self.config.simulate_delay_seconds)

    def _maybe_fail(self, operation: str) -> None:
        if self.config.failure_rate > 0 and self._rng.random() < self.config.failure_rate:
            logger.info("Mock provider simulated a failure", extra={"provider": self.name, "operation": operation})
            raise ProviderAPIError(f"mock error: simulated {operation} failure", provider=self.name)

    async def _ensure_seeded(self) -> None:
        if not self.initialized:
            await self.initialize()

    async def list_institutions(self, country_code: str = "FR") -> list[Institution]:
        await self._simulate("list_institutions")
        return [
            Institution(id="MOCK_BANK_FR", name="Mock Bank France", country=country_code.upper()),
            Institution(id="MOCK_SAVINGS_FR", name="Mock Savings Bank", country=country_code.upper()),
        ]

    async def generate_connect_url(
        self,
        user_id: str,
        workspace_id: str,
        institution_hint: str | None = None,
    ) -> ConnectLink:
        await self._simulate("generate_connect_url")
        url = f"{MOCK_CONNECT_BASE_URL}?reference={workspace_id}"
        if institution_hint:
            url += f"&institution={institution_hint}"
        return ConnectLink(url=url, provider=self.name, external_user_ref=workspace_id, consent_reference=workspace_id)

    async def sync_user_accounts(self, user_id: str, workspace_id: str) -> list[AccountData]:
        await self._ensure_seeded()
        await self._simulate("sync_user_accounts")
        return [self.map_to_standard_format(raw, "account") for raw in self.accounts.values()]

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
        await self._ensure_seeded()
        await self._simulate("get_transactions")
        if account_id not in self.accounts:
            raise NotFoundError(f"Unknown mock account {account_id}", provider=self.name)
        date_from, date_to = self.default_window(since, until)
        out: list[TransactionData] = []
        for raw in self.transactions.values():
            if raw.get("account_id") != account_id:
                continue
            booked = parse_iso_date(raw.get("date"))
            if booked is None or not (date_from <= booked <= date_to):
                continue
            out.append(self.map_to_standard_format(raw, "transaction"))
        truncated = False
        if limit and not full_sync and len(out) > limit:
            out = out[:limit]
            truncated = True
        return TransactionBatch(transactions=out, truncated=truncated, pages=1)

    async def get_account_balance(self, account_id: str, *, workspace_id: str | None = None) -> BalanceData:
        await self._ensure_seeded()
        await self._simulate("get_account_balance")
        raw = self.accounts.get(account_id)
        if raw is None:
            raise NotFoundError(f"Unknown mock account {account_id}", provider=self.name)
        return self.map_to_standard_format(raw, "balance")

    async def process_payment(self, request: PaymentRequest, *, workspace_id: str) -> TransactionData:
        await self._ensure_seeded()
        await self._simulate("process_payment")
        self._maybe_fail("payment")
        self._tx_counter += 1
        account_id = request.account_external_id or "mock_acc_1"
        raw = {
            "id": f"mock_tx_{self._tx_counter}",
            "account_id": account_id,
            "amount": -amount_to_cents(request.amount),
            "currency": request.currency,
            "description": request.description,
            "date": date.today().isoformat(),
            "status": "processed",
            "metadata": dict(request.metadata),
        }
        self.transactions[raw["id"]] = raw
        if account_id in self.accounts:
            self.accounts[account_id]["balance"] += raw["amount"]
        return self.map_to_standard_format(raw, "transaction")

    async def process_refund(
        self,
        original: TransactionData,
        *,
        workspace_id: str,
        amount: Any = None,
        reason: str | None = None,
    ) -> TransactionData:
        await self._ensure_seeded()
        await self._simulate("process_refund")
        refund_cents = amount_to_cents(amount if amount is not None else original.amount)
        self._refund_counter += 1
        raw = {
            "id": f"mock_refund_{self._refund_counter}",
            "account_id": original.account_external_id,
            "amount": refund_cents if original.direction == "debit" else -refund_cents,
            "currency": original.currency,
            "description": reason or f"Refund of {original.external_id}",
            "date": date.today().isoformat(),
            "status": "processed",
            "metadata": {"original_transaction_id": original.external_id},
        }
        self.transactions[raw["id"]] = raw
        return self.map_to_standard_format(raw, "transaction")

    async def revoke_connection(self, workspace_id: str, *, item_id: str | None = None) -> int:
        await self._simulate("revoke_connection")
        return 1

    async def resolve_external_user(self, external_user_ref: str) -> str | None:
        return external_user_ref or None

    def handle_webhook(self, payload: dict[str, Any]) -> WebhookEvent:
        event_type = str(payload.get("type") or "")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        common = {
            "provider": self.name,
            "provider_event_type": event_type,
            "external_user_ref": payload.get("workspace_id") or data.get("workspace_id"),
            "raw": payload,
        }
        account_id = data.get("account_id") or payload.get("account_id")
        account_ids = [str(account_id)] if account_id else []
        event_cls = _WEBHOOK_CATEGORIES.get(event_type)
        if event_cls is None:
            return UnknownEvent(**common)
        if event_cls in (AccountUpdatedEvent, TransactionsUpdatedEvent, AccountDisconnectedEvent):
            return event_cls(account_ids=account_ids, **common)
        return event_cls(**common)

    # --- Mapping ---

    def _map_account(self, raw: dict[str, Any], **context: Any) -> AccountData:
        return AccountData(
            external_id=raw["id"],
            name=raw.get("name") or "Mock Account",
            account_type=map_account_type(raw.get("type"), default=AccountType.CHECKING),
            status=AccountStatus.ACTIVE,
            balance=cents_to_amount(int(raw.get("balance") or 0)),
            currency=raw.get("currency") or "EUR",
            iban=raw.get("iban"),
            institution_id="MOCK_BANK_FR",
            institution_name=raw.get("bank_name"),
            raw=dict(raw),
        )

    def _map_transaction(self, raw: dict[str, Any], **context: Any) -> TransactionData:
        amount, direction = split_signed_amount(cents_to_amount(int(raw.get("amount") or 0)))
        status = {
            "processed": TransactionStatus.COMPLETED,
            "pending": TransactionStatus.PENDING,
            "failed": TransactionStatus.FAILED,
            "cancelled": TransactionStatus.CANCELLED,
        }.get(str(raw.get("status")), TransactionStatus.COMPLETED)
        currency = raw.get("currency") or "EUR"
        return TransactionData(
            external_id=raw["id"],
            account_external_id=raw.get("account_id"),
            amount=amount,
            direction=direction,
            currency=currency,
            description=raw.get("description") or "Transaction",
            booked_date=parse_iso_date(raw.get("date")) or date.today(),
            status=status,
            fees=FeeData(amount=Decimal("0"), currency=currency, provider=self.name),
            raw=dict(raw),
        )

    def _map_balance(self, raw: dict[str, Any], **context: Any) -> BalanceData:
        return BalanceData(
            account_external_id=raw["id"],
            balance=cents_to_amount(int(raw.get("balance") or 0)),
            currency=raw.get("currency") or "EUR",
            balance_type="current",
            reference_date=date.today(),
        )
