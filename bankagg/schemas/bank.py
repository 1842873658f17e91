from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bankagg.core.enums import (
    AccountStatus,
    AccountType,
    ConnectionState,
    SyncStatus,
    TransactionDirection,
    TransactionStatus,
)


# --- Canonical shapes every provider maps into ---


class Institution(BaseModel):
    id: str
    name: str
    country: str | None = None
    bic: str | None = None
    logo: str | None = None
    transaction_total_days: int | None = None


class FeeData(BaseModel):
    amount: Decimal = Decimal("0")
    currency: str | None = None
    provider: str | None = None


class AccountData(BaseModel):
    external_id: str
    name: str
    account_type: AccountType = AccountType.CHECKING
    status: AccountStatus = AccountStatus.ACTIVE
    balance: Decimal = Decimal("0")
    currency: str = "EUR"
    iban: str | None = None
    item_id: str | None = None
    institution_id: str | None = None
    institution_name: str | None = None
    institution_logo: str | None = None
    raw: dict[str, Any] | None = None


class TransactionData(BaseModel):
    external_id: str
    account_external_id: str | None = None
    amount: Decimal = Field(ge=0)
    direction: TransactionDirection
    currency: str = "EUR"
    description: str
    booked_date: date
    value_date: date | None = None
    status: TransactionStatus = TransactionStatus.COMPLETED
    category: str | None = None
    counterparty_name: str | None = None
    fees: FeeData = Field(default_factory=FeeData)
    raw: dict[str, Any] | None = None


class BalanceData(BaseModel):
    account_external_id: str
    balance: Decimal
    currency: str = "EUR"
    balance_type: str | None = None
    reference_date: date | None = None


class TransactionBatch(BaseModel):
    transactions: list[TransactionData] = Field(default_factory=list)
    # True when a page cap stopped the fetch before the feed was exhausted.
    truncated: bool = False
    pages: int = 0


class ProviderSyncResult(BaseModel):
    accounts: list[AccountData] = Field(default_factory=list)
    transactions: list[TransactionData] = Field(default_factory=list)
    failed_accounts: list[str] = Field(default_factory=list)


class ConnectLink(BaseModel):
    url: str
    provider: str
    # Reference the aggregator later echoes back (webhooks, callbacks).
    external_user_ref: str | None = None
    consent_reference: str | None = None
    expires_at: datetime | None = None


class PaymentRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    currency: str = "EUR"
    description: str = "Payment"
    account_external_id: str | None = None
    beneficiary_iban: str | None = None
    beneficiary_name: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RefundRequest(BaseModel):
    transaction_id: UUID
    amount: Decimal | None = Field(None, gt=0)
    reason: str | None = None


# --- API output ---


class BankAccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: str
    provider: str
    external_id: str
    name: str
    account_type: AccountType
    status: AccountStatus
    balance: Decimal
    currency: str
    iban: str | None
    institution_name: str | None
    institution_logo: str | None
    last_synced_at: datetime | None
    sync_status: SyncStatus
    last_transaction_sync_at: datetime | None
    transactions_count: int
    oldest_transaction_date: date | None
    newest_transaction_date: date | None
    last_sync_error: str | None
    created_at: datetime
    updated_at: datetime


class FeeOut(BaseModel):
    amount: Decimal
    currency: str | None
    provider: str | None


class BankTransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: str
    provider: str
    external_id: str
    account_external_id: str | None
    amount: Decimal
    direction: TransactionDirection
    currency: str
    description: str
    counterparty_name: str | None
    category: str | None
    booked_date: date
    value_date: date | None
    status: TransactionStatus
    fee_amount: Decimal
    fee_currency: str | None
    original_transaction_id: UUID | None
    created_at: datetime
    updated_at: datetime


class BankTransactionPageOut(BaseModel):
    items: list[BankTransactionOut]
    total: int
    page: int
    limit: int
    from_cache: bool = False


class BankAccountListOut(BaseModel):
    items: list[BankAccountOut]
    from_cache: bool = False


class BalanceOut(BaseModel):
    account_id: UUID
    external_id: str
    name: str
    balance: Decimal
    currency: str
    last_synced_at: datetime | None


class BalancesOut(BaseModel):
    items: list[BalanceOut]
    total_by_currency: dict[str, Decimal]
    from_cache: bool = False


class BankStatsOut(BaseModel):
    accounts_count: int
    transactions_count: int
    credits_by_currency: dict[str, Decimal]
    debits_by_currency: dict[str, Decimal]
    period_start: date
    period_end: date
    from_cache: bool = False


_DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


class SyncTransactionsIn(BaseModel):
    account_id: str | None = None
    since: str | None = Field(None, pattern=_DATE_PATTERN)
    until: str | None = Field(None, pattern=_DATE_PATTERN)
    full_sync: bool = False

    @field_validator("since", "until")
    @classmethod
    def _valid_calendar_date(cls, v: str | None) -> str | None:
        if v is not None:
            date.fromisoformat(v)
        return v

    def since_date(self) -> date | None:
        return date.fromisoformat(self.since) if self.since else None

    def until_date(self) -> date | None:
        return date.fromisoformat(self.until) if self.until else None


class AccountSyncOut(BaseModel):
    provider: str
    accounts: list[BankAccountOut]
    excluded_disconnected: list[str]


class AccountTransactionSyncOut(BaseModel):
    account_external_id: str
    account_name: str
    status: SyncStatus
    fetched: int
    created: int
    updated: int
    duration_ms: int
    error: str | None = None


class TransactionSyncOut(BaseModel):
    provider: str
    since: date
    until: date
    full_sync: bool
    accounts: list[AccountTransactionSyncOut]
    transactions_fetched: int
    transactions_created: int
    transactions_updated: int
    failed_accounts: list[str]


class FullSyncOut(BaseModel):
    accounts: AccountSyncOut
    transactions: TransactionSyncOut


class ConnectUrlOut(BaseModel):
    provider: str
    url: str
    expires_at: datetime | None = None


class ConnectionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider: str
    state: ConnectionState
    external_user_ref: str | None
    connected_at: datetime | None
    last_sync_at: datetime | None


class ConnectionStatusOut(BaseModel):
    is_connected: bool
    provider: str | None
    accounts_count: int
    last_sync: datetime | None
    connections: list[ConnectionOut]


class DisconnectIn(BaseModel):
    account_id: UUID | None = None
    item_id: str | None = None
    provider: str | None = None


class DisconnectOut(BaseModel):
    providers: list[str]
    accounts_disconnected: int
    accounts_deleted: int
    transactions_deleted: int
    remote_revocation_failures: list[str]


class ProviderSwitchIn(BaseModel):
    provider: str


class ProvidersOut(BaseModel):
    default: str
    available: list[str]


class CostComparisonOut(BaseModel):
    provider: str
    request_count: int
    success_count: int
    error_count: int
    success_rate: float
    avg_response_ms: float
    total_cost: float
    cost_per_request: float


class CacheStatusOut(BaseModel):
    backend: str
    available: bool
    degraded: bool
    ttls: dict[str, int]


class CacheInvalidateOut(BaseModel):
    workspace_id: str
    invalidated: list[str]
