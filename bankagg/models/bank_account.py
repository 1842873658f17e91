from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import JSON, BigInteger, Date, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bankagg.core.enums import AccountStatus, AccountType, SyncStatus
from bankagg.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from bankagg.models.sql_enums import account_status_enum, account_type_enum, sync_status_enum
from bankagg.services.bank_mapping import cents_to_amount

if TYPE_CHECKING:
    from bankagg.models.bank_transaction import BankTransaction


SYNC_HISTORY_LIMIT = 10


class BankAccount(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "bank_accounts"
    __table_args__ = (
        UniqueConstraint("workspace_id", "provider", "external_id", name="uq_bank_accounts_workspace_provider_external_id"),
        Index("ix_bank_accounts_workspace_status", "workspace_id", "status"),
    )

    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Registry name, e.g. "gocardless", "bridge", "mock"
    provider: Mapped[str] = mapped_column(String(50), nullable=False)

    # Provider-specific account identifier.
    external_id: Mapped[str] = mapped_column(String(128), nullable=False)

    # Provider-side connection the account belongs to (Bridge item, GoCardless requisition).
    item_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    account_type: Mapped[AccountType] = mapped_column(account_type_enum, nullable=False, default=AccountType.OTHER)
    status: Mapped[AccountStatus] = mapped_column(account_status_enum, nullable=False, default=AccountStatus.ACTIVE)

    balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")

    iban: Mapped[str | None] = mapped_column(String(34), nullable=True)
    institution_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    institution_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    institution_logo: Mapped[str | None] = mapped_column(String(500), nullable=True)

    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Raw provider payload for audit/debugging.
    raw: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    # --- Transaction sync tracking ---
    sync_status: Mapped[SyncStatus] = mapped_column(sync_status_enum, nullable=False, default=SyncStatus.PENDING)
    last_transaction_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transactions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    oldest_transaction_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    newest_transaction_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_history: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)

    transactions: Mapped[list[BankTransaction]] = relationship(
        "BankTransaction",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def balance(self) -> Decimal:
        return cents_to_amount(self.balance_cents)
