from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import BigInteger, Date, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bankagg.core.enums import TransactionDirection, TransactionStatus
from bankagg.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from bankagg.models.sql_enums import transaction_direction_enum, transaction_status_enum
from bankagg.services.bank_mapping import cents_to_amount

if TYPE_CHECKING:
    from bankagg.models.bank_account import BankAccount


class BankTransaction(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "bank_transactions"
    __table_args__ = (
        UniqueConstraint("workspace_id", "provider", "external_id", name="uq_bank_tx_workspace_provider_external_id"),
        Index("ix_bank_transactions_booked_date", "booked_date"),
        Index("ix_bank_transactions_workspace_account_booked_date", "workspace_id", "account_external_id", "booked_date"),
    )

    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)

    # Provider-specific transaction identifier (or a stable hash fallback).
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)

    bank_account_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("bank_accounts.id", ondelete="CASCADE"),
        nullable=True,
    )
    account_external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Absolute value; the sign lives in `direction`.
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    direction: Mapped[TransactionDirection] = mapped_column(transaction_direction_enum, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    description: Mapped[str] = mapped_column(Text, nullable=False)
    counterparty_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)

    booked_date: Mapped[date] = mapped_column(Date, nullable=False)
    value_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[TransactionStatus] = mapped_column(
        transaction_status_enum,
        nullable=False,
        default=TransactionStatus.COMPLETED,
    )

    # Fees are never folded into amount_cents.
    fee_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    fee_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    fee_provider: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Set on refund records only.
    original_transaction_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("bank_transactions.id", ondelete="SET NULL"),
        nullable=True,
    )

    raw: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    account: Mapped[BankAccount | None] = relationship("BankAccount", back_populates="transactions")

    @property
    def amount(self) -> Decimal:
        return cents_to_amount(self.amount_cents)

    @property
    def fee_amount(self) -> Decimal:
        return cents_to_amount(self.fee_amount_cents)

    @property
    def is_refund(self) -> bool:
        return self.original_transaction_id is not None
