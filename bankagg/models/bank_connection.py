from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from bankagg.core.enums import ConnectionState
from bankagg.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from bankagg.models.sql_enums import connection_state_enum


class BankConnection(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "bank_connections"
    __table_args__ = (
        UniqueConstraint("workspace_id", "provider", name="uq_bank_connections_workspace_provider"),
        Index("ix_bank_connections_provider_external_user_ref", "provider", "external_user_ref"),
    )

    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Aggregator-side user/consent reference carried by webhooks (Bridge user uuid, GoCardless reference).
    external_user_ref: Mapped[str | None] = mapped_column(String(200), nullable=True)
    consent_reference: Mapped[str | None] = mapped_column(String(200), nullable=True)

    state: Mapped[ConnectionState] = mapped_column(
        connection_state_enum,
        nullable=False,
        default=ConnectionState.NOT_CONNECTED,
    )

    connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(String(500), nullable=True)
