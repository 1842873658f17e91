"""create banking aggregation schema

Revision ID: 0f1a2b3c4d5e
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "0f1a2b3c4d5e"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    account_type_enum = postgresql.ENUM(
        "checking", "savings", "credit", "loan", "investment", "other", name="bank_account_type", create_type=False
    )
    account_status_enum = postgresql.ENUM(
        "active", "inactive", "suspended", "closed", "disconnected", name="bank_account_status", create_type=False
    )
    sync_status_enum = postgresql.ENUM(
        "pending", "in_progress", "complete", "partial", "failed", name="bank_sync_status", create_type=False
    )
    direction_enum = postgresql.ENUM("credit", "debit", name="bank_transaction_direction", create_type=False)
    tx_status_enum = postgresql.ENUM(
        "completed", "pending", "cancelled", "failed", "refunded", name="bank_transaction_status", create_type=False
    )
    connection_state_enum = postgresql.ENUM(
        "not_connected",
        "pending_authorization",
        "connected",
        "disconnected",
        "revoked",
        name="bank_connection_state",
        create_type=False,
    )

    op.execute(
        "CREATE TYPE bank_account_type AS ENUM ('checking', 'savings', 'credit', 'loan', 'investment', 'other');"
    )
    op.execute(
        "CREATE TYPE bank_account_status AS ENUM ('active', 'inactive', 'suspended', 'closed', 'disconnected');"
    )
    op.execute("CREATE TYPE bank_sync_status AS ENUM ('pending', 'in_progress', 'complete', 'partial', 'failed');")
    op.execute("CREATE TYPE bank_transaction_direction AS ENUM ('credit', 'debit');")
    op.execute(
        "CREATE TYPE bank_transaction_status AS ENUM ('completed', 'pending', 'cancelled', 'failed', 'refunded');"
    )
    op.execute(
        "CREATE TYPE bank_connection_state AS ENUM "
        "('not_connected', 'pending_authorization', 'connected', 'disconnected', 'revoked');"
    )

    op.create_table(
        "bank_accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("workspace_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("external_id", sa.String(length=128), nullable=False),
        sa.Column("item_id", sa.String(length=128), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("account_type", account_type_enum, nullable=False),
        sa.Column("status", account_status_enum, nullable=False),
        sa.Column("balance_cents", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
        sa.Column("iban", sa.String(length=34), nullable=True),
        sa.Column("institution_id", sa.String(length=128), nullable=True),
        sa.Column("institution_name", sa.String(length=200), nullable=True),
        sa.Column("institution_logo", sa.String(length=500), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("sync_status", sync_status_enum, nullable=False, server_default="pending"),
        sa.Column("last_transaction_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transactions_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("oldest_transaction_date", sa.Date(), nullable=True),
        sa.Column("newest_transaction_date", sa.Date(), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("sync_history", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("workspace_id", "provider", "external_id", name="uq_bank_accounts_workspace_provider_external_id"),
    )
    op.create_index("ix_bank_accounts_workspace_status", "bank_accounts", ["workspace_id", "status"])

    op.create_table(
        "bank_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("workspace_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("external_id", sa.String(length=200), nullable=False),
        sa.Column("bank_account_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("account_external_id", sa.String(length=128), nullable=True),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("direction", direction_enum, nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("counterparty_name", sa.String(length=200), nullable=True),
        sa.Column("category", sa.String(length=64), nullable=True),
        sa.Column("booked_date", sa.Date(), nullable=False),
        sa.Column("value_date", sa.Date(), nullable=True),
        sa.Column("status", tx_status_enum, nullable=False, server_default="completed"),
        sa.Column("fee_amount_cents", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("fee_currency", sa.String(length=3), nullable=True),
        sa.Column("fee_provider", sa.String(length=50), nullable=True),
        sa.Column("original_transaction_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("raw", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["bank_account_id"], ["bank_accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["original_transaction_id"], ["bank_transactions.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("workspace_id", "provider", "external_id", name="uq_bank_tx_workspace_provider_external_id"),
    )
    op.create_index("ix_bank_transactions_booked_date", "bank_transactions", ["booked_date"])
    op.create_index(
        "ix_bank_transactions_workspace_account_booked_date",
        "bank_transactions",
        ["workspace_id", "account_external_id", "booked_date"],
    )

    op.create_table(
        "bank_connections",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("workspace_id", sa.String(length=64), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("external_user_ref", sa.String(length=200), nullable=True),
        sa.Column("consent_reference", sa.String(length=200), nullable=True),
        sa.Column("state", connection_state_enum, nullable=False, server_default="not_connected"),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("workspace_id", "provider", name="uq_bank_connections_workspace_provider"),
    )
    op.create_index(
        "ix_bank_connections_provider_external_user_ref",
        "bank_connections",
        ["provider", "external_user_ref"],
    )

    op.create_table(
        "processed_webhook_events",
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("event_id", sa.String(length=200), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=True),
        sa.Column("workspace_id", sa.String(length=64), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("provider", "event_id"),
    )
    op.create_index("ix_processed_webhook_events_processed_at", "processed_webhook_events", ["processed_at"])

    op.create_table(
        "bank_api_metrics",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("operation", sa.String(length=50), nullable=False),
        sa.Column("workspace_id", sa.String(length=64), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_response_ms", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("min_response_ms", sa.Integer(), nullable=True),
        sa.Column("max_response_ms", sa.Integer(), nullable=True),
        sa.Column("total_cost", sa.Numeric(14, 4), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "operation", "workspace_id", "day", name="uq_bank_api_metrics_rollup"),
    )

    op.create_table(
        "job_locks",
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_by", sa.String(length=200), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("job_locks")
    op.drop_table("bank_api_metrics")
    op.drop_index("ix_processed_webhook_events_processed_at", table_name="processed_webhook_events")
    op.drop_table("processed_webhook_events")
    op.drop_index("ix_bank_connections_provider_external_user_ref", table_name="bank_connections")
    op.drop_table("bank_connections")
    op.drop_index("ix_bank_transactions_workspace_account_booked_date", table_name="bank_transactions")
    op.drop_index("ix_bank_transactions_booked_date", table_name="bank_transactions")
    op.drop_table("bank_transactions")
    op.drop_index("ix_bank_accounts_workspace_status", table_name="bank_accounts")
    op.drop_table("bank_accounts")

    op.execute("DROP TYPE IF EXISTS bank_connection_state;")
    op.execute("DROP TYPE IF EXISTS bank_transaction_status;")
    op.execute("DROP TYPE IF EXISTS bank_transaction_direction;")
    op.execute("DROP TYPE IF EXISTS bank_sync_status;")
    op.execute("DROP TYPE IF EXISTS bank_account_status;")
    op.execute("DROP TYPE IF EXISTS bank_account_type;")
