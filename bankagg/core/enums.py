from __future__ import annotations

from enum import StrEnum


class AccountType(StrEnum):
    CHECKING = "checking"
    SAVINGS = "savings"
    CREDIT = "credit"
    LOAN = "loan"
    INVESTMENT = "investment"
    OTHER = "other"


class AccountStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    CLOSED = "closed"
    # Set by an explicit user action only; automated syncs never clear it.
    DISCONNECTED = "disconnected"


class SyncStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


class TransactionDirection(StrEnum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionStatus(StrEnum):
    COMPLETED = "completed"
    PENDING = "pending"
    CANCELLED = "cancelled"
    FAILED = "failed"
    REFUNDED = "refunded"


class ConnectionState(StrEnum):
    NOT_CONNECTED = "not_connected"
    PENDING_AUTHORIZATION = "pending_authorization"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    REVOKED = "revoked"


class CacheDataType(StrEnum):
    ACCOUNTS = "accounts"
    TRANSACTIONS = "transactions"
    BALANCES = "balances"
    STATS = "stats"


class WebhookEventCategory(StrEnum):
    ACCOUNT_CONNECTED = "account_connected"
    ACCOUNT_UPDATED = "account_updated"
    TRANSACTIONS_UPDATED = "transactions_updated"
    ACCOUNT_DISCONNECTED = "account_disconnected"
    CONNECTION_REVOKED = "connection_revoked"
    TEST = "test"
    UNKNOWN = "unknown"


class ProviderOperation(StrEnum):
    LIST_INSTITUTIONS = "list_institutions"
    GENERATE_CONNECT_URL = "generate_connect_url"
    SYNC_ACCOUNTS = "sync_accounts"
    GET_TRANSACTIONS = "get_transactions"
    GET_BALANCE = "get_balance"
    PROCESS_PAYMENT = "process_payment"
    PROCESS_REFUND = "process_refund"
    REVOKE_CONNECTION = "revoke_connection"
