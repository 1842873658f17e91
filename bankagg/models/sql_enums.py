from __future__ import annotations

from enum import StrEnum

from sqlalchemy import Enum

from bankagg.core.enums import (
    AccountStatus,
    AccountType,
    ConnectionState,
    SyncStatus,
    TransactionDirection,
    TransactionStatus,
)


def _enum(enum_cls: type[StrEnum], name: str) -> Enum:
    # Persist the lowercase values, not the member names.
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


account_type_enum = _enum(AccountType, "bank_account_type")
account_status_enum = _enum(AccountStatus, "bank_account_status")
sync_status_enum = _enum(SyncStatus, "bank_sync_status")

transaction_direction_enum = _enum(TransactionDirection, "bank_transaction_direction")
transaction_status_enum = _enum(TransactionStatus, "bank_transaction_status")

connection_state_enum = _enum(ConnectionState, "bank_connection_state")
