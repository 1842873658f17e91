from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bankagg.core.enums import AccountStatus, ConnectionState, SyncStatus, TransactionDirection, TransactionStatus
from bankagg.models.api_metric import ApiMetric
from bankagg.models.bank_account import SYNC_HISTORY_LIMIT, BankAccount
from bankagg.models.bank_connection import BankConnection
from bankagg.models.bank_transaction import BankTransaction
from bankagg.models.job_lock import JobLock
from bankagg.models.base import utcnow
from bankagg.models.webhook_event import ProcessedWebhookEvent
from bankagg.schemas.bank import AccountData, BalanceData, TransactionData
from bankagg.services.bank_errors import PersistenceError
from bankagg.services.bank_mapping import amount_to_cents, jsonable


logger = logging.getLogger(__name__)

_IN_CHUNK = 500

_TRANSACTION_FIELDS = (
    "bank_account_id",
    "account_external_id",
    "amount_cents",
    "direction",
    "currency",
    "description",
    "counterparty_name",
    "category",
    "booked_date",
    "value_date",
    "status",
    "fee_amount_cents",
    "fee_currency",
    "fee_provider",
    "raw",
)


def _chunks(values: list[str], size: int = _IN_CHUNK) -> Iterable[list[str]]:
    for i in range(0, len(values), size):
        yield values[i : i + size]


@dataclass(slots=True)
class SyncAttempt:
    status: SyncStatus
    started_at: datetime
    duration_ms: int
    fetched: int = 0
    created: int = 0
    updated: int = 0
    error: str | None = None


@dataclass(slots=True)
class UpsertStats:
    created: int = 0
    updated: int = 0
    unchanged: int = 0


@dataclass(slots=True)
class TransactionFilters:
    account_external_id: str | None = None
    provider: str | None = None
    status: TransactionStatus | None = None
    direction: TransactionDirection | None = None
    since: date | None = None
    until: date | None = None
    page: int = 1
    limit: int = 50


# --- Interfaces the orchestrator depends on ---


class AccountRepository(Protocol):
    async def disconnected_external_ids(self, workspace_id: str, provider: str) -> set[str]: ...

    async def upsert_many(
        self,
        workspace_id: str,
        provider: str,
        accounts: list[AccountData],
        *,
        user_id: str | None = None,
        exclude: set[str] | None = None,
    ) -> list[BankAccount]: ...

    async def list(
        self,
        workspace_id: str,
        *,
        provider: str | None = None,
        statuses: tuple[AccountStatus, ...] | None = None,
    ) -> list[BankAccount]: ...

    async def get(self, workspace_id: str, provider: str, external_id: str) -> BankAccount | None: ...

    async def get_by_id(self, workspace_id: str, account_id: uuid.UUID) -> BankAccount | None: ...

    async def update_balance(self, account_id: uuid.UUID, balance: BalanceData) -> BankAccount | None: ...

    async def record_sync(self, account_id: uuid.UUID, attempt: SyncAttempt) -> None: ...

    async def set_status(self, workspace_id: str, provider: str, external_ids: list[str], status: AccountStatus) -> int: ...

    async def delete(self, workspace_id: str, provider: str, *, external_ids: list[str] | None = None) -> tuple[int, int]: ...

    async def clear_disconnected(self, workspace_id: str, provider: str) -> int: ...


class TransactionRepository(Protocol):
    async def upsert_many(
        self,
        workspace_id: str,
        provider: str,
        transactions: list[TransactionData],
        *,
        account: BankAccount | None = None,
        user_id: str | None = None,
    ) -> UpsertStats: ...

    async def upsert_one(
        self,
        workspace_id: str,
        provider: str,
        transaction: TransactionData,
        *,
        account: BankAccount | None = None,
        user_id: str | None = None,
        original_transaction_id: uuid.UUID | None = None,
    ) -> BankTransaction: ...

    async def get_by_id(self, workspace_id: str, transaction_id: uuid.UUID) -> BankTransaction | None: ...

    async def list(self, workspace_id: str, filters: TransactionFilters) -> tuple[list[BankTransaction], int]: ...

    async def set_status(self, transaction_id: uuid.UUID, status: TransactionStatus) -> None: ...

    async def stats(self, workspace_id: str, *, since: date, until: date) -> dict[str, Any]: ...


class ConnectionRepository(Protocol):
    async def get(self, workspace_id: str, provider: str) -> BankConnection | None: ...

    async def list(self, workspace_id: str) -> list[BankConnection]: ...

    async def list_by_state(self, state: ConnectionState) -> list[BankConnection]: ...

    async def find_by_external_ref(self, provider: str, external_user_ref: str) -> BankConnection | None: ...

    async def find_by_consent_reference(self, provider: str, consent_reference: str) -> BankConnection | None: ...

    async def upsert(self, workspace_id: str, provider: str, **fields: Any) -> BankConnection: ...


class WebhookEventRepository(Protocol):
    async def claim(
        self,
        provider: str,
        event_id: str,
        *,
        event_type: str | None,
        retention: timedelta,
    ) -> bool: ...

    async def release(self, provider: str, event_id: str) -> None: ...

    async def attach_workspace(self, provider: str, event_id: str, workspace_id: str) -> None: ...

    async def purge_expired(self, retention: timedelta) -> int: ...


class JobLockRepository(Protocol):
    async def acquire(self, name: str, holder: str, *, ttl_seconds: int) -> bool: ...

    async def release(self, name: str, holder: str) -> bool: ...


class MetricsRepository(Protocol):
    async def record(
        self,
        *,
        provider: str,
        operation: str,
        workspace_id: str,
        elapsed_ms: int,
        success: bool,
        cost: float,
    ) -> None: ...

    async def between(self, start: date, end: date, *, workspace_id: str | None = None) -> list[ApiMetric]: ...


# --- SQLAlchemy implementations ---


class _SqlRepository:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as session:
                async with session.begin():
                    yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database operation failed ({e.__class__.__name__})") from e


def _account_fields(account: AccountData, *, user_id: str | None, now: datetime) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "name": account.name,
        "account_type": account.account_type,
        "status": account.status,
        "balance_cents": amount_to_cents(account.balance),
        "currency": account.currency,
        "iban": account.iban,
        "item_id": account.item_id,
        "institution_id": account.institution_id,
        "institution_name": account.institution_name,
        "institution_logo": account.institution_logo,
        "raw": jsonable(account.raw) if account.raw is not None else None,
        "last_synced_at": now,
    }
    if user_id:
        fields["user_id"] = user_id
    return fields


def _transaction_fields(tx: TransactionData, *, account: BankAccount | None) -> dict[str, Any]:
    return {
        "bank_account_id": account.id if account is not None else None,
        "account_external_id": tx.account_external_id or (account.external_id if account is not None else None),
        "amount_cents": amount_to_cents(tx.amount),
        "direction": tx.direction,
        "currency": tx.currency,
        "description": tx.description,
        "counterparty_name": tx.counterparty_name,
        "category": tx.category,
        "booked_date": tx.booked_date,
        "value_date": tx.value_date,
        "status": tx.status,
        "fee_amount_cents": amount_to_cents(tx.fees.amount),
        "fee_currency": tx.fees.currency,
        "fee_provider": tx.fees.provider,
        "raw": jsonable(tx.raw) if tx.raw is not None else None,
    }


class SqlAccountRepository(_SqlRepository):
    async def disconnected_external_ids(self, workspace_id: str, provider: str) -> set[str]:
        async with self._transaction() as session:
            rows = await session.scalars(
                select(BankAccount.external_id).where(
                    BankAccount.workspace_id == workspace_id,
                    BankAccount.provider == provider,
                    BankAccount.status == AccountStatus.DISCONNECTED,
                )
            )
            return set(rows.all())

    async def upsert_many(
        self,
        workspace_id: str,
        provider: str,
        accounts: list[AccountData],
        *,
        user_id: str | None = None,
        exclude: set[str] | None = None,
    ) -> list[BankAccount]:
        wanted = {a.external_id: a for a in accounts if a.external_id not in (exclude or set())}
        if not wanted:
            return []
        try:
            return await self._upsert_accounts(workspace_id, provider, wanted, user_id=user_id)
        except IntegrityError:
            # A concurrent sync inserted one of the rows first; the second pass updates it.
            logger.info("Account upsert raced; retrying", extra={"workspace_id": workspace_id, "provider": provider})
            try:
                return await self._upsert_accounts(workspace_id, provider, wanted, user_id=user_id)
            except IntegrityError as e:
                raise PersistenceError("Account upsert failed after retry") from e

    async def _upsert_accounts(
        self,
        workspace_id: str,
        provider: str,
        wanted: dict[str, AccountData],
        *,
        user_id: str | None,
    ) -> list[BankAccount]:
        now = utcnow()
        async with self._transaction() as session:
            existing = (
                await session.scalars(
                    select(BankAccount).where(
                        BankAccount.workspace_id == workspace_id,
                        BankAccount.provider == provider,
                        BankAccount.external_id.in_(list(wanted)),
                    )
                )
            ).all()
            by_external = {row.external_id: row for row in existing}

            out: list[BankAccount] = []
            for external_id, account in wanted.items():
                fields = _account_fields(account, user_id=user_id, now=now)
                row = by_external.get(external_id)
                if row is None:
                    row = BankAccount(workspace_id=workspace_id, provider=provider, external_id=external_id, **fields)
                    session.add(row)
                elif row.status == AccountStatus.DISCONNECTED:
                    # Never reactivated by an automated sync.
                    continue
                else:
                    for attr, value in fields.items():
                        if getattr(row, attr) != value:
                            setattr(row, attr, value)
                out.append(row)
            await session.flush()
            return out

    async def list(
        self,
        workspace_id: str,
        *,
        provider: str | None = None,
        statuses: tuple[AccountStatus, ...] | None = None,
    ) -> list[BankAccount]:
        stmt = select(BankAccount).where(BankAccount.workspace_id == workspace_id)
        if provider:
            stmt = stmt.where(BankAccount.provider == provider)
        if statuses:
            stmt = stmt.where(BankAccount.status.in_(statuses))
        async with self._transaction() as session:
            return list((await session.scalars(stmt.order_by(BankAccount.created_at, BankAccount.name))).all())

    async def get(self, workspace_id: str, provider: str, external_id: str) -> BankAccount | None:
        async with self._transaction() as session:
            return await session.scalar(
                select(BankAccount).where(
                    BankAccount.workspace_id == workspace_id,
                    BankAccount.provider == provider,
                    BankAccount.external_id == external_id,
                )
            )

    async def get_by_id(self, workspace_id: str, account_id: uuid.UUID) -> BankAccount | None:
        async with self._transaction() as session:
            return await session.scalar(
                select(BankAccount).where(BankAccount.id == account_id, BankAccount.workspace_id == workspace_id)
            )

    async def update_balance(self, account_id: uuid.UUID, balance: BalanceData) -> BankAccount | None:
        async with self._transaction() as session:
            row = await session.get(BankAccount, account_id)
            if row is None:
                return None
            row.balance_cents = amount_to_cents(balance.balance)
            row.currency = balance.currency
            row.last_synced_at = utcnow()
            await session.flush()
            return row

    async def record_sync(self, account_id: uuid.UUID, attempt: SyncAttempt) -> None:
        async with self._transaction() as session:
            row = await session.get(BankAccount, account_id)
            if row is None:
                return
            count, oldest, newest = (
                await session.execute(
                    select(
                        func.count(BankTransaction.id),
                        func.min(BankTransaction.booked_date),
                        func.max(BankTransaction.booked_date),
                    ).where(
                        BankTransaction.workspace_id == row.workspace_id,
                        BankTransaction.provider == row.provider,
                        BankTransaction.account_external_id == row.external_id,
                    )
                )
            ).one()

            row.sync_status = attempt.status
            row.transactions_count = int(count or 0)
            row.oldest_transaction_date = oldest
            row.newest_transaction_date = newest
            row.last_sync_error = attempt.error
            if attempt.status in (SyncStatus.COMPLETE, SyncStatus.PARTIAL):
                row.last_transaction_sync_at = attempt.started_at

            entry = {
                "date": attempt.started_at.isoformat(),
                "status": attempt.status.value,
                "count": attempt.fetched,
                "created": attempt.created,
                "updated": attempt.updated,
                "duration_ms": attempt.duration_ms,
                "error": attempt.error,
            }
            # Assign a new list so the JSON column is flagged dirty.
            row.sync_history = [entry, *(row.sync_history or [])][:SYNC_HISTORY_LIMIT]
            await session.flush()

    async def set_status(self, workspace_id: str, provider: str, external_ids: list[str], status: AccountStatus) -> int:
        if not external_ids:
            return 0
        async with self._transaction() as session:
            res = await session.execute(
                update(BankAccount)
                .where(
                    BankAccount.workspace_id == workspace_id,
                    BankAccount.provider == provider,
                    BankAccount.external_id.in_(external_ids),
                )
                .values(status=status, updated_at=utcnow())
            )
            return int(res.rowcount or 0)

    async def delete(self, workspace_id: str, provider: str, *, external_ids: list[str] | None = None) -> tuple[int, int]:
        """Hard delete of accounts and their transactions; returns (accounts, transactions)."""
        account_filter = [BankAccount.workspace_id == workspace_id, BankAccount.provider == provider]
        tx_filter = [BankTransaction.workspace_id == workspace_id, BankTransaction.provider == provider]
        if external_ids is not None:
            if not external_ids:
                return 0, 0
            account_filter.append(BankAccount.external_id.in_(external_ids))
            tx_filter.append(BankTransaction.account_external_id.in_(external_ids))
        async with self._transaction() as session:
            tx_res = await session.execute(delete(BankTransaction).where(*tx_filter))
            acc_res = await session.execute(delete(BankAccount).where(*account_filter))
            return int(acc_res.rowcount or 0), int(tx_res.rowcount or 0)

    async def clear_disconnected(self, workspace_id: str, provider: str) -> int:
        ids = await self.disconnected_external_ids(workspace_id, provider)
        if not ids:
            return 0
        accounts, _transactions = await self.delete(workspace_id, provider, external_ids=sorted(ids))
        return accounts


class SqlTransactionRepository(_SqlRepository):
    async def upsert_many(
        self,
        workspace_id: str,
        provider: str,
        transactions: list[TransactionData],
        *,
        account: BankAccount | None = None,
        user_id: str | None = None,
    ) -> UpsertStats:
        # Later duplicates in the same batch win.
        extracted = {tx.external_id: tx for tx in transactions}
        if not extracted:
            return UpsertStats()
        try:
            return await self._upsert(workspace_id, provider, extracted, account=account, user_id=user_id)
        except IntegrityError:
            logger.info("Transaction upsert raced; retrying", extra={"workspace_id": workspace_id, "provider": provider})
            try:
                return await self._upsert(workspace_id, provider, extracted, account=account, user_id=user_id)
            except IntegrityError as e:
                raise PersistenceError("Transaction upsert failed after retry") from e

    async def _upsert(
        self,
        workspace_id: str,
        provider: str,
        extracted: dict[str, TransactionData],
        *,
        account: BankAccount | None,
        user_id: str | None,
    ) -> UpsertStats:
        stats = UpsertStats()
        async with self._transaction() as session:
            existing_by_external: dict[str, BankTransaction] = {}
            for chunk in _chunks(list(extracted)):
                rows = await session.scalars(
                    select(BankTransaction).where(
                        BankTransaction.workspace_id == workspace_id,
                        BankTransaction.provider == provider,
                        BankTransaction.external_id.in_(chunk),
                    )
                )
                existing_by_external.update({r.external_id: r for r in rows.all()})

            for ext_id, tx in extracted.items():
                fields = _transaction_fields(tx, account=account)
                row = existing_by_external.get(ext_id)
                if row is None:
                    session.add(
                        BankTransaction(
                            workspace_id=workspace_id,
                            provider=provider,
                            external_id=ext_id,
                            user_id=user_id,
                            **fields,
                        )
                    )
                    stats.created += 1
                    continue

                if row.status == TransactionStatus.REFUNDED:
                    # Local refund bookkeeping outranks the provider's view of the original payment.
                    fields.pop("status")
                changed = False
                for attr in _TRANSACTION_FIELDS:
                    if attr not in fields:
                        continue
                    new_val = fields[attr]
                    if getattr(row, attr) != new_val:
                        setattr(row, attr, new_val)
                        changed = True
                if changed:
                    stats.updated += 1
                else:
                    stats.unchanged += 1
            await session.flush()
        return stats

    async def upsert_one(
        self,
        workspace_id: str,
        provider: str,
        transaction: TransactionData,
        *,
        account: BankAccount | None = None,
        user_id: str | None = None,
        original_transaction_id: uuid.UUID | None = None,
    ) -> BankTransaction:
        await self.upsert_many(workspace_id, provider, [transaction], account=account, user_id=user_id)
        async with self._transaction() as session:
            row = await session.scalar(
                select(BankTransaction).where(
                    BankTransaction.workspace_id == workspace_id,
                    BankTransaction.provider == provider,
                    BankTransaction.external_id == transaction.external_id,
                )
            )
            if row is None:
                raise PersistenceError("Transaction vanished right after upsert")
            if original_transaction_id is not None and row.original_transaction_id != original_transaction_id:
                row.original_transaction_id = original_transaction_id
                await session.flush()
            return row

    async def get_by_id(self, workspace_id: str, transaction_id: uuid.UUID) -> BankTransaction | None:
        async with self._transaction() as session:
            return await session.scalar(
                select(BankTransaction).where(
                    BankTransaction.id == transaction_id,
                    BankTransaction.workspace_id == workspace_id,
                )
            )

    async def list(self, workspace_id: str, filters: TransactionFilters) -> tuple[list[BankTransaction], int]:
        conditions = [BankTransaction.workspace_id == workspace_id]
        if filters.account_external_id:
            conditions.append(BankTransaction.account_external_id == filters.account_external_id)
        if filters.provider:
            conditions.append(BankTransaction.provider == filters.provider)
        if filters.status:
            conditions.append(BankTransaction.status == filters.status)
        if filters.direction:
            conditions.append(BankTransaction.direction == filters.direction)
        if filters.since:
            conditions.append(BankTransaction.booked_date >= filters.since)
        if filters.until:
            conditions.append(BankTransaction.booked_date <= filters.until)

        page = max(1, filters.page)
        limit = max(1, filters.limit)
        async with self._transaction() as session:
            total = await session.scalar(select(func.count(BankTransaction.id)).where(*conditions))
            rows = await session.scalars(
                select(BankTransaction)
                .where(*conditions)
                .order_by(BankTransaction.booked_date.desc(), BankTransaction.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(rows.all()), int(total or 0)

    async def set_status(self, transaction_id: uuid.UUID, status: TransactionStatus) -> None:
        async with self._transaction() as session:
            await session.execute(
                update(BankTransaction)
                .where(BankTransaction.id == transaction_id)
                .values(status=status, updated_at=utcnow())
            )

    async def stats(self, workspace_id: str, *, since: date, until: date) -> dict[str, Any]:
        async with self._transaction() as session:
            rows = (
                await session.execute(
                    select(
                        BankTransaction.currency,
                        BankTransaction.direction,
                        func.count(BankTransaction.id),
                        func.coalesce(func.sum(BankTransaction.amount_cents), 0),
                    )
                    .where(
                        BankTransaction.workspace_id == workspace_id,
                        BankTransaction.booked_date >= since,
                        BankTransaction.booked_date <= until,
                        BankTransaction.status != TransactionStatus.CANCELLED,
                    )
                    .group_by(BankTransaction.currency, BankTransaction.direction)
                )
            ).all()
        out: dict[str, Any] = {"transactions_count": 0, "credits_cents": {}, "debits_cents": {}}
        for currency, direction, count, total in rows:
            out["transactions_count"] += int(count)
            bucket = "credits_cents" if direction == TransactionDirection.CREDIT else "debits_cents"
            out[bucket][currency] = out[bucket].get(currency, 0) + int(total)
        return out


class SqlConnectionRepository(_SqlRepository):
    async def get(self, workspace_id: str, provider: str) -> BankConnection | None:
        async with self._transaction() as session:
            return await session.scalar(
                select(BankConnection).where(BankConnection.workspace_id == workspace_id, BankConnection.provider == provider)
            )

    async def list(self, workspace_id: str) -> list[BankConnection]:
        async with self._transaction() as session:
            rows = await session.scalars(
                select(BankConnection).where(BankConnection.workspace_id == workspace_id).order_by(BankConnection.provider)
            )
            return list(rows.all())

    async def list_by_state(self, state: ConnectionState) -> list[BankConnection]:
        async with self._transaction() as session:
            rows = await session.scalars(select(BankConnection).where(BankConnection.state == state))
            return list(rows.all())

    async def find_by_external_ref(self, provider: str, external_user_ref: str) -> BankConnection | None:
        async with self._transaction() as session:
            return await session.scalar(
                select(BankConnection).where(
                    BankConnection.provider == provider,
                    BankConnection.external_user_ref == external_user_ref,
                )
            )

    async def find_by_consent_reference(self, provider: str, consent_reference: str) -> BankConnection | None:
        async with self._transaction() as session:
            return await session.scalar(
                select(BankConnection).where(
                    BankConnection.provider == provider,
                    BankConnection.consent_reference == consent_reference,
                )
            )

    async def upsert(self, workspace_id: str, provider: str, **fields: Any) -> BankConnection:
        try:
            return await self._upsert(workspace_id, provider, fields)
        except IntegrityError:
            return await self._upsert(workspace_id, provider, fields)

    async def _upsert(self, workspace_id: str, provider: str, fields: dict[str, Any]) -> BankConnection:
        async with self._transaction() as session:
            row = await session.scalar(
                select(BankConnection).where(BankConnection.workspace_id == workspace_id, BankConnection.provider == provider)
            )
            if row is None:
                row = BankConnection(workspace_id=workspace_id, provider=provider)
                session.add(row)
            for attr, value in fields.items():
                setattr(row, attr, value)
            await session.flush()
            return row


class SqlWebhookEventRepository(_SqlRepository):
    async def claim(
        self,
        provider: str,
        event_id: str,
        *,
        event_type: str | None,
        retention: timedelta,
    ) -> bool:
        """
        Record the event as processed; False when it was already seen within `retention`.

        The primary key makes concurrent deliveries of the same event race safely.
        """
        now = utcnow()
        async with self._transaction() as session:
            # Expired records no longer count as duplicates.
            await session.execute(
                delete(ProcessedWebhookEvent).where(
                    ProcessedWebhookEvent.provider == provider,
                    ProcessedWebhookEvent.event_id == event_id,
                    ProcessedWebhookEvent.processed_at < now - retention,
                )
            )
        try:
            async with self._transaction() as session:
                session.add(
                    ProcessedWebhookEvent(provider=provider, event_id=event_id, event_type=event_type, processed_at=now)
                )
                await session.flush()
        except IntegrityError:
            return False
        return True

    async def release(self, provider: str, event_id: str) -> None:
        """Forget a claim whose handling failed, so a redelivery is processed again."""
        async with self._transaction() as session:
            await session.execute(
                delete(ProcessedWebhookEvent).where(
                    ProcessedWebhookEvent.provider == provider,
                    ProcessedWebhookEvent.event_id == event_id,
                )
            )

    async def attach_workspace(self, provider: str, event_id: str, workspace_id: str) -> None:
        async with self._transaction() as session:
            await session.execute(
                update(ProcessedWebhookEvent)
                .where(ProcessedWebhookEvent.provider == provider, ProcessedWebhookEvent.event_id == event_id)
                .values(workspace_id=workspace_id)
            )

    async def purge_expired(self, retention: timedelta) -> int:
        async with self._transaction() as session:
            res = await session.execute(
                delete(ProcessedWebhookEvent).where(ProcessedWebhookEvent.processed_at < utcnow() - retention)
            )
            return int(res.rowcount or 0)


class SqlMetricsRepository(_SqlRepository):
    async def record(
        self,
        *,
        provider: str,
        operation: str,
        workspace_id: str,
        elapsed_ms: int,
        success: bool,
        cost: float,
    ) -> None:
        try:
            await self._record(provider, operation, workspace_id, elapsed_ms, success, cost)
        except IntegrityError:
            await self._record(provider, operation, workspace_id, elapsed_ms, success, cost)

    async def _record(
        self,
        provider: str,
        operation: str,
        workspace_id: str,
        elapsed_ms: int,
        success: bool,
        cost: float,
    ) -> None:
        day = utcnow().date()
        async with self._transaction() as session:
            row = await session.scalar(
                select(ApiMetric).where(
                    ApiMetric.provider == provider,
                    ApiMetric.operation == operation,
                    ApiMetric.workspace_id == workspace_id,
                    ApiMetric.day == day,
                )
            )
            if row is None:
                row = ApiMetric(
                    provider=provider,
                    operation=operation,
                    workspace_id=workspace_id,
                    day=day,
                    request_count=0,
                    success_count=0,
                    error_count=0,
                    total_response_ms=0,
                    total_cost=0.0,
                )
                session.add(row)
            row.request_count += 1
            if success:
                row.success_count += 1
            else:
                row.error_count += 1
            row.total_response_ms += elapsed_ms
            row.min_response_ms = elapsed_ms if row.min_response_ms is None else min(row.min_response_ms, elapsed_ms)
            row.max_response_ms = elapsed_ms if row.max_response_ms is None else max(row.max_response_ms, elapsed_ms)
            row.total_cost = float(row.total_cost or 0) + cost
            await session.flush()

    async def between(self, start: date, end: date, *, workspace_id: str | None = None) -> list[ApiMetric]:
        stmt = select(ApiMetric).where(ApiMetric.day >= start, ApiMetric.day <= end)
        if workspace_id:
            stmt = stmt.where(ApiMetric.workspace_id == workspace_id)
        async with self._transaction() as session:
            return list((await session.scalars(stmt)).all())


class SqlJobLockRepository(_SqlRepository):
    """Named leases in `job_locks`; the holder renews before `expires_at` passes."""

    async def acquire(self, name: str, holder: str, *, ttl_seconds: int) -> bool:
        now = utcnow()
        expires = now + timedelta(seconds=max(30, int(ttl_seconds)))
        async with self._transaction() as session:
            res = await session.execute(
                update(JobLock)
                .where(
                    JobLock.name == name,
                    (JobLock.expires_at <= now) | (JobLock.locked_by == holder),
                )
                .values(locked_at=now, locked_by=holder, expires_at=expires)
            )
            if res.rowcount == 1:
                return True
            exists = await session.scalar(select(JobLock.name).where(JobLock.name == name))
            if exists is not None:
                return False
        try:
            async with self._transaction() as session:
                session.add(JobLock(name=name, locked_at=now, locked_by=holder, expires_at=expires))
        except IntegrityError:
            # Another process inserted the lease first.
            return False
        return True

    async def release(self, name: str, holder: str) -> bool:
        async with self._transaction() as session:
            res = await session.execute(delete(JobLock).where(JobLock.name == name, JobLock.locked_by == holder))
            return res.rowcount == 1
