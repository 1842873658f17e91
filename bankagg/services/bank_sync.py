from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, TypeVar

import httpx

from bankagg.core.enums import (
    AccountStatus,
    CacheDataType,
    ConnectionState,
    ProviderOperation,
    SyncStatus,
    TransactionStatus,
)
from bankagg.models.bank_account import BankAccount
from bankagg.models.bank_connection import BankConnection
from bankagg.models.bank_transaction import BankTransaction
from bankagg.models.base import utcnow
from bankagg.schemas.bank import ConnectLink, FeeData, Institution, PaymentRequest, RefundRequest, TransactionData
from bankagg.services.bank_cache import BankingCache
from bankagg.services.bank_errors import (
    BankingError,
    ConnectionBlockedError,
    InvalidRequestError,
    NotFoundError,
    PersistenceError,
    RefundNotAllowedError,
)
from bankagg.services.bank_metrics import MetricsRecorder, summarize
from bankagg.services.bank_providers.base import BankingProvider
from bankagg.services.bank_providers.registry import ProviderRegistry
from bankagg.services.bank_repositories import (
    AccountRepository,
    ConnectionRepository,
    MetricsRepository,
    SyncAttempt,
    TransactionRepository,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

_BLOCKED_STATES = {ConnectionState.NOT_CONNECTED, ConnectionState.DISCONNECTED, ConnectionState.REVOKED}
_SYNCABLE_ACCOUNT_STATUSES = (AccountStatus.ACTIVE,)
_REFUNDABLE_STATUSES = {TransactionStatus.COMPLETED}


@dataclass(slots=True)
class AccountSyncResult:
    provider: str
    accounts: list[BankAccount]
    excluded_disconnected: list[str]


@dataclass(slots=True)
class AccountTransactionReport:
    account_external_id: str
    account_name: str
    status: SyncStatus
    fetched: int = 0
    created: int = 0
    updated: int = 0
    duration_ms: int = 0
    error: str | None = None


@dataclass(slots=True)
class TransactionSyncReport:
    provider: str
    since: date
    until: date
    full_sync: bool
    accounts: list[AccountTransactionReport] = field(default_factory=list)

    @property
    def transactions_fetched(self) -> int:
        return sum(a.fetched for a in self.accounts)

    @property
    def transactions_created(self) -> int:
        return sum(a.created for a in self.accounts)

    @property
    def transactions_updated(self) -> int:
        return sum(a.updated for a in self.accounts)

    @property
    def failed_accounts(self) -> list[str]:
        return [a.account_name for a in self.accounts if a.status == SyncStatus.FAILED]


@dataclass(slots=True)
class FullSyncResult:
    accounts: AccountSyncResult
    transactions: TransactionSyncReport


@dataclass(slots=True)
class DisconnectResult:
    providers: list[str] = field(default_factory=list)
    accounts_disconnected: int = 0
    accounts_deleted: int = 0
    transactions_deleted: int = 0
    remote_revocation_failures: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ConnectionStatus:
    is_connected: bool
    provider: str | None
    accounts_count: int
    last_sync: datetime | None
    connections: list[BankConnection]


def _row_to_transaction_data(row: BankTransaction) -> TransactionData:
    return TransactionData(
        external_id=row.external_id,
        account_external_id=row.account_external_id,
        amount=row.amount,
        direction=row.direction,
        currency=row.currency,
        description=row.description,
        booked_date=row.booked_date,
        value_date=row.value_date,
        status=row.status,
        category=row.category,
        counterparty_name=row.counterparty_name,
        fees=FeeData(amount=row.fee_amount, currency=row.fee_currency, provider=row.fee_provider),
        raw=row.raw,
    )


class BankingService:
    """
    Turns provider responses into persisted account and transaction state.

    Constructed once at startup and handed to every consumer (HTTP handlers,
    webhook ingestion, the periodic scheduler). Every mutation is an upsert
    keyed by (workspace, provider, external id), so overlapping syncs converge.
    """

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        accounts: AccountRepository,
        transactions: TransactionRepository,
        connections: ConnectionRepository,
        cache: BankingCache,
        metrics: MetricsRecorder,
        metrics_repository: MetricsRepository | None = None,
        concurrency: int = 4,
        default_days: int = 90,
    ) -> None:
        self.registry = registry
        self.accounts = accounts
        self.transactions = transactions
        self.connections = connections
        self.cache = cache
        self.metrics = metrics
        self.metrics_repository = metrics_repository
        self.concurrency = max(1, int(concurrency))
        self.default_days = default_days
        self._providers: dict[str, BankingProvider] = {}

    # --- Lifecycle ---

    async def initialize(self) -> BankingProvider:
        provider = await self.registry.create_startup_provider()
        self._providers[provider.name] = provider
        logger.info("Banking service initialized", extra={"provider": provider.name})
        return provider

    async def shutdown(self) -> None:
        providers = list(self._providers.values())
        self._providers.clear()
        for provider in providers:
            await provider.close()

    @property
    def default_provider(self) -> str:
        return self.registry.default_provider

    async def get_provider(self, name: str | None = None) -> BankingProvider:
        resolved = self.registry.resolve_name(name)
        provider = self._providers.get(resolved)
        if provider is None:
            provider = self.registry.create_provider(resolved)
            await provider.initialize()
            self._providers[provider.name] = provider
        return provider

    async def switch_provider(self, name: str) -> str:
        # Validation happens before the default changes.
        self.registry.set_default_provider(name)
        provider = await self.get_provider(name)
        return provider.name

    async def _call(
        self,
        provider: BankingProvider,
        operation: ProviderOperation,
        workspace_id: str,
        fn: Callable[[], Awaitable[T]],
        *,
        amount: Decimal | None = None,
    ) -> T:
        async with self.metrics.track(
            provider=provider.name,
            operation=operation,
            workspace_id=workspace_id,
            amount=amount,
        ):
            try:
                return await fn()
            except BankingError as e:
                provider.handle_provider_error(e)
                raise
            except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
                raise provider.handle_provider_error(e) from e

    async def _invalidate(self, workspace_id: str, *data_types: CacheDataType) -> None:
        for data_type in data_types:
            await self.cache.invalidate(data_type, workspace_id)

    # --- Connect flow ---

    async def list_institutions(self, workspace_id: str, *, country_code: str = "FR", provider_name: str | None = None) -> list[Institution]:
        provider = await self.get_provider(provider_name)
        return await self._call(
            provider,
            ProviderOperation.LIST_INSTITUTIONS,
            workspace_id,
            lambda: provider.list_institutions(country_code),
        )

    async def start_connection(
        self,
        workspace_id: str,
        *,
        user_id: str,
        provider_name: str | None = None,
        institution_hint: str | None = None,
    ) -> ConnectLink:
        provider = await self.get_provider(provider_name)
        link = await self._call(
            provider,
            ProviderOperation.GENERATE_CONNECT_URL,
            workspace_id,
            lambda: provider.generate_connect_url(user_id, workspace_id, institution_hint),
        )
        existing = await self.connections.get(workspace_id, provider.name)
        # A live connection stays connected while the user adds another bank.
        state = (
            ConnectionState.CONNECTED
            if existing is not None and existing.state == ConnectionState.CONNECTED
            else ConnectionState.PENDING_AUTHORIZATION
        )
        await self.connections.upsert(
            workspace_id,
            provider.name,
            user_id=user_id,
            external_user_ref=link.external_user_ref,
            consent_reference=link.consent_reference,
            state=state,
        )
        logger.info(
            "Banking consent URL issued",
            extra={"provider": provider.name, "workspace_id": workspace_id, "state": state.value},
        )
        return link

    async def complete_connection(self, workspace_id: str, provider_name: str | None = None) -> BankConnection:
        """Explicit reconnect: clears user disconnects so their accounts can be synced again."""
        provider = await self.get_provider(provider_name)
        cleared = await self.accounts.clear_disconnected(workspace_id, provider.name)
        conn = await self.connections.upsert(
            workspace_id,
            provider.name,
            state=ConnectionState.CONNECTED,
            connected_at=utcnow(),
            last_error=None,
        )
        logger.info(
            "Banking connection completed",
            extra={"provider": provider.name, "workspace_id": workspace_id, "cleared_disconnected": cleared},
        )
        await self._invalidate(workspace_id, *CacheDataType)
        return conn

    async def complete_from_callback(self, provider_name: str, reference: str) -> str | None:
        """
        Consent redirect landed; returns the workspace it belongs to, if known.

        Account data is pulled later by webhook or explicit sync, never from the redirect.
        """
        provider = await self.get_provider(provider_name)
        conn = await self.connections.find_by_external_ref(provider.name, reference)
        if conn is None:
            conn = await self.connections.find_by_consent_reference(provider.name, reference)
        if conn is None:
            logger.warning("Consent callback for unknown reference", extra={"provider": provider.name})
            return None
        await self.complete_connection(conn.workspace_id, provider.name)
        return conn.workspace_id

    async def set_connection_state(
        self,
        workspace_id: str,
        provider_name: str,
        state: ConnectionState,
        *,
        error: str | None = None,
    ) -> BankConnection:
        fields: dict[str, Any] = {"state": state, "last_error": error}
        if state == ConnectionState.CONNECTED:
            fields["connected_at"] = utcnow()
        return await self.connections.upsert(workspace_id, provider_name, **fields)

    async def _ensure_syncable(self, workspace_id: str, provider: BankingProvider) -> BankConnection:
        conn = await self.connections.get(workspace_id, provider.name)
        state = conn.state if conn is not None else ConnectionState.NOT_CONNECTED
        if conn is None or state in _BLOCKED_STATES:
            raise ConnectionBlockedError(
                f"Banking connection for provider {provider.name} is {state.value}; reconnect to sync",
                provider=provider.name,
                state=state.value,
            )
        return conn

    # --- Sync ---

    async def sync_accounts(
        self,
        workspace_id: str,
        provider_name: str | None = None,
        *,
        user_id: str | None = None,
    ) -> AccountSyncResult:
        provider = await self.get_provider(provider_name)
        conn = await self._ensure_syncable(workspace_id, provider)
        uid = user_id or conn.user_id or workspace_id

        # Read the exclusion set before upserting anything.
        excluded = await self.accounts.disconnected_external_ids(workspace_id, provider.name)
        try:
            fetched = await self._call(
                provider,
                ProviderOperation.SYNC_ACCOUNTS,
                workspace_id,
                lambda: provider.sync_user_accounts(uid, workspace_id),
            )
        except ConnectionBlockedError as e:
            # Upstream consent is gone; later syncs are refused until the user reconnects.
            await self.set_connection_state(workspace_id, provider.name, ConnectionState.REVOKED, error=e.message)
            logger.warning(
                "Bank connection revoked upstream",
                extra={"provider": provider.name, "workspace_id": workspace_id},
            )
            raise
        rows = await self.accounts.upsert_many(workspace_id, provider.name, fetched, user_id=uid, exclude=excluded)

        fields: dict[str, Any] = {"last_sync_at": utcnow(), "last_error": None}
        if conn.state == ConnectionState.PENDING_AUTHORIZATION and rows:
            fields.update(state=ConnectionState.CONNECTED, connected_at=utcnow())
        await self.connections.upsert(workspace_id, provider.name, **fields)
        await self._invalidate(workspace_id, CacheDataType.ACCOUNTS, CacheDataType.BALANCES, CacheDataType.STATS)

        skipped = sorted(a.external_id for a in fetched if a.external_id in excluded)
        logger.info(
            "Bank accounts synced",
            extra={
                "provider": provider.name,
                "workspace_id": workspace_id,
                "accounts": len(rows),
                "excluded_disconnected": len(skipped),
            },
        )
        return AccountSyncResult(provider=provider.name, accounts=rows, excluded_disconnected=skipped)

    async def sync_transactions(
        self,
        workspace_id: str,
        provider_name: str | None = None,
        *,
        account_external_id: str | None = None,
        account_external_ids: list[str] | None = None,
        since: date | None = None,
        until: date | None = None,
        full_sync: bool = False,
        user_id: str | None = None,
    ) -> TransactionSyncReport:
        provider = await self.get_provider(provider_name)
        conn = await self._ensure_syncable(workspace_id, provider)
        uid = user_id or conn.user_id or workspace_id

        end = until or date.today()
        start = since or (end - timedelta(days=self.default_days))
        if start > end:
            raise InvalidRequestError(f"since ({start}) is after until ({end})", provider=provider.name)

        accounts = await self._accounts_to_sync(workspace_id, provider.name, account_external_id, account_external_ids)
        report = TransactionSyncReport(provider=provider.name, since=start, until=end, full_sync=full_sync)
        if not accounts:
            return report

        sem = asyncio.Semaphore(self.concurrency)

        async def run(account: BankAccount) -> AccountTransactionReport:
            async with sem:
                return await self._sync_account_transactions(
                    provider,
                    workspace_id,
                    account,
                    user_id=uid,
                    since=start,
                    until=end,
                    full_sync=full_sync,
                )

        report.accounts = list(await asyncio.gather(*(run(a) for a in accounts)))

        await self.connections.upsert(workspace_id, provider.name, last_sync_at=utcnow())
        await self._invalidate(workspace_id, CacheDataType.TRANSACTIONS, CacheDataType.STATS, CacheDataType.ACCOUNTS)
        logger.info(
            "Bank transactions synced",
            extra={
                "provider": provider.name,
                "workspace_id": workspace_id,
                "accounts": len(report.accounts),
                "fetched": report.transactions_fetched,
                "created": report.transactions_created,
                "updated": report.transactions_updated,
                "failed_accounts": len(report.failed_accounts),
            },
        )
        return report

    async def _accounts_to_sync(
        self,
        workspace_id: str,
        provider_name: str,
        account_external_id: str | None,
        account_external_ids: list[str] | None,
    ) -> list[BankAccount]:
        if account_external_id:
            account = await self.accounts.get(workspace_id, provider_name, account_external_id)
            if account is None:
                raise NotFoundError(f"Bank account {account_external_id} not found", provider=provider_name)
            if account.status == AccountStatus.DISCONNECTED:
                raise ConnectionBlockedError(
                    f"Bank account {account_external_id} was disconnected",
                    provider=provider_name,
                    state=AccountStatus.DISCONNECTED.value,
                )
            return [account]

        active = await self.accounts.list(workspace_id, provider=provider_name, statuses=_SYNCABLE_ACCOUNT_STATUSES)
        if account_external_ids:
            wanted = set(account_external_ids)
            return [a for a in active if a.external_id in wanted]
        return active

    async def _sync_account_transactions(
        self,
        provider: BankingProvider,
        workspace_id: str,
        account: BankAccount,
        *,
        user_id: str,
        since: date,
        until: date,
        full_sync: bool,
    ) -> AccountTransactionReport:
        started_at = utcnow()
        t0 = time.perf_counter()
        report = AccountTransactionReport(
            account_external_id=account.external_id,
            account_name=account.name,
            status=SyncStatus.IN_PROGRESS,
        )
        try:
            batch = await self._call(
                provider,
                ProviderOperation.GET_TRANSACTIONS,
                workspace_id,
                lambda: provider.get_transactions(
                    account.external_id,
                    user_id,
                    workspace_id,
                    since=since,
                    until=until,
                    full_sync=full_sync,
                ),
            )
            stats = await self.transactions.upsert_many(
                workspace_id,
                provider.name,
                batch.transactions,
                account=account,
                user_id=user_id,
            )
            report.fetched = len(batch.transactions)
            report.created = stats.created
            report.updated = stats.updated
            report.status = SyncStatus.PARTIAL if batch.truncated else SyncStatus.COMPLETE
        except PersistenceError:
            raise
        except BankingError as e:
            # One account failing must not abort the others.
            report.status = SyncStatus.FAILED
            report.error = e.message
            logger.warning(
                "Account transaction sync failed",
                extra={
                    "provider": provider.name,
                    "workspace_id": workspace_id,
                    "account_id": account.external_id,
                    "error": e.message,
                },
            )
        report.duration_ms = int((time.perf_counter() - t0) * 1000)

        await self.accounts.record_sync(
            account.id,
            SyncAttempt(
                status=report.status,
                started_at=started_at,
                duration_ms=report.duration_ms,
                fetched=report.fetched,
                created=report.created,
                updated=report.updated,
                error=report.error,
            ),
        )
        return report

    async def sync_all(
        self,
        workspace_id: str,
        provider_name: str | None = None,
        *,
        since: date | None = None,
        until: date | None = None,
        full_sync: bool = False,
        user_id: str | None = None,
    ) -> FullSyncResult:
        accounts = await self.sync_accounts(workspace_id, provider_name, user_id=user_id)
        transactions = await self.sync_transactions(
            workspace_id,
            accounts.provider,
            since=since,
            until=until,
            full_sync=full_sync,
            user_id=user_id,
        )
        return FullSyncResult(accounts=accounts, transactions=transactions)

    async def incremental_since(self, workspace_id: str, provider_name: str) -> date:
        """Last successful sync minus a day of overlap, or a week back when never synced."""
        conn = await self.connections.get(workspace_id, provider_name)
        if conn is not None and conn.last_sync_at is not None:
            return conn.last_sync_at.date() - timedelta(days=1)
        return date.today() - timedelta(days=7)

    async def refresh_balance(self, workspace_id: str, account_id: uuid.UUID) -> BankAccount:
        account = await self.accounts.get_by_id(workspace_id, account_id)
        if account is None:
            raise NotFoundError(f"Bank account {account_id} not found")
        provider = await self.get_provider(account.provider)
        balance = await self._call(
            provider,
            ProviderOperation.GET_BALANCE,
            workspace_id,
            lambda: provider.get_account_balance(account.external_id, workspace_id=workspace_id),
        )
        updated = await self.accounts.update_balance(account.id, balance)
        await self._invalidate(workspace_id, CacheDataType.BALANCES, CacheDataType.ACCOUNTS)
        return updated or account

    # --- Payments ---

    async def process_payment(
        self,
        workspace_id: str,
        request: PaymentRequest,
        provider_name: str | None = None,
    ) -> BankTransaction:
        provider = await self.get_provider(provider_name)
        tx = await self._call(
            provider,
            ProviderOperation.PROCESS_PAYMENT,
            workspace_id,
            lambda: provider.process_payment(request, workspace_id=workspace_id),
            amount=request.amount,
        )
        account = None
        if tx.account_external_id:
            account = await self.accounts.get(workspace_id, provider.name, tx.account_external_id)
        row = await self.transactions.upsert_one(workspace_id, provider.name, tx, account=account)
        await self._invalidate(workspace_id, CacheDataType.TRANSACTIONS, CacheDataType.BALANCES, CacheDataType.STATS)
        logger.info(
            "Payment processed",
            extra={"provider": provider.name, "workspace_id": workspace_id, "transaction_id": str(row.id)},
        )
        return row

    async def process_refund(self, workspace_id: str, request: RefundRequest) -> BankTransaction:
        original = await self.transactions.get_by_id(workspace_id, request.transaction_id)
        if original is None:
            raise NotFoundError(f"Transaction {request.transaction_id} not found")

        # Rejected locally so no provider call is made for a non-refundable transaction.
        if original.status not in _REFUNDABLE_STATUSES or original.is_refund:
            raise RefundNotAllowedError(
                f"Transaction {original.id} is {original.status.value} and cannot be refunded",
                provider=original.provider,
            )
        if request.amount is not None and request.amount > original.amount:
            raise RefundNotAllowedError(
                f"Refund amount {request.amount} exceeds the original amount {original.amount}",
                provider=original.provider,
            )

        provider = await self.get_provider(original.provider)
        refund = await self._call(
            provider,
            ProviderOperation.PROCESS_REFUND,
            workspace_id,
            lambda: provider.process_refund(
                _row_to_transaction_data(original),
                workspace_id=workspace_id,
                amount=request.amount,
                reason=request.reason,
            ),
            amount=request.amount or original.amount,
        )
        account = None
        if refund.account_external_id:
            account = await self.accounts.get(workspace_id, provider.name, refund.account_external_id)
        row = await self.transactions.upsert_one(
            workspace_id,
            provider.name,
            refund,
            account=account,
            user_id=original.user_id,
            original_transaction_id=original.id,
        )
        await self.transactions.set_status(original.id, TransactionStatus.REFUNDED)
        await self._invalidate(workspace_id, CacheDataType.TRANSACTIONS, CacheDataType.BALANCES, CacheDataType.STATS)
        logger.info(
            "Refund processed",
            extra={
                "provider": provider.name,
                "workspace_id": workspace_id,
                "transaction_id": str(row.id),
                "original_transaction_id": str(original.id),
            },
        )
        return row

    # --- Disconnect / status ---

    async def disconnect(
        self,
        workspace_id: str,
        *,
        account_id: uuid.UUID | None = None,
        item_id: str | None = None,
        provider_name: str | None = None,
    ) -> DisconnectResult:
        """
        A single account is soft-disconnected and stays excluded from syncs.

        An item, a provider, or (by default) every provider of the workspace is
        revoked remotely on a best-effort basis and then hard-deleted locally.
        """
        result = DisconnectResult()
        if account_id is not None:
            account = await self.accounts.get_by_id(workspace_id, account_id)
            if account is None:
                raise NotFoundError(f"Bank account {account_id} not found")
            result.providers = [account.provider]
            result.accounts_disconnected = await self.accounts.set_status(
                workspace_id,
                account.provider,
                [account.external_id],
                AccountStatus.DISCONNECTED,
            )
            await self._invalidate(workspace_id, *CacheDataType)
            return result

        if provider_name:
            providers = [self.registry.resolve_name(provider_name)]
        else:
            providers = sorted(
                {c.provider for c in await self.connections.list(workspace_id)}
                | {a.provider for a in await self.accounts.list(workspace_id)}
            )

        for name in providers:
            result.providers.append(name)
            if not await self._revoke_remote(workspace_id, name, item_id=item_id):
                result.remote_revocation_failures.append(name)

            external_ids: list[str] | None = None
            if item_id:
                external_ids = [
                    a.external_id
                    for a in await self.accounts.list(workspace_id, provider=name)
                    if a.item_id == item_id
                ]
            accounts_deleted, transactions_deleted = await self.accounts.delete(
                workspace_id,
                name,
                external_ids=external_ids,
            )
            result.accounts_deleted += accounts_deleted
            result.transactions_deleted += transactions_deleted
            if item_id is None:
                await self.set_connection_state(workspace_id, name, ConnectionState.DISCONNECTED)

        await self._invalidate(workspace_id, *CacheDataType)
        logger.info(
            "Banking data disconnected",
            extra={
                "workspace_id": workspace_id,
                "providers": result.providers,
                "accounts_deleted": result.accounts_deleted,
                "transactions_deleted": result.transactions_deleted,
            },
        )
        return result

    async def deactivate_accounts(self, workspace_id: str, provider_name: str, external_ids: list[str]) -> int:
        """Provider-side removal; unlike a user disconnect, a later sync may reactivate these."""
        changed = await self.accounts.set_status(workspace_id, provider_name, external_ids, AccountStatus.INACTIVE)
        if changed:
            await self._invalidate(workspace_id, CacheDataType.ACCOUNTS, CacheDataType.BALANCES, CacheDataType.STATS)
        return changed

    async def _revoke_remote(self, workspace_id: str, provider_name: str, *, item_id: str | None) -> bool:
        try:
            provider = await self.get_provider(provider_name)
            await self._call(
                provider,
                ProviderOperation.REVOKE_CONNECTION,
                workspace_id,
                lambda: provider.revoke_connection(workspace_id, item_id=item_id),
            )
        except PersistenceError:
            raise
        except BankingError as e:
            # Local deletion proceeds; the user asked for their data to go.
            logger.warning(
                "Remote revocation failed",
                extra={"provider": provider_name, "workspace_id": workspace_id, "error": e.message},
            )
            return False
        return True

    async def connection_status(self, workspace_id: str) -> ConnectionStatus:
        connections = await self.connections.list(workspace_id)
        active = await self.accounts.list(workspace_id, statuses=_SYNCABLE_ACCOUNT_STATUSES)
        connected = [c for c in connections if c.state == ConnectionState.CONNECTED]
        sync_times = [c.last_sync_at for c in connections if c.last_sync_at is not None]
        return ConnectionStatus(
            is_connected=bool(connected),
            provider=connected[0].provider if connected else None,
            accounts_count=len(active),
            last_sync=max(sync_times) if sync_times else None,
            connections=connections,
        )

    async def cost_comparison(self, start: date, end: date, *, workspace_id: str | None = None) -> list[dict[str, Any]]:
        if self.metrics_repository is None:
            return []
        rows = await self.metrics_repository.between(start, end, workspace_id=workspace_id)
        return summarize(rows)
