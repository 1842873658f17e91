from __future__ import annotations

from fastapi import APIRouter, Depends

from bankagg.api.deps import get_banking_service, optional_user_id, require_workspace_id
from bankagg.schemas.bank import (
    AccountSyncOut,
    AccountTransactionSyncOut,
    BankAccountOut,
    FullSyncOut,
    SyncTransactionsIn,
    TransactionSyncOut,
)
from bankagg.services.bank_sync import AccountSyncResult, BankingService, TransactionSyncReport


router = APIRouter()


def _account_sync_out(result: AccountSyncResult) -> AccountSyncOut:
    return AccountSyncOut(
        provider=result.provider,
        accounts=[BankAccountOut.model_validate(a) for a in result.accounts],
        excluded_disconnected=result.excluded_disconnected,
    )


def _transaction_sync_out(report: TransactionSyncReport) -> TransactionSyncOut:
    return TransactionSyncOut(
        provider=report.provider,
        since=report.since,
        until=report.until,
        full_sync=report.full_sync,
        accounts=[
            AccountTransactionSyncOut(
                account_external_id=a.account_external_id,
                account_name=a.account_name,
                status=a.status,
                fetched=a.fetched,
                created=a.created,
                updated=a.updated,
                duration_ms=a.duration_ms,
                error=a.error,
            )
            for a in report.accounts
        ],
        transactions_fetched=report.transactions_fetched,
        transactions_created=report.transactions_created,
        transactions_updated=report.transactions_updated,
        failed_accounts=report.failed_accounts,
    )


@router.post("/accounts", response_model=AccountSyncOut)
async def sync_accounts_endpoint(
    provider: str | None = None,
    workspace_id: str = Depends(require_workspace_id),
    user_id: str | None = Depends(optional_user_id),
    service: BankingService = Depends(get_banking_service),
) -> AccountSyncOut:
    result = await service.sync_accounts(workspace_id, provider, user_id=user_id)
    return _account_sync_out(result)


@router.post("/transactions", response_model=TransactionSyncOut)
async def sync_transactions_endpoint(
    data: SyncTransactionsIn,
    provider: str | None = None,
    workspace_id: str = Depends(require_workspace_id),
    user_id: str | None = Depends(optional_user_id),
    service: BankingService = Depends(get_banking_service),
) -> TransactionSyncOut:
    report = await service.sync_transactions(
        workspace_id,
        provider,
        account_external_id=data.account_id,
        since=data.since_date(),
        until=data.until_date(),
        full_sync=data.full_sync,
        user_id=user_id,
    )
    return _transaction_sync_out(report)


@router.post("/full", response_model=FullSyncOut)
async def full_sync_endpoint(
    data: SyncTransactionsIn,
    provider: str | None = None,
    workspace_id: str = Depends(require_workspace_id),
    user_id: str | None = Depends(optional_user_id),
    service: BankingService = Depends(get_banking_service),
) -> FullSyncOut:
    result = await service.sync_all(
        workspace_id,
        provider,
        since=data.since_date(),
        until=data.until_date(),
        full_sync=data.full_sync,
        user_id=user_id,
    )
    return FullSyncOut(
        accounts=_account_sync_out(result.accounts),
        transactions=_transaction_sync_out(result.transactions),
    )
