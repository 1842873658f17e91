from __future__ import annotations

import uuid
from datetime import date, timedelta
from decimal import Decimal

from fastapi import APIRouter, Depends, Query

from bankagg.api.deps import get_banking_cache, get_banking_service, require_workspace_id
from bankagg.core.enums import AccountStatus, TransactionDirection, TransactionStatus
from bankagg.schemas.bank import (
    BalanceOut,
    BalancesOut,
    BankAccountListOut,
    BankAccountOut,
    BankStatsOut,
    BankTransactionOut,
    BankTransactionPageOut,
    PaymentRequest,
    RefundRequest,
)
from bankagg.services.bank_cache import BankingCache
from bankagg.services.bank_mapping import cents_to_amount
from bankagg.services.bank_repositories import TransactionFilters
from bankagg.services.bank_sync import BankingService


router = APIRouter()


@router.get("/accounts", response_model=BankAccountListOut)
async def list_bank_accounts(
    workspace_id: str = Depends(require_workspace_id),
    service: BankingService = Depends(get_banking_service),
    cache: BankingCache = Depends(get_banking_cache),
) -> BankAccountListOut:
    cached = await cache.get_accounts(workspace_id)
    if cached.from_cache:
        return BankAccountListOut(items=cached.data, from_cache=True)

    rows = await service.accounts.list(workspace_id)
    items = [BankAccountOut.model_validate(r) for r in rows]
    await cache.set_accounts(workspace_id, [i.model_dump(mode="json") for i in items])
    return BankAccountListOut(items=items)


@router.post("/accounts/{account_id}/balance", response_model=BankAccountOut)
async def refresh_account_balance(
    account_id: uuid.UUID,
    workspace_id: str = Depends(require_workspace_id),
    service: BankingService = Depends(get_banking_service),
) -> BankAccountOut:
    row = await service.refresh_balance(workspace_id, account_id)
    return BankAccountOut.model_validate(row)


@router.get("/transactions", response_model=BankTransactionPageOut)
async def list_bank_transactions(
    account_id: str | None = None,
    provider: str | None = None,
    status: TransactionStatus | None = None,
    direction: TransactionDirection | None = None,
    since: date | None = None,
    until: date | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    workspace_id: str = Depends(require_workspace_id),
    service: BankingService = Depends(get_banking_service),
    cache: BankingCache = Depends(get_banking_cache),
) -> BankTransactionPageOut:
    options = {
        "account_id": account_id,
        "provider": provider,
        "status": status.value if status else None,
        "direction": direction.value if direction else None,
        "since": since.isoformat() if since else None,
        "until": until.isoformat() if until else None,
        "page": page,
        "limit": limit,
    }
    cached = await cache.get_transactions(workspace_id, options)
    if cached.from_cache:
        return BankTransactionPageOut(**cached.data, from_cache=True)

    rows, total = await service.transactions.list(
        workspace_id,
        TransactionFilters(
            account_external_id=account_id,
            provider=provider,
            status=status,
            direction=direction,
            since=since,
            until=until,
            page=page,
            limit=limit,
        ),
    )
    out = BankTransactionPageOut(
        items=[BankTransactionOut.model_validate(r) for r in rows],
        total=total,
        page=page,
        limit=limit,
    )
    await cache.set_transactions(workspace_id, out.model_dump(mode="json", exclude={"from_cache"}), options)
    return out


@router.get("/balances", response_model=BalancesOut)
async def list_balances(
    workspace_id: str = Depends(require_workspace_id),
    service: BankingService = Depends(get_banking_service),
    cache: BankingCache = Depends(get_banking_cache),
) -> BalancesOut:
    cached = await cache.get_balances(workspace_id)
    if cached.from_cache:
        return BalancesOut(**cached.data, from_cache=True)

    rows = await service.accounts.list(workspace_id, statuses=(AccountStatus.ACTIVE,))
    totals: dict[str, Decimal] = {}
    items: list[BalanceOut] = []
    for r in rows:
        items.append(
            BalanceOut(
                account_id=r.id,
                external_id=r.external_id,
                name=r.name,
                balance=r.balance,
                currency=r.currency,
                last_synced_at=r.last_synced_at,
            )
        )
        totals[r.currency] = totals.get(r.currency, Decimal("0")) + r.balance
    out = BalancesOut(items=items, total_by_currency=totals)
    await cache.set_balances(workspace_id, out.model_dump(mode="json", exclude={"from_cache"}))
    return out


@router.get("/stats", response_model=BankStatsOut)
async def bank_stats(
    days: int = Query(30, ge=1, le=366),
    workspace_id: str = Depends(require_workspace_id),
    service: BankingService = Depends(get_banking_service),
    cache: BankingCache = Depends(get_banking_cache),
) -> BankStatsOut:
    options = {"days": days}
    cached = await cache.get_stats(workspace_id, options)
    if cached.from_cache:
        return BankStatsOut(**cached.data, from_cache=True)

    until = date.today()
    since = until - timedelta(days=days)
    accounts = await service.accounts.list(workspace_id, statuses=(AccountStatus.ACTIVE,))
    stats = await service.transactions.stats(workspace_id, since=since, until=until)
    out = BankStatsOut(
        accounts_count=len(accounts),
        transactions_count=stats["transactions_count"],
        credits_by_currency={k: cents_to_amount(v) for k, v in stats["credits_cents"].items()},
        debits_by_currency={k: cents_to_amount(v) for k, v in stats["debits_cents"].items()},
        period_start=since,
        period_end=until,
    )
    await cache.set_stats(workspace_id, out.model_dump(mode="json", exclude={"from_cache"}), options)
    return out


@router.post("/payments", response_model=BankTransactionOut)
async def create_payment(
    data: PaymentRequest,
    provider: str | None = None,
    workspace_id: str = Depends(require_workspace_id),
    service: BankingService = Depends(get_banking_service),
) -> BankTransactionOut:
    row = await service.process_payment(workspace_id, data, provider)
    return BankTransactionOut.model_validate(row)


@router.post("/refunds", response_model=BankTransactionOut)
async def create_refund(
    data: RefundRequest,
    workspace_id: str = Depends(require_workspace_id),
    service: BankingService = Depends(get_banking_service),
) -> BankTransactionOut:
    row = await service.process_refund(workspace_id, data)
    return BankTransactionOut.model_validate(row)
