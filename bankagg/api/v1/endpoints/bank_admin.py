from __future__ import annotations

from datetime import date, timedelta

from fastapi import APIRouter, Depends, HTTPException

from bankagg.api.deps import get_banking_service
from bankagg.schemas.bank import CostComparisonOut, ProvidersOut, ProviderSwitchIn
from bankagg.services.bank_sync import BankingService


router = APIRouter()


@router.get("", response_model=ProvidersOut)
async def list_providers(service: BankingService = Depends(get_banking_service)) -> ProvidersOut:
    return ProvidersOut(default=service.default_provider, available=service.registry.available_providers)


@router.put("/default", response_model=ProvidersOut)
async def switch_default_provider(
    data: ProviderSwitchIn,
    service: BankingService = Depends(get_banking_service),
) -> ProvidersOut:
    await service.switch_provider(data.provider)
    return ProvidersOut(default=service.default_provider, available=service.registry.available_providers)


@router.get("/costs", response_model=list[CostComparisonOut])
async def provider_costs(
    start: date | None = None,
    end: date | None = None,
    workspace_id: str | None = None,
    service: BankingService = Depends(get_banking_service),
) -> list[CostComparisonOut]:
    end = end or date.today()
    start = start or (end - timedelta(days=30))
    if start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")
    rows = await service.cost_comparison(start, end, workspace_id=workspace_id)
    return [CostComparisonOut(**r) for r in rows]
