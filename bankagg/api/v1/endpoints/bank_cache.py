from __future__ import annotations

from fastapi import APIRouter, Depends

from bankagg.api.deps import get_banking_cache, require_workspace_id
from bankagg.core.enums import CacheDataType
from bankagg.schemas.bank import CacheInvalidateOut, CacheStatusOut
from bankagg.services.bank_cache import BankingCache


router = APIRouter()


@router.get("/status", response_model=CacheStatusOut)
async def cache_status(cache: BankingCache = Depends(get_banking_cache)) -> CacheStatusOut:
    available = await cache.is_available()
    info = cache.info()
    return CacheStatusOut(
        backend=info["backend"],
        available=available,
        degraded=info["degraded"],
        ttls=info["ttls"],
    )


@router.delete("", response_model=CacheInvalidateOut)
async def invalidate_all(
    workspace_id: str = Depends(require_workspace_id),
    cache: BankingCache = Depends(get_banking_cache),
) -> CacheInvalidateOut:
    done = await cache.invalidate_all(workspace_id)
    return CacheInvalidateOut(workspace_id=workspace_id, invalidated=done)


@router.delete("/{data_type}", response_model=CacheInvalidateOut)
async def invalidate_data_type(
    data_type: CacheDataType,
    workspace_id: str = Depends(require_workspace_id),
    cache: BankingCache = Depends(get_banking_cache),
) -> CacheInvalidateOut:
    ok = await cache.invalidate(data_type, workspace_id)
    return CacheInvalidateOut(workspace_id=workspace_id, invalidated=[data_type.value] if ok else [])
