from __future__ import annotations

from fastapi import APIRouter, Depends

from bankagg.api.v1.endpoints import bank, bank_admin, bank_cache, bank_connect, bank_sync, webhooks
from bankagg.core.security import require_basic_auth


api_router = APIRouter(dependencies=[Depends(require_basic_auth)])

api_router.include_router(bank.router, prefix="/bank", tags=["bank"])
api_router.include_router(bank_sync.router, prefix="/bank/sync", tags=["bank-sync"])
api_router.include_router(bank_connect.router, prefix="/bank/connect", tags=["bank-connect"])
api_router.include_router(bank_cache.router, prefix="/bank/cache", tags=["bank-cache"])
api_router.include_router(bank_admin.router, prefix="/bank/providers", tags=["bank-providers"])

# Aggregators and end-user browsers cannot send basic auth; webhooks are HMAC-signed instead.
public_router = APIRouter()
public_router.include_router(webhooks.router, prefix="/bank", tags=["bank-webhooks"])
