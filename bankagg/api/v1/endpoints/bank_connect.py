from __future__ import annotations

from fastapi import APIRouter, Depends

from bankagg.api.deps import get_banking_service, optional_user_id, require_workspace_id
from bankagg.schemas.bank import (
    ConnectionOut,
    ConnectionStatusOut,
    ConnectUrlOut,
    DisconnectIn,
    DisconnectOut,
    Institution,
)
from bankagg.services.bank_sync import BankingService


router = APIRouter()


@router.get("/institutions", response_model=list[Institution])
async def list_institutions(
    country: str = "FR",
    provider: str | None = None,
    workspace_id: str = Depends(require_workspace_id),
    service: BankingService = Depends(get_banking_service),
) -> list[Institution]:
    return await service.list_institutions(workspace_id, country_code=country, provider_name=provider)


@router.post("/connect-url", response_model=ConnectUrlOut)
async def create_connect_url(
    provider: str | None = None,
    institution_id: str | None = None,
    workspace_id: str = Depends(require_workspace_id),
    user_id: str | None = Depends(optional_user_id),
    service: BankingService = Depends(get_banking_service),
) -> ConnectUrlOut:
    link = await service.start_connection(
        workspace_id,
        user_id=user_id or workspace_id,
        provider_name=provider,
        institution_hint=institution_id,
    )
    return ConnectUrlOut(provider=link.provider, url=link.url, expires_at=link.expires_at)


@router.get("/status", response_model=ConnectionStatusOut)
async def connection_status(
    workspace_id: str = Depends(require_workspace_id),
    service: BankingService = Depends(get_banking_service),
) -> ConnectionStatusOut:
    status = await service.connection_status(workspace_id)
    return ConnectionStatusOut(
        is_connected=status.is_connected,
        provider=status.provider,
        accounts_count=status.accounts_count,
        last_sync=status.last_sync,
        connections=[ConnectionOut.model_validate(c) for c in status.connections],
    )


@router.post("/disconnect", response_model=DisconnectOut)
async def disconnect(
    data: DisconnectIn,
    workspace_id: str = Depends(require_workspace_id),
    service: BankingService = Depends(get_banking_service),
) -> DisconnectOut:
    result = await service.disconnect(
        workspace_id,
        account_id=data.account_id,
        item_id=data.item_id,
        provider_name=data.provider,
    )
    return DisconnectOut(
        providers=result.providers,
        accounts_disconnected=result.accounts_disconnected,
        accounts_deleted=result.accounts_deleted,
        transactions_deleted=result.transactions_deleted,
        remote_revocation_failures=result.remote_revocation_failures,
    )
