from __future__ import annotations

from fastapi import Header, HTTPException, Request

from bankagg.services.bank_cache import BankingCache
from bankagg.services.bank_sync import BankingService
from bankagg.services.bank_webhooks import WebhookIngestor


def get_banking_service(request: Request) -> BankingService:
    return request.app.state.banking_service


def get_banking_cache(request: Request) -> BankingCache:
    return request.app.state.banking_cache


def get_webhook_ingestor(request: Request) -> WebhookIngestor:
    return request.app.state.webhook_ingestor


def require_workspace_id(x_workspace_id: str | None = Header(None, alias="X-Workspace-Id")) -> str:
    workspace_id = (x_workspace_id or "").strip()
    if not workspace_id:
        raise HTTPException(status_code=400, detail="X-Workspace-Id header is required")
    if len(workspace_id) > 64:
        raise HTTPException(status_code=400, detail="X-Workspace-Id is too long")
    return workspace_id


def optional_user_id(x_user_id: str | None = Header(None, alias="X-User-Id")) -> str | None:
    user_id = (x_user_id or "").strip()
    return user_id or None
