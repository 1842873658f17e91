from __future__ import annotations

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse

from bankagg.api.deps import get_banking_service, get_webhook_ingestor
from bankagg.core.config import get_settings
from bankagg.schemas.bank_webhooks import WebhookAckOut
from bankagg.services.bank_errors import BankingError, PersistenceError
from bankagg.services.bank_sync import BankingService
from bankagg.services.bank_webhooks import WebhookIngestor


logger = logging.getLogger(__name__)

router = APIRouter()


def _dashboard_redirect(**params: str) -> RedirectResponse:
    base = f"{get_settings().frontend_url.rstrip('/')}/dashboard"
    return RedirectResponse(url=f"{base}?{urlencode(params)}", status_code=302)


@router.post("/webhooks/{provider}", response_model=WebhookAckOut)
async def receive_webhook(
    provider: str,
    request: Request,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
) -> WebhookAckOut:
    if not ingestor.service.registry.is_registered(provider):
        raise HTTPException(status_code=404, detail="Unknown provider")
    body = await request.body()
    return await ingestor.ingest(provider, body, request.headers)


@router.get("/callbacks/{provider}", include_in_schema=False)
async def consent_callback(
    provider: str,
    ref: str | None = None,
    session_id: str | None = None,
    error: str | None = None,
    service: BankingService = Depends(get_banking_service),
) -> RedirectResponse:
    if error:
        logger.warning("Consent callback reported an error", extra={"provider": provider, "error": error})
        return _dashboard_redirect(banking_error=error)
    if not service.registry.is_registered(provider):
        return _dashboard_redirect(banking_error="unknown_provider")

    reference = ref or session_id
    if not reference:
        return _dashboard_redirect(banking_error="missing_reference")

    try:
        await service.complete_from_callback(provider, reference)
    except PersistenceError:
        raise
    except BankingError as e:
        logger.warning("Consent callback failed", extra={"provider": provider, "error": e.message})
        return _dashboard_redirect(banking_error=e.code)
    return _dashboard_redirect(banking_success="true", provider=provider.lower())
