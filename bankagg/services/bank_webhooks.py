from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import timedelta

from pydantic import ValidationError

from bankagg.core.enums import ConnectionState, WebhookEventCategory
from bankagg.schemas.bank_webhooks import WebhookAckOut, WebhookEvent
from bankagg.services.background import BackgroundTasks
from bankagg.services.bank_errors import (
    BankingError,
    ConnectionBlockedError,
    NotImplementedByProviderError,
    SignatureError,
)
from bankagg.services.bank_providers.base import BankingProvider
from bankagg.services.bank_repositories import WebhookEventRepository
from bankagg.services.bank_sync import BankingService


logger = logging.getLogger(__name__)


class WebhookIngestor:
    """
    Verify, dedup, resolve the tenant, then hand the sync to a background task.

    The HTTP acknowledgement waits at most `ack_timeout_seconds` for that task;
    slower syncs finish on their own and report failures through the task sink.
    """

    def __init__(
        self,
        *,
        service: BankingService,
        events: WebhookEventRepository,
        tasks: BackgroundTasks,
        require_signature: bool = False,
        retention_days: int = 7,
        ack_timeout_seconds: float = 5.0,
    ) -> None:
        self.service = service
        self.events = events
        self.tasks = tasks
        self.require_signature = require_signature
        self.retention = timedelta(days=retention_days)
        self.ack_timeout_seconds = ack_timeout_seconds

    def verify_signature(self, provider: BankingProvider, body: bytes, headers: Mapping[str, str]) -> None:
        header_value = headers.get(provider.signature_header)
        if provider.config.webhook_secret:
            if not provider.webhook_signature_valid(body, header_value):
                logger.warning("Webhook signature rejected", extra={"provider": provider.name})
                raise SignatureError("Invalid webhook signature", provider=provider.name)
            return
        if self.require_signature:
            logger.warning("Unsigned webhook rejected; no secret configured", extra={"provider": provider.name})
            raise SignatureError("Webhook signing secret is not configured", provider=provider.name)
        logger.warning(
            "Accepting unsigned webhook: no signing secret configured for provider",
            extra={"provider": provider.name},
        )

    async def ingest(self, provider_name: str, body: bytes, headers: Mapping[str, str]) -> WebhookAckOut:
        provider = await self.service.get_provider(provider_name)
        self.verify_signature(provider, body, headers)

        try:
            payload = json.loads(body or b"null")
        except ValueError:
            logger.warning("Webhook body is not JSON; ignored", extra={"provider": provider.name})
            return WebhookAckOut(status="ignored")
        if not isinstance(payload, dict):
            logger.warning("Webhook body is not a JSON object; ignored", extra={"provider": provider.name})
            return WebhookAckOut(status="ignored")

        event_id = provider.webhook_event_id(payload, body)
        try:
            event = provider.handle_webhook(payload)
        except (ValidationError, NotImplementedByProviderError) as e:
            logger.warning(
                "Webhook payload could not be parsed; ignored",
                extra={"provider": provider.name, "event_id": event_id, "error": str(e)},
            )
            return WebhookAckOut(status="ignored", event_id=event_id)

        claimed = await self.events.claim(
            provider.name,
            event_id,
            event_type=event.provider_event_type,
            retention=self.retention,
        )
        if not claimed:
            logger.info("Duplicate webhook acknowledged", extra={"provider": provider.name, "event_id": event_id})
            return WebhookAckOut(status="duplicate", event_id=event_id, category=event.category)

        try:
            return await self._route(provider, event, event_id)
        except Exception:
            # Drop the claim so the provider's retry is not mistaken for a duplicate.
            logger.warning(
                "Webhook handling failed; releasing claim for redelivery",
                extra={"provider": provider.name, "event_id": event_id},
            )
            await self.events.release(provider.name, event_id)
            raise

    async def _route(self, provider: BankingProvider, event: WebhookEvent, event_id: str) -> WebhookAckOut:
        if event.category == WebhookEventCategory.TEST:
            logger.info("Test webhook received", extra={"provider": provider.name, "event_id": event_id})
            return WebhookAckOut(status="test", event_id=event_id, category=event.category)
        if event.category == WebhookEventCategory.UNKNOWN:
            logger.info(
                "Unrecognized webhook event acknowledged",
                extra={"provider": provider.name, "event_id": event_id, "event_type": event.provider_event_type},
            )
            return WebhookAckOut(status="ignored", event_id=event_id, category=event.category)

        workspace_id = await self.resolve_workspace(provider, event.external_user_ref)
        if workspace_id is None:
            # Retries cannot fix an unknown tenant, so acknowledge.
            logger.warning(
                "Webhook tenant could not be resolved",
                extra={"provider": provider.name, "event_id": event_id, "external_user_ref": event.external_user_ref},
            )
            return WebhookAckOut(status="unresolved", event_id=event_id, category=event.category)
        await self.events.attach_workspace(provider.name, event_id, workspace_id)

        context = {"provider": provider.name, "workspace_id": workspace_id, "event_id": event_id}
        task = self.tasks.spawn(
            self.dispatch(event, workspace_id, provider.name),
            name=f"webhook:{provider.name}:{event_id}",
            context=context,
        )
        finished = await self.tasks.wait(task, self.ack_timeout_seconds)
        if not finished:
            logger.info("Webhook sync continues in background", extra=context)
            return WebhookAckOut(status="accepted", event_id=event_id, category=event.category)
        if task.cancelled() or task.exception() is not None:
            return WebhookAckOut(status="failed", event_id=event_id, category=event.category)
        return WebhookAckOut(status="processed", event_id=event_id, category=event.category)

    async def purge_expired(self) -> int:
        purged = await self.events.purge_expired(self.retention)
        if purged:
            logger.info("Expired webhook dedup records purged", extra={"purged": purged})
        return purged

    async def resolve_workspace(self, provider: BankingProvider, external_user_ref: str | None) -> str | None:
        if not external_user_ref:
            return None
        conn = await self.service.connections.find_by_external_ref(provider.name, external_user_ref)
        if conn is not None:
            return conn.workspace_id
        try:
            return await provider.resolve_external_user(external_user_ref)
        except BankingError as e:
            logger.warning(
                "Provider-side tenant lookup failed",
                extra={"provider": provider.name, "external_user_ref": external_user_ref, "error": e.message},
            )
            return None

    async def dispatch(self, event: WebhookEvent, workspace_id: str, provider_name: str) -> None:
        service = self.service
        try:
            match event.category:
                case WebhookEventCategory.ACCOUNT_CONNECTED:
                    await service.set_connection_state(workspace_id, provider_name, ConnectionState.CONNECTED)
                    await service.sync_all(workspace_id, provider_name, full_sync=True)
                case WebhookEventCategory.ACCOUNT_UPDATED:
                    since = None if event.full_refresh else await service.incremental_since(workspace_id, provider_name)
                    await service.sync_accounts(workspace_id, provider_name)
                    if event.has_transaction_changes:
                        await service.sync_transactions(
                            workspace_id,
                            provider_name,
                            account_external_ids=event.account_ids or None,
                            since=since,
                        )
                case WebhookEventCategory.TRANSACTIONS_UPDATED:
                    since = await service.incremental_since(workspace_id, provider_name)
                    await service.sync_transactions(
                        workspace_id,
                        provider_name,
                        account_external_ids=event.account_ids or None,
                        since=since,
                    )
                case WebhookEventCategory.ACCOUNT_DISCONNECTED:
                    await service.deactivate_accounts(workspace_id, provider_name, event.account_ids)
                case WebhookEventCategory.CONNECTION_REVOKED:
                    await service.set_connection_state(
                        workspace_id,
                        provider_name,
                        ConnectionState.REVOKED,
                        error="Consent revoked by provider",
                    )
        except ConnectionBlockedError as e:
            logger.info(
                "Webhook sync skipped; connection not syncable",
                extra={"provider": provider_name, "workspace_id": workspace_id, "state": e.state},
            )
            return
        logger.info(
            "Webhook processed",
            extra={"provider": provider_name, "workspace_id": workspace_id, "category": event.category.value},
        )
