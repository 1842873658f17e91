from __future__ import annotations

import asyncio
import logging
import os
import random
import socket

from bankagg.core.config import Settings
from bankagg.core.enums import ConnectionState
from bankagg.services.bank_errors import BankingError, PersistenceError
from bankagg.services.bank_repositories import JobLockRepository
from bankagg.services.bank_sync import BankingService
from bankagg.services.bank_webhooks import WebhookIngestor


logger = logging.getLogger(__name__)

LOCK_NAME = "bank_sync_scheduler"


def _lock_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


async def run_scheduled_syncs(service: BankingService) -> dict[str, int]:
    """
    Incremental transaction sync for every connected workspace.

    A failing workspace is logged and skipped; the rest still sync.
    """
    stats = {"workspaces": 0, "synced": 0, "failed": 0}
    for conn in await service.connections.list_by_state(ConnectionState.CONNECTED):
        stats["workspaces"] += 1
        try:
            since = await service.incremental_since(conn.workspace_id, conn.provider)
            await service.sync_accounts(conn.workspace_id, conn.provider)
            await service.sync_transactions(conn.workspace_id, conn.provider, since=since)
        except PersistenceError:
            raise
        except BankingError as e:
            stats["failed"] += 1
            logger.warning(
                "Scheduled bank sync failed",
                extra={"provider": conn.provider, "workspace_id": conn.workspace_id, "error": e.message},
            )
            continue
        stats["synced"] += 1
    return stats


async def run_scheduler_tick(service: BankingService, ingestor: WebhookIngestor) -> dict[str, int]:
    stats = await run_scheduled_syncs(service)
    stats["webhook_events_purged"] = await ingestor.purge_expired()
    return stats


async def bank_sync_scheduler_loop(
    settings: Settings,
    service: BankingService,
    ingestor: WebhookIngestor,
    locks: JobLockRepository,
) -> None:
    """
    Background loop keeping connected workspaces fresh between webhooks.

    Only the holder of the `job_locks` lease runs a tick, so several API
    processes can run the loop safely. The lease is handed back on shutdown.
    """
    if not settings.bank_sync_scheduler_enabled:
        return

    holder = _lock_holder_id()
    interval = max(60, int(settings.bank_sync_interval_seconds))

    try:
        while True:
            try:
                if await locks.acquire(LOCK_NAME, holder, ttl_seconds=settings.bank_sync_lock_ttl_seconds):
                    stats = await run_scheduler_tick(service, ingestor)
                    logger.info("Scheduled bank sync tick done", extra=stats)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Bank sync scheduler tick failed")

            # Jitter avoids lockstep ticks across processes.
            await asyncio.sleep(interval + random.uniform(0, 5))
    finally:
        try:
            await locks.release(LOCK_NAME, holder)
        except PersistenceError:
            logger.warning("Could not release bank sync scheduler lease", extra={"holder": holder})
