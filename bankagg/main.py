from __future__ import annotations

import asyncio
import logging
import os
from contextlib import suppress
from functools import lru_cache
from pathlib import Path
from typing import Any

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bankagg.api.v1.router import api_router, public_router
from bankagg.core.config import Settings, get_settings
from bankagg.core.db import SessionLocal
from bankagg.core.security import require_basic_auth
from bankagg.services.background import BackgroundTasks
from bankagg.services.bank_cache import build_cache
from bankagg.services.bank_errors import BankingError
from bankagg.services.bank_metrics import MetricsRecorder, TableCostModel
from bankagg.services.bank_providers.registry import ProviderRegistry
from bankagg.services.bank_repositories import (
    SqlAccountRepository,
    SqlConnectionRepository,
    SqlJobLockRepository,
    SqlMetricsRepository,
    SqlTransactionRepository,
    SqlWebhookEventRepository,
)
from bankagg.services.bank_sync import BankingService
from bankagg.services.bank_sync_scheduler import bank_sync_scheduler_loop
from bankagg.services.bank_webhooks import WebhookIngestor


logger = logging.getLogger(__name__)


@lru_cache
def _repo_head_revision() -> str | None:
    default_alembic_path = Path(__file__).resolve().parents[1] / "alembic.ini"
    alembic_path = Path(os.getenv("ALEMBIC_CONFIG_PATH", str(default_alembic_path)))
    if not alembic_path.exists():
        return None

    cfg = Config(str(alembic_path))
    script = ScriptDirectory.from_config(cfg)
    return script.get_current_head()


def build_banking_stack(app: FastAPI, settings: Settings, sessions: async_sessionmaker[AsyncSession]) -> BankingService:
    """Wire the service graph once and publish it on `app.state` for the request dependencies."""
    cache = build_cache(enabled=settings.banking_cache_enabled, redis_url=settings.redis_url)
    metrics_repository = SqlMetricsRepository(sessions)
    service = BankingService(
        registry=ProviderRegistry(settings),
        accounts=SqlAccountRepository(sessions),
        transactions=SqlTransactionRepository(sessions),
        connections=SqlConnectionRepository(sessions),
        cache=cache,
        metrics=MetricsRecorder(metrics_repository, TableCostModel(settings.banking_cost_table)),
        metrics_repository=metrics_repository,
        concurrency=settings.bank_sync_concurrency,
        default_days=settings.bank_sync_default_days,
    )
    tasks = BackgroundTasks()
    app.state.banking_cache = cache
    app.state.banking_service = service
    app.state.background_tasks = tasks
    app.state.webhook_ingestor = WebhookIngestor(
        service=service,
        events=SqlWebhookEventRepository(sessions),
        tasks=tasks,
        require_signature=settings.webhook_require_signature,
        retention_days=settings.webhook_dedup_retention_days,
        ack_timeout_seconds=settings.webhook_ack_timeout_seconds,
    )
    return service


def create_app(sessions: async_sessionmaker[AsyncSession] | None = None) -> FastAPI:
    settings = get_settings()
    sessions = sessions or SessionLocal
    app = FastAPI(
        title="Banking Aggregation Engine",
        version="1.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    origins = settings.cors_origin_list
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    service = build_banking_stack(app, settings, sessions)

    @app.exception_handler(BankingError)
    async def banking_error_handler(request: Request, exc: BankingError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "Banking request failed",
                extra={"path": request.url.path, "code": exc.code, "provider": exc.provider},
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/healthz/deep")
    async def deep_healthz() -> JSONResponse:
        payload: dict[str, Any] = {
            "status": "ok",
            "checks": {
                "database": "ok",
            },
        }
        try:
            async with sessions() as session:
                conn = await session.connection()
                await conn.execute(text("SELECT 1"))
                tables = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))
                has_alembic_version = "alembic_version" in tables
                table_count = len(tables - {"alembic_version"})
                current_revision: str | None = None
                if has_alembic_version:
                    current_revision = await conn.scalar(text("SELECT version_num FROM alembic_version LIMIT 1"))
        except Exception as exc:
            payload["status"] = "error"
            payload["checks"]["database"] = "error"
            payload["error"] = f"{exc.__class__.__name__}: {exc}"
            return JSONResponse(status_code=503, content=payload)

        repo_head = _repo_head_revision()
        if not has_alembic_version:
            migration_state = "empty_schema" if table_count == 0 else "missing_alembic_version"
        elif repo_head is None:
            migration_state = "unknown_repo_head"
        elif current_revision == repo_head:
            migration_state = "up_to_date"
        else:
            migration_state = "behind_head"

        payload["checks"]["migration"] = {
            "state": migration_state,
            "table_count": table_count,
            "has_alembic_version": has_alembic_version,
            "current_revision": current_revision,
            "repo_head_revision": repo_head,
        }
        # The cache is optional: reported, never fatal.
        cache = app.state.banking_cache
        payload["checks"]["cache"] = {
            **cache.info(),
            "available": await cache.is_available(),
        }
        payload["checks"]["banking_provider"] = service.default_provider

        healthy = migration_state in {"up_to_date", "empty_schema"}
        payload["status"] = "ok" if healthy else "degraded"
        return JSONResponse(status_code=200 if healthy else 503, content=payload)

    @app.get("/openapi.json", include_in_schema=False, dependencies=[Depends(require_basic_auth)])
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/docs", include_in_schema=False, dependencies=[Depends(require_basic_auth)])
    async def swagger_ui_html():
        return get_swagger_ui_html(openapi_url="/openapi.json", title=app.title)

    @app.on_event("startup")
    async def startup() -> None:
        provider = await service.initialize()
        logger.info("Default banking provider ready", extra={"provider": provider.name})

        if settings.bank_sync_scheduler_enabled:
            app.state.bank_sync_task = asyncio.create_task(
                bank_sync_scheduler_loop(
                    settings,
                    service,
                    app.state.webhook_ingestor,
                    SqlJobLockRepository(sessions),
                )
            )

    @app.on_event("shutdown")
    async def shutdown() -> None:
        task = getattr(app.state, "bank_sync_task", None)
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await app.state.background_tasks.shutdown()
        await service.shutdown()
        await app.state.banking_cache.close()

    app.include_router(api_router, prefix="/api/v1")
    app.include_router(public_router, prefix="/api/v1")
    return app


app = create_app()
