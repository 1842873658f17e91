from __future__ import annotations

import os
import sys
from collections.abc import AsyncIterator
from pathlib import Path

import pytest_asyncio
from fastapi import FastAPI
from sqlalchemy import event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

# bankagg.core.db builds its engine at import time.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./_bankagg_test.db")
os.environ.setdefault("BASIC_AUTH_USERNAME", "test-user")
os.environ.setdefault("BASIC_AUTH_PASSWORD", "test-pass")

import bankagg.models  # noqa: E402,F401
from bankagg.core.config import get_settings  # noqa: E402
from bankagg.main import create_app  # noqa: E402
from bankagg.models.base import Base  # noqa: E402
from bankagg.services.bank_sync import BankingService  # noqa: E402


@compiles(JSONB, "sqlite")
def _compile_jsonb_for_sqlite(_type, _compiler, **_kw) -> str:
    # Test suite uses SQLite; map PostgreSQL JSONB to JSON for portable DDL.
    return "JSON"


@pytest_asyncio.fixture
async def db_engine(tmp_path, monkeypatch) -> AsyncIterator[AsyncEngine]:
    db_path = tmp_path / "test.db"

    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("BASIC_AUTH_USERNAME", "test-user")
    monkeypatch.setenv("BASIC_AUTH_PASSWORD", "test-pass")
    # Empty strings normalize to None: mock provider, in-process cache, unsigned webhooks accepted.
    monkeypatch.setenv("BANKING_PROVIDER", "")
    monkeypatch.setenv("DEFAULT_BANKING_PROVIDER", "")
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("MOCK_WEBHOOK_SECRET", "")
    monkeypatch.setenv("WEBHOOK_REQUIRE_SIGNATURE", "false")
    monkeypatch.setenv("BANK_SYNC_SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("WEBHOOK_ACK_TIMEOUT_SECONDS", "5")
    get_settings.cache_clear()

    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", future=True)

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def app(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[FastAPI]:
    application = create_app(session_factory)
    service: BankingService = application.state.banking_service
    await service.initialize()

    yield application

    await application.state.background_tasks.shutdown()
    await service.shutdown()
    await application.state.banking_cache.close()


@pytest_asyncio.fixture
async def banking_service(app: FastAPI) -> BankingService:
    return app.state.banking_service
