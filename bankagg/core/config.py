from __future__ import annotations

import json
from functools import lru_cache
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = Field("sqlite+aiosqlite:///./bankagg.db", alias="DATABASE_URL")

    basic_auth_username: str = Field("admin", alias="BASIC_AUTH_USERNAME")
    basic_auth_password: str = Field("change-me", alias="BASIC_AUTH_PASSWORD")

    cors_origins: str | None = Field(None, alias="CORS_ORIGINS")
    frontend_url: str = Field("http://localhost:3000", alias="FRONTEND_URL")

    # --- Provider selection ---
    banking_provider: str | None = Field(None, alias="BANKING_PROVIDER")
    default_banking_provider: str | None = Field(None, alias="DEFAULT_BANKING_PROVIDER")
    banking_environment: str = Field("sandbox", alias="BANKING_ENVIRONMENT")
    banking_timeout_seconds: float = Field(30.0, alias="BANKING_TIMEOUT_SECONDS")
    banking_retries: int = Field(3, alias="BANKING_RETRIES")
    banking_log_requests: bool = Field(False, alias="BANKING_LOG_REQUESTS")

    # --- GoCardless Bank Account Data (Open Banking, formerly Nordigen) ---
    gocardless_bank_data_base_url: str = Field(
        "https://bankaccountdata.gocardless.com/api/v2",
        alias="GOCARDLESS_BANK_DATA_BASE_URL",
    )
    gocardless_bank_data_secret_id: str | None = Field(None, alias="GOCARDLESS_BANK_DATA_SECRET_ID")
    gocardless_bank_data_secret_key: str | None = Field(None, alias="GOCARDLESS_BANK_DATA_SECRET_KEY")
    gocardless_bank_data_access_token: str | None = Field(None, alias="GOCARDLESS_BANK_DATA_ACCESS_TOKEN")
    gocardless_redirect_url: str | None = Field(None, alias="GOCARDLESS_REDIRECT_URL")
    gocardless_webhook_secret: str | None = Field(None, alias="GOCARDLESS_WEBHOOK_SECRET")

    # --- Bridge ---
    bridge_base_url: str = Field("https://api.bridgeapi.io", alias="BRIDGE_BASE_URL")
    bridge_api_version: str = Field("2025-01-15", alias="BRIDGE_API_VERSION")
    bridge_client_id: str | None = Field(None, alias="BRIDGE_CLIENT_ID")
    bridge_client_secret: str | None = Field(None, alias="BRIDGE_CLIENT_SECRET")
    bridge_redirect_url: str | None = Field(None, alias="BRIDGE_REDIRECT_URL")
    bridge_webhook_secret: str | None = Field(None, alias="BRIDGE_WEBHOOK_SECRET")
    bridge_max_pages: int = Field(50, alias="BRIDGE_MAX_PAGES")
    bridge_page_size: int = Field(500, alias="BRIDGE_PAGE_SIZE")

    # --- Mock ---
    mock_delay_seconds: float = Field(0.0, alias="MOCK_DELAY_SECONDS")
    mock_failure_rate: float = Field(0.0, alias="MOCK_FAILURE_RATE")
    mock_seed: int = Field(42, alias="MOCK_SEED")
    mock_webhook_secret: str | None = Field(None, alias="MOCK_WEBHOOK_SECRET")

    # --- Cache ---
    redis_url: str | None = Field(None, alias="REDIS_URL")
    banking_cache_enabled: bool = Field(True, alias="BANKING_CACHE_ENABLED")

    # --- Sync ---
    bank_sync_default_days: int = Field(90, alias="BANK_SYNC_DEFAULT_DAYS")
    bank_sync_concurrency: int = Field(4, alias="BANK_SYNC_CONCURRENCY")
    bank_sync_scheduler_enabled: bool = Field(False, alias="BANK_SYNC_SCHEDULER_ENABLED")
    bank_sync_interval_seconds: int = Field(900, alias="BANK_SYNC_INTERVAL_SECONDS")
    bank_sync_lock_ttl_seconds: int = Field(600, alias="BANK_SYNC_LOCK_TTL_SECONDS")

    # --- Webhooks ---
    webhook_require_signature: bool = Field(False, alias="WEBHOOK_REQUIRE_SIGNATURE")
    webhook_dedup_retention_days: int = Field(7, alias="WEBHOOK_DEDUP_RETENTION_DAYS")
    webhook_ack_timeout_seconds: float = Field(5.0, alias="WEBHOOK_ACK_TIMEOUT_SECONDS")

    # JSON object, e.g. {"get_transactions": 0.08, "process_payment_rate": 0.025}
    banking_cost_table: dict[str, float] | None = Field(None, alias="BANKING_COST_TABLE")

    @field_validator(
        "banking_provider",
        "default_banking_provider",
        "gocardless_bank_data_secret_id",
        "gocardless_bank_data_secret_key",
        "gocardless_bank_data_access_token",
        "gocardless_redirect_url",
        "gocardless_webhook_secret",
        "bridge_client_id",
        "bridge_client_secret",
        "bridge_redirect_url",
        "bridge_webhook_secret",
        "mock_webhook_secret",
        "redis_url",
        mode="before",
    )
    @classmethod
    def _empty_to_none(cls, v: object) -> object:
        if isinstance(v, str):
            s = v.strip()
            return s or None
        return v

    @field_validator("banking_provider", "default_banking_provider", mode="after")
    @classmethod
    def _normalize_provider_name(cls, v: str | None) -> str | None:
        return v.lower() if v else v

    @field_validator("banking_cost_table", mode="before")
    @classmethod
    def _parse_cost_table(cls, v: object) -> object:
        if v is None:
            return None
        if isinstance(v, str):
            raw = v.strip()
            if not raw:
                return None
            parsed: Any = json.loads(raw)
            if not isinstance(parsed, dict):
                raise ValueError("BANKING_COST_TABLE must be a JSON object")
            return parsed
        return v

    @property
    def cors_origin_list(self) -> list[str]:
        if not self.cors_origins:
            return []
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
