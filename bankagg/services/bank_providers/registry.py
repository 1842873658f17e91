from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from bankagg.core.config import Settings
from bankagg.services.bank_errors import BankingError, ConfigurationError
from bankagg.services.bank_providers.base import BankingProvider, ProviderConfig
from bankagg.services.bank_providers.bridge import BridgeProvider
from bankagg.services.bank_providers.gocardless import GoCardlessProvider
from bankagg.services.bank_providers.mock import MockProvider


logger = logging.getLogger(__name__)

MOCK_PROVIDER = "mock"
FALLBACK_PROVIDER = MOCK_PROVIDER

PROVIDER_CLASSES: dict[str, type[BankingProvider]] = {
    GoCardlessProvider.name: GoCardlessProvider,
    BridgeProvider.name: BridgeProvider,
    MockProvider.name: MockProvider,
}


def _provider_settings(settings: Settings, name: str) -> dict[str, Any]:
    if name == GoCardlessProvider.name:
        return {
            "base_url": settings.gocardless_bank_data_base_url,
            "secret_id": settings.gocardless_bank_data_secret_id,
            "secret_key": settings.gocardless_bank_data_secret_key,
            "access_token": settings.gocardless_bank_data_access_token,
            "redirect_url": settings.gocardless_redirect_url,
            "webhook_secret": settings.gocardless_webhook_secret,
        }
    if name == BridgeProvider.name:
        return {
            "base_url": settings.bridge_base_url,
            "api_version": settings.bridge_api_version,
            "client_id": settings.bridge_client_id,
            "client_secret": settings.bridge_client_secret,
            "redirect_url": settings.bridge_redirect_url,
            "webhook_secret": settings.bridge_webhook_secret,
            "max_pages": settings.bridge_max_pages,
            "page_size": settings.bridge_page_size,
        }
    if name == MockProvider.name:
        return {
            "simulate_delay_seconds": settings.mock_delay_seconds,
            "failure_rate": settings.mock_failure_rate,
            "seed": settings.mock_seed,
            "webhook_secret": settings.mock_webhook_secret,
        }
    return {}


class ProviderRegistry:
    """
    Name -> provider class map plus environment-backed configuration.

    The class map is fixed at construction; only the default provider name
    changes at runtime (`set_default_provider`).
    """

    def __init__(self, settings: Settings, classes: dict[str, type[BankingProvider]] | None = None) -> None:
        self.settings = settings
        self._classes = dict(classes or PROVIDER_CLASSES)
        self._default: str | None = None

    @property
    def available_providers(self) -> list[str]:
        return sorted(self._classes)

    def is_registered(self, name: str) -> bool:
        return name.lower() in self._classes

    @property
    def default_provider(self) -> str:
        return self.resolve_name(None)

    def resolve_name(self, name: str | None) -> str:
        """Explicit argument, then the runtime default, then the environment, then the fallback."""
        resolved = (
            name
            or self._default
            or self.settings.banking_provider
            or self.settings.default_banking_provider
            or FALLBACK_PROVIDER
        )
        return resolved.strip().lower()

    def provider_config(self, name: str, overrides: dict[str, Any] | None = None) -> ProviderConfig:
        # Later layers win: base, provider-specific, call-site overrides.
        merged: dict[str, Any] = {
            "name": name,
            "environment": self.settings.banking_environment,
            "timeout_seconds": self.settings.banking_timeout_seconds,
            "retries": self.settings.banking_retries,
            "log_requests": self.settings.banking_log_requests,
            "default_days_back": self.settings.bank_sync_default_days,
        }
        merged.update({k: v for k, v in _provider_settings(self.settings, name).items() if v is not None})
        merged.update(overrides or {})
        return ProviderConfig(**merged)

    def create_provider(self, name: str | None = None, **overrides: Any) -> BankingProvider:
        resolved = self.resolve_name(name)
        provider_cls = self._classes.get(resolved)
        if provider_cls is None:
            raise ConfigurationError(
                f"Unknown banking provider '{resolved}'. Available: {', '.join(self.available_providers)}",
                provider=resolved,
            )
        provider = provider_cls(self.provider_config(resolved, overrides))
        if not provider.validate_config():
            raise ConfigurationError(f"Invalid configuration for banking provider '{resolved}'", provider=resolved)
        return provider

    async def create_many(self, names: list[str]) -> dict[str, BankingProvider]:
        """
        Build and initialize several providers concurrently.

        Providers that fail configuration or initialization are skipped with a warning.
        """
        built: dict[str, BankingProvider] = {}
        for name in names:
            try:
                provider = self.create_provider(name)
            except ConfigurationError as e:
                logger.warning("Skipping banking provider", extra={"provider": name, "error": e.message})
                continue
            built[provider.name] = provider

        results = await asyncio.gather(*(p.initialize() for p in built.values()), return_exceptions=True)
        out: dict[str, BankingProvider] = {}
        for (name, provider), result in zip(built.items(), results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Banking provider failed to initialize",
                    extra={"provider": name, "error": f"{result.__class__.__name__}: {result}"},
                )
                continue
            out[name] = provider
        return out

    def set_default_provider(self, name: str) -> None:
        """Hot-swap the default; validates the target before committing."""
        candidate = self.create_provider(name)
        previous = self._default
        self._default = candidate.name
        logger.info("Default banking provider switched", extra={"provider": candidate.name, "previous": previous})

    async def create_startup_provider(self) -> BankingProvider:
        """
        The configured default, or the mock provider when it cannot be used.
        """
        name = self.resolve_name(None)
        try:
            provider = self.create_provider(name)
            await provider.initialize()
        except (BankingError, httpx.HTTPError) as e:
            if name == MOCK_PROVIDER:
                raise
            logger.warning(
                "Configured banking provider unusable; falling back to mock",
                extra={"provider": name, "error": f"{e.__class__.__name__}: {e}"},
            )
            provider = self.create_provider(MOCK_PROVIDER)
            await provider.initialize()
        self._default = provider.name
        return provider
