from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from bankagg.core.enums import CacheDataType
from bankagg.services.bank_mapping import jsonable


logger = logging.getLogger(__name__)

CACHE_PREFIX = "banking"

DEFAULT_TTLS: dict[CacheDataType, int] = {
    CacheDataType.ACCOUNTS: 300,
    CacheDataType.TRANSACTIONS: 300,
    CacheDataType.BALANCES: 120,
    CacheDataType.STATS: 600,
}

# Transaction option sets the dashboard requests most; cleared explicitly on invalidation.
COMMON_TRANSACTION_OPTIONS: tuple[dict[str, Any], ...] = (
    {"limit": 50},
    {"limit": 100},
    {"limit": 500},
    {"limit": 50, "page": 1},
    {"limit": 100, "page": 1},
)

# After a backend failure, skip it for this long instead of paying the failed connect on every call.
RETRY_BACKEND_AFTER_SECONDS = 30.0


class CacheBackend(Protocol):
    name: str

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def delete_prefix(self, prefix: str) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class MemoryCacheBackend:
    """Process-local TTL store, used in tests and when no Redis URL is configured."""

    name = "memory"

    def __init__(self, clock=time.monotonic) -> None:
        self._data: dict[str, tuple[str, float]] = {}
        self._clock = clock

    async def get(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._data[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, *keys: str) -> int:
        return sum(1 for k in keys if self._data.pop(k, None) is not None)

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [k for k in self._data if k == prefix or k.startswith(f"{prefix}:")]
        return await self.delete(*doomed)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()


class RedisCacheBackend:
    name = "redis"

    def __init__(self, url: str, *, connect_timeout_seconds: float = 1.0) -> None:
        self._client = redis_asyncio.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout_seconds,
            socket_timeout=connect_timeout_seconds,
        )

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._client.set(key, value, ex=ttl_seconds)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._client.delete(*keys))

    async def delete_prefix(self, prefix: str) -> int:
        keys = [k async for k in self._client.scan_iter(match=f"{prefix}:*", count=200)]
        return await self.delete(prefix, *keys)

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


@dataclass(slots=True)
class CacheResult:
    data: Any = None
    from_cache: bool = False


def hash_options(options: dict[str, Any] | None) -> str:
    """
    Order-independent "k:v" serialization of the non-empty filter options.
    """
    if not options:
        return ""
    parts = [f"{k}:{jsonable(v)}" for k, v in sorted(options.items()) if v is not None and v != ""]
    return "_".join(parts)


def cache_key(data_type: CacheDataType, workspace_id: str, options: dict[str, Any] | None = None) -> str:
    key = f"{CACHE_PREFIX}:{data_type.value}:{workspace_id}"
    suffix = hash_options(options)
    return f"{key}:{suffix}" if suffix else key


class BankingCache:
    """
    Read-through/write-invalidate cache for banking reads.

    Every backend failure is logged and turned into a miss or a no-op; the
    cache never raises into callers.
    """

    def __init__(
        self,
        backend: CacheBackend | None,
        *,
        ttls: dict[CacheDataType, int] | None = None,
        clock=time.monotonic,
    ) -> None:
        self.backend = backend
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}
        self.degraded = False
        self._retry_at = 0.0
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self.backend is not None

    def _usable(self) -> bool:
        if self.backend is None:
            return False
        return not self.degraded or self._clock() >= self._retry_at

    def _mark_failure(self, operation: str, exc: Exception) -> None:
        if not self.degraded:
            logger.warning(
                "Banking cache unavailable; serving from persistence (degraded mode)",
                extra={"operation": operation, "backend": self.backend.name if self.backend else None, "error": str(exc)},
            )
        self.degraded = True
        self._retry_at = self._clock() + RETRY_BACKEND_AFTER_SECONDS

    def _mark_success(self) -> None:
        if self.degraded:
            logger.info("Banking cache recovered", extra={"backend": self.backend.name if self.backend else None})
        self.degraded = False
        self._retry_at = 0.0

    async def get(self, data_type: CacheDataType, workspace_id: str, options: dict[str, Any] | None = None) -> CacheResult:
        if not self._usable():
            return CacheResult()
        key = cache_key(data_type, workspace_id, options)
        try:
            raw = await self.backend.get(key)
        except (RedisError, OSError) as e:
            self._mark_failure("get", e)
            return CacheResult()
        self._mark_success()
        if raw is None:
            return CacheResult()
        try:
            return CacheResult(data=json.loads(raw), from_cache=True)
        except ValueError:
            logger.warning("Discarding undecodable cache entry", extra={"key": key})
            return CacheResult()

    async def set(
        self,
        data_type: CacheDataType,
        workspace_id: str,
        data: Any,
        options: dict[str, Any] | None = None,
    ) -> bool:
        if not self._usable():
            return False
        key = cache_key(data_type, workspace_id, options)
        try:
            await self.backend.set(key, json.dumps(jsonable(data)), self.ttls[data_type])
        except (RedisError, OSError) as e:
            self._mark_failure("set", e)
            return False
        self._mark_success()
        return True

    async def invalidate(self, data_type: CacheDataType, workspace_id: str) -> bool:
        if not self._usable():
            return False
        base = cache_key(data_type, workspace_id)
        keys = [base]
        if data_type == CacheDataType.TRANSACTIONS:
            keys.extend(cache_key(data_type, workspace_id, opts) for opts in COMMON_TRANSACTION_OPTIONS)
        try:
            await self.backend.delete(*keys)
            await self.backend.delete_prefix(base)
        except (RedisError, OSError) as e:
            self._mark_failure("invalidate", e)
            return False
        self._mark_success()
        return True

    # --- Typed helpers ---

    async def get_accounts(self, workspace_id: str) -> CacheResult:
        return await self.get(CacheDataType.ACCOUNTS, workspace_id)

    async def set_accounts(self, workspace_id: str, accounts: Any) -> bool:
        return await self.set(CacheDataType.ACCOUNTS, workspace_id, accounts)

    async def get_transactions(self, workspace_id: str, options: dict[str, Any] | None = None) -> CacheResult:
        return await self.get(CacheDataType.TRANSACTIONS, workspace_id, options)

    async def set_transactions(self, workspace_id: str, transactions: Any, options: dict[str, Any] | None = None) -> bool:
        return await self.set(CacheDataType.TRANSACTIONS, workspace_id, transactions, options)

    async def get_balances(self, workspace_id: str) -> CacheResult:
        return await self.get(CacheDataType.BALANCES, workspace_id)

    async def set_balances(self, workspace_id: str, balances: Any) -> bool:
        return await self.set(CacheDataType.BALANCES, workspace_id, balances)

    async def get_stats(self, workspace_id: str, options: dict[str, Any] | None = None) -> CacheResult:
        return await self.get(CacheDataType.STATS, workspace_id, options)

    async def set_stats(self, workspace_id: str, stats: Any, options: dict[str, Any] | None = None) -> bool:
        return await self.set(CacheDataType.STATS, workspace_id, stats, options)

    async def invalidate_accounts(self, workspace_id: str) -> bool:
        return await self.invalidate(CacheDataType.ACCOUNTS, workspace_id)

    async def invalidate_transactions(self, workspace_id: str) -> bool:
        return await self.invalidate(CacheDataType.TRANSACTIONS, workspace_id)

    async def invalidate_balances(self, workspace_id: str) -> bool:
        return await self.invalidate(CacheDataType.BALANCES, workspace_id)

    async def invalidate_stats(self, workspace_id: str) -> bool:
        return await self.invalidate(CacheDataType.STATS, workspace_id)

    async def invalidate_all(self, workspace_id: str) -> list[str]:
        done: list[str] = []
        for data_type in CacheDataType:
            if await self.invalidate(data_type, workspace_id):
                done.append(data_type.value)
        return done

    async def is_available(self) -> bool:
        if self.backend is None:
            return False
        try:
            ok = await self.backend.ping()
        except (RedisError, OSError) as e:
            self._mark_failure("ping", e)
            return False
        self._mark_success()
        return ok

    def info(self) -> dict[str, Any]:
        return {
            "backend": self.backend.name if self.backend else "disabled",
            "degraded": self.degraded,
            "ttls": {k.value: v for k, v in self.ttls.items()},
        }

    async def close(self) -> None:
        if self.backend is None:
            return
        try:
            await self.backend.close()
        except (RedisError, OSError) as e:
            logger.warning("Banking cache close failed", extra={"error": str(e)})


def build_cache(*, enabled: bool, redis_url: str | None) -> BankingCache:
    if not enabled:
        return BankingCache(None)
    if redis_url:
        return BankingCache(RedisCacheBackend(redis_url))
    return BankingCache(MemoryCacheBackend())
