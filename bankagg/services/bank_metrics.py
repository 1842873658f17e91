from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError

from bankagg.core.enums import ProviderOperation
from bankagg.services.bank_errors import PersistenceError


logger = logging.getLogger(__name__)

# Heuristic per-call costs in EUR; deployments override them with BANKING_COST_TABLE.
DEFAULT_COST_TABLE: dict[str, float] = {
    ProviderOperation.PROCESS_PAYMENT.value: 0.30,
    "process_payment_rate": 0.029,
    ProviderOperation.PROCESS_REFUND.value: 0.15,
    ProviderOperation.GET_BALANCE.value: 0.01,
    ProviderOperation.GET_TRANSACTIONS.value: 0.05,
    ProviderOperation.SYNC_ACCOUNTS.value: 0.02,
    "default": 0.01,
}


class CostModel(Protocol):
    def estimate(self, *, provider: str, operation: str, amount: Decimal | None = None) -> float: ...


class TableCostModel:
    """
    Flat cost per operation, plus a percentage of the amount for payments.

    Keys may be scoped to one provider as "<provider>.<operation>".
    """

    def __init__(self, table: dict[str, float] | None = None) -> None:
        self.table = {**DEFAULT_COST_TABLE, **(table or {})}

    def _lookup(self, provider: str, key: str) -> float | None:
        scoped = self.table.get(f"{provider}.{key}")
        if scoped is not None:
            return float(scoped)
        value = self.table.get(key)
        return float(value) if value is not None else None

    def estimate(self, *, provider: str, operation: str, amount: Decimal | None = None) -> float:
        base = self._lookup(provider, operation)
        if base is None:
            base = self._lookup(provider, "default") or 0.0
        if operation == ProviderOperation.PROCESS_PAYMENT.value and amount is not None:
            rate = self._lookup(provider, "process_payment_rate") or 0.0
            base += float(amount) * rate
        return round(base, 4)


class MetricsSink(Protocol):
    async def record(
        self,
        *,
        provider: str,
        operation: str,
        workspace_id: str,
        elapsed_ms: int,
        success: bool,
        cost: float,
    ) -> None: ...


@dataclass(slots=True)
class CallOutcome:
    amount: Decimal | None = None
    success: bool = False


class MetricsRecorder:
    """Times provider calls and writes one rollup row per call, whatever the outcome."""

    def __init__(self, sink: MetricsSink | None, cost_model: CostModel) -> None:
        self.sink = sink
        self.cost_model = cost_model

    @asynccontextmanager
    async def track(
        self,
        *,
        provider: str,
        operation: ProviderOperation | str,
        workspace_id: str,
        amount: Decimal | None = None,
    ) -> AsyncIterator[CallOutcome]:
        outcome = CallOutcome(amount=amount)
        started = time.perf_counter()
        try:
            yield outcome
            outcome.success = True
        finally:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            await self._record(provider, str(operation), workspace_id, elapsed_ms, outcome)

    async def _record(self, provider: str, operation: str, workspace_id: str, elapsed_ms: int, outcome: CallOutcome) -> None:
        if self.sink is None:
            return
        cost = self.cost_model.estimate(provider=provider, operation=operation, amount=outcome.amount)
        try:
            await self.sink.record(
                provider=provider,
                operation=operation,
                workspace_id=workspace_id,
                elapsed_ms=elapsed_ms,
                success=outcome.success,
                cost=cost,
            )
        except (SQLAlchemyError, PersistenceError):
            # Metrics are observational; losing one row must not fail the banking call.
            logger.exception(
                "Failed to record banking API metric",
                extra={"provider": provider, "operation": operation, "workspace_id": workspace_id},
            )


def summarize(rows: list[Any]) -> list[dict[str, Any]]:
    """Group ApiMetric rollups by provider for cost comparison."""
    by_provider: dict[str, dict[str, Any]] = {}
    for row in rows:
        agg = by_provider.setdefault(
            row.provider,
            {"provider": row.provider, "request_count": 0, "success_count": 0, "error_count": 0, "total_ms": 0, "total_cost": 0.0},
        )
        agg["request_count"] += int(row.request_count or 0)
        agg["success_count"] += int(row.success_count or 0)
        agg["error_count"] += int(row.error_count or 0)
        agg["total_ms"] += int(row.total_response_ms or 0)
        agg["total_cost"] += float(row.total_cost or 0)

    out: list[dict[str, Any]] = []
    for agg in by_provider.values():
        requests = agg["request_count"]
        out.append(
            {
                "provider": agg["provider"],
                "request_count": requests,
                "success_count": agg["success_count"],
                "error_count": agg["error_count"],
                "success_rate": (agg["success_count"] / requests) if requests else 0.0,
                "avg_response_ms": (agg["total_ms"] / requests) if requests else 0.0,
                "total_cost": round(agg["total_cost"], 4),
                "cost_per_request": round(agg["total_cost"] / requests, 4) if requests else 0.0,
            }
        )
    return sorted(out, key=lambda r: r["total_cost"])
