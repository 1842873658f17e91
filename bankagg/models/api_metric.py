from __future__ import annotations

from datetime import date

from sqlalchemy import BigInteger, Date, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from bankagg.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class ApiMetric(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Daily rollup of provider calls per (provider, operation, workspace)."""

    __tablename__ = "bank_api_metrics"
    __table_args__ = (
        UniqueConstraint("provider", "operation", "workspace_id", "day", name="uq_bank_api_metrics_rollup"),
    )

    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    operation: Mapped[str] = mapped_column(String(50), nullable=False)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)

    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    total_response_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    min_response_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_response_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    total_cost: Mapped[float] = mapped_column(Numeric(14, 4, asdecimal=False), nullable=False, default=0.0)

    @property
    def avg_response_ms(self) -> float:
        if not self.request_count:
            return 0.0
        return self.total_response_ms / self.request_count

    @property
    def cost_per_request(self) -> float:
        if not self.request_count:
            return 0.0
        return float(self.total_cost) / self.request_count
