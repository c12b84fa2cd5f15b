"""Manual-review case model."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from correlation_engine.models.base import Base, CreatedAtMixin, IdMixin, UpdatedAtMixin


class CorrelationCase(Base, IdMixin, CreatedAtMixin, UpdatedAtMixin):
    """Pending human decision opened when confidence is inconclusive."""

    __tablename__ = "correlation_cases"

    connector_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    account_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(32), index=True, default="pending", nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(32), default="batch", nullable=False)
    account_attributes_json: Mapped[dict[str, object]] = mapped_column(JSON, default=dict, nullable=False)
    candidates_json: Mapped[list[dict[str, object]]] = mapped_column(JSON, default=list, nullable=False)
    highest_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    candidate_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rules_snapshot_json: Mapped[list[dict[str, object]]] = mapped_column(JSON, default=list, nullable=False)
    assigned_to: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_identity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
