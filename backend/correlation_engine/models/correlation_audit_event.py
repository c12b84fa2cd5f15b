"""Append-only correlation decision ledger."""

from datetime import datetime

from sqlalchemy import JSON, CheckConstraint, DateTime, Float, ForeignKey, Integer, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from correlation_engine.models.base import Base, IdMixin


class AuditImmutableError(RuntimeError):
    """Raised when code attempts to modify or remove a recorded audit event."""


class CorrelationAuditEvent(Base, IdMixin):
    """Immutable record of one correlation decision."""

    __tablename__ = "correlation_audit_events"
    __table_args__ = (
        CheckConstraint(
            "(actor_type = 'user' AND actor_id IS NOT NULL) OR (actor_type = 'system' AND actor_id IS NULL)",
            name="ck_correlation_audit_events_actor",
        ),
        CheckConstraint(
            "event_type NOT IN ('reject', 'reassign') OR reason IS NOT NULL",
            name="ck_correlation_audit_events_reason",
        ),
    )

    event_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    connector_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    account_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    case_id: Mapped[int | None] = mapped_column(
        ForeignKey("correlation_cases.id", ondelete="RESTRICT"),
        index=True,
        nullable=True,
    )
    identity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    event_type: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    candidate_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    candidates_summary: Mapped[list[dict[str, object]]] = mapped_column(JSON, default=list, nullable=False)
    rules_snapshot: Mapped[list[dict[str, object]]] = mapped_column(JSON, default=list, nullable=False)
    thresholds_snapshot: Mapped[dict[str, object]] = mapped_column(JSON, default=dict, nullable=False)
    actor_type: Mapped[str] = mapped_column(String(16), default="system", nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)


@event.listens_for(CorrelationAuditEvent, "before_update")
def _reject_audit_update(mapper, connection, target: CorrelationAuditEvent) -> None:
    raise AuditImmutableError(f"Correlation audit event {target.id} is append-only and cannot be updated")


@event.listens_for(CorrelationAuditEvent, "before_delete")
def _reject_audit_delete(mapper, connection, target: CorrelationAuditEvent) -> None:
    raise AuditImmutableError(f"Correlation audit event {target.id} is append-only and cannot be deleted")
