"""Reconciliation job model."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from correlation_engine.models.base import Base, CreatedAtMixin, IdMixin


class CorrelationJob(Base, IdMixin, CreatedAtMixin):
    """One batch reconciliation run for a connector."""

    __tablename__ = "correlation_jobs"

    connector_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    total_accounts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_accounts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    auto_confirmed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    queued_for_review: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    no_match: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    identities_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    requeued_account_ids_json: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
