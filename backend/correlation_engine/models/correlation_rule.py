"""Connector-scoped correlation rule model."""

from sqlalchemy import Boolean, CheckConstraint, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from correlation_engine.models.base import Base, CreatedAtMixin, IdMixin, UpdatedAtMixin


class CorrelationRule(Base, IdMixin, CreatedAtMixin, UpdatedAtMixin):
    """One matching directive owned by a connector."""

    __tablename__ = "correlation_rules"
    __table_args__ = (
        CheckConstraint("threshold >= 0 AND threshold <= 1", name="ck_correlation_rules_threshold"),
        CheckConstraint("weight >= 0", name="ck_correlation_rules_weight"),
        CheckConstraint("tier >= 1", name="ck_correlation_rules_tier"),
    )

    connector_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    source_attribute: Mapped[str] = mapped_column(String(255), nullable=False)
    target_attribute: Mapped[str] = mapped_column(String(255), nullable=False)
    match_type: Mapped[str] = mapped_column(String(16), nullable=False)
    algorithm: Mapped[str | None] = mapped_column(String(32), nullable=True)
    threshold: Mapped[float] = mapped_column(Float, default=0.85, nullable=False)
    weight: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    expression: Mapped[str | None] = mapped_column(Text, nullable=True)
    tier: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_definitive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    normalize: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
