"""Connector-level decision policy model."""

from sqlalchemy import Boolean, CheckConstraint, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from correlation_engine.models.base import Base, CreatedAtMixin, IdMixin, UpdatedAtMixin


class CorrelationThreshold(Base, IdMixin, CreatedAtMixin, UpdatedAtMixin):
    """Auto-confirm / manual-review thresholds for one connector."""

    __tablename__ = "correlation_thresholds"
    __table_args__ = (
        CheckConstraint(
            "auto_confirm_threshold >= manual_review_threshold",
            name="ck_correlation_thresholds_order",
        ),
    )

    connector_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    auto_confirm_threshold: Mapped[float] = mapped_column(Float, nullable=False)
    manual_review_threshold: Mapped[float] = mapped_column(Float, nullable=False)
    min_margin: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    auto_provision: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    tuning_mode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    include_deactivated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    batch_size: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
