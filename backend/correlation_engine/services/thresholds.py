"""Connector decision policy storage."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from correlation_engine.config import Settings, get_settings
from correlation_engine.matching.snapshot import ThresholdPolicy
from correlation_engine.models.correlation_threshold import CorrelationThreshold
from correlation_engine.schemas.correlation_threshold import CorrelationThresholdRead, CorrelationThresholdUpsert


def _find(db: Session, connector_id: str) -> CorrelationThreshold | None:
    return db.scalar(select(CorrelationThreshold).where(CorrelationThreshold.connector_id == connector_id))


def get_thresholds(db: Session, connector_id: str, settings: Settings | None = None) -> CorrelationThresholdRead:
    """Return the stored policy, or the configured defaults when none is stored."""

    row = _find(db, connector_id)
    if row is not None:
        return CorrelationThresholdRead.model_validate(row)
    settings = settings or get_settings()
    return CorrelationThresholdRead(
        id=None,
        connector_id=connector_id,
        auto_confirm_threshold=settings.default_auto_confirm_threshold,
        manual_review_threshold=settings.default_manual_review_threshold,
        min_margin=settings.default_min_margin,
        auto_provision=settings.default_auto_provision,
        tuning_mode=False,
        include_deactivated=False,
        batch_size=settings.default_batch_size,
        created_at=None,
        updated_at=None,
    )


def upsert_thresholds(db: Session, connector_id: str, payload: CorrelationThresholdUpsert) -> CorrelationThresholdRead:
    row = _find(db, connector_id)
    if row is None:
        row = CorrelationThreshold(connector_id=connector_id)
        db.add(row)
    for name, value in payload.model_dump().items():
        setattr(row, name, value)
    db.commit()
    db.refresh(row)
    return CorrelationThresholdRead.model_validate(row)


def load_threshold_policy(db: Session, connector_id: str, settings: Settings | None = None) -> ThresholdPolicy:
    """Freeze the connector's decision policy for one batch."""

    current = get_thresholds(db, connector_id, settings)
    return ThresholdPolicy(
        auto_confirm_threshold=current.auto_confirm_threshold,
        manual_review_threshold=current.manual_review_threshold,
        min_margin=current.min_margin,
        auto_provision=current.auto_provision,
        tuning_mode=current.tuning_mode,
        include_deactivated=current.include_deactivated,
        batch_size=current.batch_size,
    )
