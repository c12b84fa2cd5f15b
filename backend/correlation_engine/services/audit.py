"""Append-only recorder and query surface for correlation decisions."""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable
from datetime import date, datetime, time as day_time, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from correlation_engine.models.correlation_audit_event import CorrelationAuditEvent
from correlation_engine.schemas.common import PaginatedResponse
from correlation_engine.schemas.correlation_audit import AuditEventCreate, CorrelationAuditEventRead
from correlation_engine.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

_SINGLE_ATTEMPT = RetryPolicy(max_attempts=1)


class AuditWriteError(RuntimeError):
    """Raised when a decision could not be durably recorded."""


def build_event_key(connector_id: str, account_id: str, decided_at: datetime) -> str:
    """Deterministic idempotency key for one decision."""

    raw = f"{connector_id}:{account_id}:{decided_at.isoformat()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def find_by_event_key(db: Session, event_key: str) -> CorrelationAuditEvent | None:
    return db.scalar(select(CorrelationAuditEvent).where(CorrelationAuditEvent.event_key == event_key))


def record_decision(
    db: Session,
    event: AuditEventCreate,
    *,
    prepare: Callable[[Session], int | None] | None = None,
    retry: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> CorrelationAuditEvent:
    """Persist one audit event and return the stored row.

    ``prepare`` runs inside the same transaction before the event is inserted
    (opening or resolving a case); a non-``None`` return value becomes the
    event's ``case_id``. Retries reuse the same event key, so a write that
    committed before an error was reported is found instead of duplicated.

    Raises ``AuditWriteError`` once the retry policy is exhausted.
    """

    policy = retry or _SINGLE_ATTEMPT
    event_key = build_event_key(event.connector_id, event.account_id, event.decided_at)
    attempt = 0
    while True:
        attempt += 1
        try:
            existing = find_by_event_key(db, event_key)
            if existing is not None:
                logger.info(
                    "correlation.audit_duplicate_key connector_id=%s account_id=%s event_id=%s",
                    event.connector_id,
                    event.account_id,
                    existing.id,
                )
                return existing

            case_id = prepare(db) if prepare is not None else None
            row = CorrelationAuditEvent(
                event_key=event_key,
                connector_id=event.connector_id,
                account_id=event.account_id,
                case_id=case_id if case_id is not None else event.case_id,
                identity_id=event.identity_id,
                event_type=event.event_type,
                outcome=event.outcome,
                confidence_score=event.confidence_score,
                candidate_count=event.candidate_count,
                candidates_summary=list(event.candidates_summary),
                rules_snapshot=list(event.rules_snapshot),
                thresholds_snapshot=dict(event.thresholds_snapshot),
                actor_type=event.actor_type,
                actor_id=event.actor_id,
                reason=event.reason,
                created_at=event.decided_at,
            )
            db.add(row)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            if attempt >= policy.max_attempts:
                logger.error(
                    "correlation.audit_write_failed connector_id=%s account_id=%s attempts=%d error=%s",
                    event.connector_id,
                    event.account_id,
                    attempt,
                    exc,
                )
                raise AuditWriteError(
                    f"Audit event for account '{event.account_id}' could not be written after {attempt} attempt(s)"
                ) from exc
            delay = policy.delay_for(attempt)
            logger.warning(
                "correlation.audit_write_retry connector_id=%s account_id=%s attempt=%d delay_s=%.2f error=%s",
                event.connector_id,
                event.account_id,
                attempt,
                delay,
                exc,
            )
            sleep(delay)
            continue
        except Exception:
            db.rollback()
            raise

        db.refresh(row)
        return row


def day_bounds(start_date: date | None, end_date: date | None) -> tuple[datetime | None, datetime | None]:
    """Half-open UTC datetime range covering whole days ``start_date..end_date``."""

    start = datetime.combine(start_date, day_time.min, tzinfo=timezone.utc) if start_date else None
    end = (
        datetime.combine(end_date + timedelta(days=1), day_time.min, tzinfo=timezone.utc)
        if end_date
        else None
    )
    return start, end


def list_audit_events(
    db: Session,
    *,
    limit: int,
    offset: int,
    connector_id: str | None = None,
    account_id: str | None = None,
    case_id: int | None = None,
    event_type: str | None = None,
    outcome: str | None = None,
    actor_type: str | None = None,
    actor_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> PaginatedResponse[CorrelationAuditEventRead]:
    """Return matching audit events, newest first.

    ``start`` is inclusive and ``end`` exclusive.
    """

    base = select(CorrelationAuditEvent)
    if connector_id is not None:
        base = base.where(CorrelationAuditEvent.connector_id == connector_id)
    if account_id is not None:
        base = base.where(CorrelationAuditEvent.account_id == account_id)
    if case_id is not None:
        base = base.where(CorrelationAuditEvent.case_id == case_id)
    if event_type is not None:
        base = base.where(CorrelationAuditEvent.event_type == event_type)
    if outcome is not None:
        base = base.where(CorrelationAuditEvent.outcome == outcome)
    if actor_type is not None:
        base = base.where(CorrelationAuditEvent.actor_type == actor_type)
    if actor_id is not None:
        base = base.where(CorrelationAuditEvent.actor_id == actor_id)
    if start is not None:
        base = base.where(CorrelationAuditEvent.created_at >= start)
    if end is not None:
        base = base.where(CorrelationAuditEvent.created_at < end)

    total = int(db.scalar(select(func.count()).select_from(base.subquery())) or 0)
    rows = db.scalars(
        base.order_by(CorrelationAuditEvent.created_at.desc(), CorrelationAuditEvent.id.desc())
        .limit(limit)
        .offset(offset)
    ).all()
    return PaginatedResponse[CorrelationAuditEventRead](
        items=[CorrelationAuditEventRead.model_validate(row) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


def get_audit_event(db: Session, event_id: int) -> CorrelationAuditEvent | None:
    return db.get(CorrelationAuditEvent, event_id)
