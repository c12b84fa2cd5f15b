"""Manual-review queue and reviewer decisions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from correlation_engine.config import get_settings
from correlation_engine.matching.decision import ReviewDecision, resolve_review
from correlation_engine.matching.types import ExternalAccount
from correlation_engine.models.correlation_audit_event import CorrelationAuditEvent
from correlation_engine.models.correlation_case import CorrelationCase
from correlation_engine.schemas.common import PaginatedResponse
from correlation_engine.schemas.correlation_audit import AuditEventCreate
from correlation_engine.schemas.correlation_case import (
    CaseDecisionRequest,
    CaseDecisionResult,
    CorrelationCandidateRead,
    CorrelationCaseDetail,
    CorrelationCaseRead,
)
from correlation_engine.services.audit import record_decision
from correlation_engine.services.collaborators import IdentityDirectory
from correlation_engine.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

_SORT_COLUMNS = {
    "created_at": CorrelationCase.created_at,
    "updated_at": CorrelationCase.updated_at,
    "highest_confidence": CorrelationCase.highest_confidence,
    "candidate_count": CorrelationCase.candidate_count,
    "account_id": CorrelationCase.account_id,
}
CASE_SORT_FIELDS: tuple[str, ...] = tuple(_SORT_COLUMNS)


class CaseAlreadyResolvedError(RuntimeError):
    """Raised when a decision targets a case that is no longer pending."""


def list_cases(
    db: Session,
    *,
    limit: int,
    offset: int,
    status: str | None = None,
    connector_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> PaginatedResponse[CorrelationCaseRead]:
    """Return review cases with optional filters."""

    base = select(CorrelationCase)
    if status is not None:
        base = base.where(CorrelationCase.status == status)
    if connector_id is not None:
        base = base.where(CorrelationCase.connector_id == connector_id)
    if start is not None:
        base = base.where(CorrelationCase.created_at >= start)
    if end is not None:
        base = base.where(CorrelationCase.created_at < end)

    total = int(db.scalar(select(func.count()).select_from(base.subquery())) or 0)
    column = _SORT_COLUMNS.get(sort_by, CorrelationCase.created_at)
    ordering = column.asc() if sort_order == "asc" else column.desc()
    id_ordering = CorrelationCase.id.asc() if sort_order == "asc" else CorrelationCase.id.desc()
    rows = db.scalars(base.order_by(ordering, id_ordering).limit(limit).offset(offset)).all()
    return PaginatedResponse[CorrelationCaseRead](
        items=[CorrelationCaseRead.model_validate(row) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


def case_detail(case: CorrelationCase) -> CorrelationCaseDetail:
    return CorrelationCaseDetail(
        id=case.id,
        connector_id=case.connector_id,
        account_id=case.account_id,
        status=case.status,
        trigger_type=case.trigger_type,
        highest_confidence=case.highest_confidence,
        candidate_count=case.candidate_count,
        assigned_to=case.assigned_to,
        created_at=case.created_at,
        updated_at=case.updated_at,
        account_attributes=dict(case.account_attributes_json or {}),
        candidates=[CorrelationCandidateRead.model_validate(item) for item in case.candidates_json or []],
        rules_snapshot=list(case.rules_snapshot_json or []),
        resolved_by=case.resolved_by,
        resolved_at=case.resolved_at,
        resolution_reason=case.resolution_reason,
        resolved_identity_id=case.resolved_identity_id,
    )


def get_case_detail(db: Session, case_id: int) -> CorrelationCaseDetail | None:
    case = db.get(CorrelationCase, case_id)
    if case is None:
        return None
    return case_detail(case)


def decide_case(
    db: Session,
    case_id: int,
    payload: CaseDecisionRequest,
    *,
    actor_id: str,
    directory: IdentityDirectory,
    clock: Callable[[], datetime] | None = None,
) -> CaseDecisionResult | None:
    """Resolve a pending case and append the reviewer's follow-up event.

    Raises ``CaseAlreadyResolvedError`` for non-pending cases,
    ``CaseDecisionError`` for invalid actions and ``CollaboratorError`` when
    provisioning a new identity fails.
    """

    case = db.get(CorrelationCase, case_id)
    if case is None:
        return None
    if case.status != "pending":
        raise CaseAlreadyResolvedError(f"Case {case_id} is already {case.status}")

    candidates = list(case.candidates_json or [])
    review = resolve_review(
        payload.action,
        case_candidate_ids=[str(item["identity_id"]) for item in candidates],
        candidate_id=payload.candidate_id,
        reason=payload.reason,
    )

    identity_id = review.identity_id
    if review.event_type == "create_identity":
        identity_id = directory.create_identity(
            case.connector_id,
            ExternalAccount(
                connector_id=case.connector_id,
                account_id=case.account_id,
                attributes=dict(case.account_attributes_json or {}),
            ),
        )
        logger.info(
            "correlation.case_identity_created case_id=%s connector_id=%s identity_id=%s",
            case.id,
            case.connector_id,
            identity_id,
        )

    decided_at = (clock or _utcnow)()
    event = AuditEventCreate(
        connector_id=case.connector_id,
        account_id=case.account_id,
        event_type=review.event_type,
        outcome="success",
        decided_at=decided_at,
        case_id=case.id,
        identity_id=identity_id,
        confidence_score=_decision_confidence(case, review),
        candidate_count=case.candidate_count,
        candidates_summary=candidates,
        rules_snapshot=list(case.rules_snapshot_json or []),
        thresholds_snapshot=_originating_thresholds(db, case.id),
        actor_type="user",
        actor_id=actor_id,
        reason=review.reason,
    )

    def resolve(session: Session) -> int:
        current = session.get(CorrelationCase, case_id, with_for_update=True, populate_existing=True)
        if current is None or current.status != "pending":
            raise CaseAlreadyResolvedError(f"Case {case_id} is no longer pending")
        current.status = review.case_status
        current.resolved_by = actor_id
        current.resolved_at = decided_at
        current.resolution_reason = review.reason
        current.resolved_identity_id = identity_id
        return current.id

    row = record_decision(
        db,
        event,
        prepare=resolve,
        retry=RetryPolicy.for_audit_writes(get_settings()),
    )
    db.refresh(case)
    logger.info(
        "correlation.case_decided case_id=%s action=%s event_type=%s actor_id=%s event_id=%s",
        case.id,
        payload.action,
        review.event_type,
        actor_id,
        row.id,
    )
    return CaseDecisionResult(case=case_detail(case), audit_event_id=row.id)


def _decision_confidence(case: CorrelationCase, review: ReviewDecision) -> float | None:
    if review.identity_id is None:
        return case.highest_confidence if review.event_type == "reject" else None
    for item in case.candidates_json or []:
        if str(item.get("identity_id")) == review.identity_id:
            return float(item.get("aggregate_confidence") or 0.0)
    return None


def _originating_thresholds(db: Session, case_id: int) -> dict[str, object]:
    original = db.scalar(
        select(CorrelationAuditEvent)
        .where(
            CorrelationAuditEvent.case_id == case_id,
            CorrelationAuditEvent.actor_type == "system",
        )
        .order_by(CorrelationAuditEvent.id.asc())
        .limit(1)
    )
    return dict(original.thresholds_snapshot) if original is not None else {}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
