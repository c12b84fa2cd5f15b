"""Correlation audit ledger routes (read-only)."""

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy.orm import Session

from correlation_engine.db.dependencies import get_db
from correlation_engine.schemas.common import PaginatedResponse
from correlation_engine.schemas.correlation_audit import (
    CorrelationAuditEventRead,
    EventTypeParam,
    OutcomeParam,
)
from correlation_engine.services.audit import day_bounds, get_audit_event, list_audit_events

router = APIRouter(prefix="/connectors/{connector_id}/correlation")
global_router = APIRouter(prefix="/correlation/audit")


@router.get("/audit", response_model=PaginatedResponse[CorrelationAuditEventRead])
def get_connector_audit(
    connector_id: str = Path(..., min_length=1),
    event_type: EventTypeParam | None = Query(default=None),
    outcome: OutcomeParam | None = Query(default=None),
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=25, ge=1, le=200),
    db: Session = Depends(get_db),
) -> PaginatedResponse[CorrelationAuditEventRead]:
    """Page through a connector's decisions, newest first; ``end`` is inclusive."""

    if start is not None and end is not None and start > end:
        raise HTTPException(status_code=422, detail="start must not be after end")
    start_at, end_before = day_bounds(start, end)
    return list_audit_events(
        db,
        connector_id=connector_id,
        event_type=event_type,
        outcome=outcome,
        start=start_at,
        end=end_before,
        limit=page_size,
        offset=(page - 1) * page_size,
    )


@global_router.get("", response_model=PaginatedResponse[CorrelationAuditEventRead])
def get_audit_events(
    connector_id: str | None = Query(default=None, min_length=1),
    account_id: str | None = Query(default=None, min_length=1),
    case_id: int | None = Query(default=None, ge=1),
    event_type: EventTypeParam | None = Query(default=None),
    outcome: OutcomeParam | None = Query(default=None),
    actor_id: str | None = Query(default=None, min_length=1),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> PaginatedResponse[CorrelationAuditEventRead]:
    """Search decisions across connectors."""

    start_at, end_before = day_bounds(start_date, end_date)
    return list_audit_events(
        db,
        connector_id=connector_id,
        account_id=account_id,
        case_id=case_id,
        event_type=event_type,
        outcome=outcome,
        actor_id=actor_id,
        start=start_at,
        end=end_before,
        limit=limit,
        offset=offset,
    )


@global_router.get("/{event_id}", response_model=CorrelationAuditEventRead)
def get_one_audit_event(
    event_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
) -> CorrelationAuditEventRead:
    row = get_audit_event(db, event_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Audit event not found")
    return CorrelationAuditEventRead.model_validate(row)
