"""Manual-review case routes."""

from datetime import date
from typing import Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query
from sqlalchemy.orm import Session

from correlation_engine.db.dependencies import get_db
from correlation_engine.matching.decision import CaseDecisionError
from correlation_engine.schemas.common import PaginatedResponse
from correlation_engine.schemas.correlation_case import (
    CaseDecisionRequest,
    CaseDecisionResult,
    CaseStatusParam,
    ConfirmCaseRequest,
    CorrelationCaseDetail,
    CorrelationCaseRead,
    CreateIdentityFromCaseRequest,
    ReassignCaseRequest,
    RejectCaseRequest,
)
from correlation_engine.services.audit import AuditWriteError, day_bounds
from correlation_engine.services.cases import (
    CaseAlreadyResolvedError,
    decide_case,
    get_case_detail,
    list_cases,
)
from correlation_engine.services.collaborators import CollaboratorError, IdentityDirectory, get_identity_directory

router = APIRouter(prefix="/correlation/cases")

CaseSortParam = Literal["created_at", "updated_at", "highest_confidence", "candidate_count", "account_id"]


@router.get("", response_model=PaginatedResponse[CorrelationCaseRead])
def get_cases(
    status: CaseStatusParam | None = Query(default=None),
    connector_id: str | None = Query(default=None, min_length=1),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    sort_by: CaseSortParam = Query(default="created_at"),
    sort_order: Literal["asc", "desc"] = Query(default="desc"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> PaginatedResponse[CorrelationCaseRead]:
    """List review cases."""

    start_at, end_before = day_bounds(start_date, end_date)
    return list_cases(
        db,
        status=status,
        connector_id=connector_id,
        start=start_at,
        end=end_before,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
    )


@router.get("/{case_id}", response_model=CorrelationCaseDetail)
def get_case(
    case_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
) -> CorrelationCaseDetail:
    detail = get_case_detail(db, case_id)
    if detail is None:
        raise HTTPException(status_code=404, detail="Correlation case not found")
    return detail


def _decide(
    db: Session,
    case_id: int,
    payload: CaseDecisionRequest,
    actor_id: str,
    directory: IdentityDirectory,
) -> CaseDecisionResult:
    actor_id = actor_id.strip()
    if not actor_id:
        raise HTTPException(status_code=422, detail="X-Actor-Id header must not be blank")
    try:
        result = decide_case(db, case_id, payload, actor_id=actor_id, directory=directory)
    except CaseAlreadyResolvedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except CaseDecisionError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except CollaboratorError as exc:
        raise HTTPException(status_code=502, detail=f"Identity directory error: {exc}") from exc
    except AuditWriteError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if result is None:
        raise HTTPException(status_code=404, detail="Correlation case not found")
    return result


@router.post("/{case_id}/decide", response_model=CaseDecisionResult)
def post_case_decision(
    payload: CaseDecisionRequest,
    case_id: int = Path(..., ge=1),
    x_actor_id: str = Header(..., min_length=1),
    db: Session = Depends(get_db),
    directory: IdentityDirectory = Depends(get_identity_directory),
) -> CaseDecisionResult:
    """Resolve a pending case: accept, reject, reassign or create an identity."""

    return _decide(db, case_id, payload, x_actor_id, directory)


@router.post("/{case_id}/confirm", response_model=CaseDecisionResult)
def post_case_confirm(
    payload: ConfirmCaseRequest,
    case_id: int = Path(..., ge=1),
    x_actor_id: str = Header(..., min_length=1),
    db: Session = Depends(get_db),
    directory: IdentityDirectory = Depends(get_identity_directory),
) -> CaseDecisionResult:
    request = CaseDecisionRequest(action="accept", candidate_id=payload.candidate_id, reason=payload.reason)
    return _decide(db, case_id, request, x_actor_id, directory)


@router.post("/{case_id}/reject", response_model=CaseDecisionResult)
def post_case_reject(
    payload: RejectCaseRequest,
    case_id: int = Path(..., ge=1),
    x_actor_id: str = Header(..., min_length=1),
    db: Session = Depends(get_db),
    directory: IdentityDirectory = Depends(get_identity_directory),
) -> CaseDecisionResult:
    request = CaseDecisionRequest(action="reject", reason=payload.reason)
    return _decide(db, case_id, request, x_actor_id, directory)


@router.post("/{case_id}/create-identity", response_model=CaseDecisionResult)
def post_case_create_identity(
    payload: CreateIdentityFromCaseRequest,
    case_id: int = Path(..., ge=1),
    x_actor_id: str = Header(..., min_length=1),
    db: Session = Depends(get_db),
    directory: IdentityDirectory = Depends(get_identity_directory),
) -> CaseDecisionResult:
    request = CaseDecisionRequest(action="create_identity", reason=payload.reason)
    return _decide(db, case_id, request, x_actor_id, directory)


@router.post("/{case_id}/reassign", response_model=CaseDecisionResult)
def post_case_reassign(
    payload: ReassignCaseRequest,
    case_id: int = Path(..., ge=1),
    x_actor_id: str = Header(..., min_length=1),
    db: Session = Depends(get_db),
    directory: IdentityDirectory = Depends(get_identity_directory),
) -> CaseDecisionResult:
    request = CaseDecisionRequest(action="reassign", candidate_id=payload.candidate_id, reason=payload.reason)
    return _decide(db, case_id, request, x_actor_id, directory)
