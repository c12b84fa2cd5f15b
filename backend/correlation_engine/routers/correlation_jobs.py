"""Reconciliation job and statistics routes."""

from collections.abc import Callable
from datetime import date

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Path, Query
from sqlalchemy.orm import Session

from correlation_engine.db.dependencies import get_db
from correlation_engine.schemas.correlation_job import CorrelationJobRead, TriggerCorrelationRequest
from correlation_engine.schemas.correlation_statistics import CorrelationStatistics, CorrelationTrends
from correlation_engine.services.jobs import create_job, get_job, get_job_runner, request_cancel
from correlation_engine.services.statistics import get_statistics, get_trends

router = APIRouter(prefix="/connectors/{connector_id}/correlation")


def _validate_range(start_date: date | None, end_date: date | None) -> None:
    if start_date is not None and end_date is not None and start_date > end_date:
        raise HTTPException(status_code=422, detail="start_date must not be after end_date")


@router.post("/evaluate", response_model=CorrelationJobRead, status_code=202)
def post_evaluate(
    background_tasks: BackgroundTasks,
    payload: TriggerCorrelationRequest | None = Body(default=None),
    connector_id: str = Path(..., min_length=1),
    db: Session = Depends(get_db),
    runner: Callable[..., None] = Depends(get_job_runner),
) -> CorrelationJobRead:
    """Start a reconciliation job; without ``account_ids`` every feed account is evaluated."""

    account_ids = payload.account_ids if payload is not None else None
    job = create_job(db, connector_id, account_ids)
    background_tasks.add_task(runner, job.id, account_ids)
    return CorrelationJobRead.model_validate(job)


@router.get("/jobs/{job_id}", response_model=CorrelationJobRead)
def get_correlation_job(
    connector_id: str = Path(..., min_length=1),
    job_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
) -> CorrelationJobRead:
    job = get_job(db, connector_id, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Correlation job not found")
    return CorrelationJobRead.model_validate(job)


@router.post("/jobs/{job_id}/cancel", response_model=CorrelationJobRead, status_code=202)
def post_cancel_job(
    connector_id: str = Path(..., min_length=1),
    job_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
) -> CorrelationJobRead:
    """Ask a pending or running job to stop; in-flight accounts record nothing."""

    job = request_cancel(db, connector_id, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Correlation job not found")
    return CorrelationJobRead.model_validate(job)


@router.get("/statistics", response_model=CorrelationStatistics)
def get_connector_statistics(
    connector_id: str = Path(..., min_length=1),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> CorrelationStatistics:
    """Decision mix, average confidence and review queue depth."""

    _validate_range(start_date, end_date)
    return get_statistics(db, connector_id, start_date=start_date, end_date=end_date)


@router.get("/statistics/trends", response_model=CorrelationTrends)
def get_connector_trends(
    connector_id: str = Path(..., min_length=1),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> CorrelationTrends:
    _validate_range(start_date, end_date)
    return get_trends(db, connector_id, start_date=start_date, end_date=end_date)
