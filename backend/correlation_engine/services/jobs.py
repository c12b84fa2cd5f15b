"""Reconciliation jobs run as FastAPI background tasks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from threading import Lock
from time import perf_counter

from sqlalchemy.orm import Session

from correlation_engine.config import Settings
from correlation_engine.db.session import SessionLocal
from correlation_engine.models.correlation_job import CorrelationJob
from correlation_engine.services.collaborators import (
    AccountFeed,
    CollaboratorError,
    IdentityDirectory,
    get_account_feed,
    get_identity_directory,
)
from correlation_engine.services.orchestrator import AccountOutcome, ReconciliationOrchestrator

logger = logging.getLogger(__name__)

_OUTCOME_COUNTERS = {
    "auto_confirm": "auto_confirmed",
    "manual_confirm": "queued_for_review",
    "reject": "no_match",
    "create_identity": "identities_created",
}

_running: dict[int, tuple[asyncio.AbstractEventLoop, asyncio.Event]] = {}
_running_lock = Lock()


def create_job(db: Session, connector_id: str, account_ids: list[str] | None = None) -> CorrelationJob:
    job = CorrelationJob(
        connector_id=connector_id,
        status="pending",
        total_accounts=len(set(account_ids)) if account_ids else 0,
        requeued_account_ids_json=[],
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def get_job(db: Session, connector_id: str, job_id: int) -> CorrelationJob | None:
    job = db.get(CorrelationJob, job_id)
    if job is None or job.connector_id != connector_id:
        return None
    return job


def request_cancel(db: Session, connector_id: str, job_id: int) -> CorrelationJob | None:
    """Signal a running job to stop; pending jobs are cancelled immediately.

    Finished jobs are returned unchanged.
    """

    job = get_job(db, connector_id, job_id)
    if job is None:
        return None
    if job.status == "pending":
        job.status = "cancelled"
        job.completed_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(job)
        return job
    with _running_lock:
        handle = _running.get(job_id)
    if handle is not None:
        loop, cancel_event = handle
        loop.call_soon_threadsafe(cancel_event.set)
        logger.info("correlation.job_cancel_requested job_id=%s connector_id=%s", job_id, connector_id)
    return job


def run_correlation_job(
    job_id: int,
    account_ids: list[str] | None = None,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    directory: IdentityDirectory | None = None,
    account_feed: AccountFeed | None = None,
    settings: Settings | None = None,
) -> None:
    """Run one job to completion, persisting progress after every account."""

    total_started = perf_counter()
    db = session_factory()
    try:
        job = db.get(CorrelationJob, job_id)
        if job is None:
            logger.warning("correlation.job_missing job_id=%s", job_id)
            return
        if job.status != "pending":
            logger.info("correlation.job_skipped job_id=%s status=%s", job_id, job.status)
            return
        connector_id = job.connector_id
        feed = account_feed or get_account_feed()
        orchestrator = ReconciliationOrchestrator(
            session_factory,
            directory=directory or get_identity_directory(),
            account_feed=feed,
            settings=settings,
        )

        job.status = "running"
        job.started_at = datetime.now(timezone.utc)
        db.commit()

        if account_ids is None:
            try:
                account_ids = feed.list_account_ids(connector_id)
            except CollaboratorError as exc:
                _finish(db, job, "failed", error_message=f"account listing failed: {exc}")
                logger.warning("correlation.job_failed job_id=%s connector_id=%s error=%s", job_id, connector_id, exc)
                return
        job.total_accounts = len(set(account_ids))
        db.commit()

        def track(outcome: AccountOutcome) -> None:
            progress = session_factory()
            try:
                row = progress.get(CorrelationJob, job_id)
                row.processed_accounts += 1
                if outcome.status == "decided":
                    counter = _OUTCOME_COUNTERS.get(outcome.event_type or "")
                    if counter is not None:
                        setattr(row, counter, getattr(row, counter) + 1)
                elif outcome.status == "failed":
                    row.errors += 1
                elif outcome.status == "requeued":
                    row.requeued_account_ids_json = [*row.requeued_account_ids_json, outcome.account_id]
                progress.commit()
            finally:
                progress.close()

        batch = asyncio.run(_run_registered(job_id, orchestrator, connector_id, account_ids, track))

        db.refresh(job)
        _finish(db, job, "cancelled" if batch.cancelled else "completed")
        logger.info(
            (
                "correlation.job_timing job_id=%s connector_id=%s status=%s processed=%d "
                "auto_confirmed=%d queued_for_review=%d no_match=%d errors=%d total_ms=%.2f"
            ),
            job_id,
            connector_id,
            job.status,
            job.processed_accounts,
            job.auto_confirmed,
            job.queued_for_review,
            job.no_match,
            job.errors,
            (perf_counter() - total_started) * 1000.0,
        )
    except Exception as exc:
        logger.exception(
            "correlation.job_failed job_id=%s elapsed_ms=%.2f",
            job_id,
            (perf_counter() - total_started) * 1000.0,
        )
        db.rollback()
        job = db.get(CorrelationJob, job_id)
        if job is not None:
            _finish(db, job, "failed", error_message=str(exc))
        raise
    finally:
        db.close()


async def _run_registered(
    job_id: int,
    orchestrator: ReconciliationOrchestrator,
    connector_id: str,
    account_ids: list[str],
    track: Callable[[AccountOutcome], None],
):
    cancel_event = asyncio.Event()
    with _running_lock:
        _running[job_id] = (asyncio.get_running_loop(), cancel_event)
    try:
        return await orchestrator.run_batch(
            connector_id,
            account_ids,
            cancel_event=cancel_event,
            on_outcome=track,
        )
    finally:
        with _running_lock:
            _running.pop(job_id, None)


def _finish(db: Session, job: CorrelationJob, status: str, *, error_message: str | None = None) -> None:
    job.status = status
    job.error_message = error_message
    job.completed_at = datetime.now(timezone.utc)
    db.commit()


def get_job_runner() -> Callable[..., None]:
    """Dependency returning the callable that executes a job in the background."""

    return run_correlation_job
