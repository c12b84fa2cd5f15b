"""Batch reconciliation of connector accounts against the identity directory.

Each account is evaluated in its own task, bounded by a per-connector limit
shared with every other batch on the same connector. Rules and the threshold
policy are frozen once per batch; collaborator calls and audit writes run in
worker threads with retry/backoff; matching runs inline; every decision is
recorded before the account counts as processed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Literal

from sqlalchemy.orm import Session

from correlation_engine.config import Settings, get_settings
from correlation_engine.matching.decision import Decision, DecisionEngine, failure_decision
from correlation_engine.matching.scorer import CandidateScorer, ScoringResult
from correlation_engine.matching.snapshot import RuleSetSnapshot, ThresholdPolicy
from correlation_engine.matching.types import ExternalAccount
from correlation_engine.models.correlation_case import CorrelationCase
from correlation_engine.schemas.correlation_audit import AuditEventCreate
from correlation_engine.services.audit import AuditWriteError, record_decision
from correlation_engine.services.collaborators import (
    AccountFeed,
    CollaboratorError,
    IdentityDirectory,
    TransientCollaboratorError,
)
from correlation_engine.services.concurrency import ConnectorSlots, connector_slots
from correlation_engine.services.retry import RetryPolicy
from correlation_engine.services.rules import load_rule_set
from correlation_engine.services.thresholds import load_threshold_policy

logger = logging.getLogger(__name__)

AccountStatus = Literal["decided", "failed", "requeued", "cancelled"]
AccountRef = str | ExternalAccount


@dataclass(frozen=True, slots=True)
class AccountOutcome:
    """What happened to one account in a batch."""

    account_id: str
    status: AccountStatus
    event_type: str | None = None
    identity_id: str | None = None
    confidence_score: float | None = None
    case_id: int | None = None
    audit_event_id: int | None = None
    reason: str | None = None


@dataclass(slots=True)
class BatchResult:
    """Outcomes of one batch, in input order."""

    connector_id: str
    outcomes: list[AccountOutcome] = field(default_factory=list)
    cancelled: bool = False

    def _count(self, event_type: str) -> int:
        return sum(
            1 for item in self.outcomes if item.status == "decided" and item.event_type == event_type
        )

    @property
    def auto_confirmed(self) -> int:
        return self._count("auto_confirm")

    @property
    def queued_for_review(self) -> int:
        return self._count("manual_confirm")

    @property
    def no_match(self) -> int:
        return self._count("reject")

    @property
    def identities_created(self) -> int:
        return self._count("create_identity")

    @property
    def errors(self) -> int:
        return sum(1 for item in self.outcomes if item.status == "failed")

    @property
    def requeued_account_ids(self) -> list[str]:
        return [item.account_id for item in self.outcomes if item.status == "requeued"]


@dataclass(frozen=True, slots=True)
class _BatchContext:
    connector_id: str
    rules: RuleSetSnapshot
    policy: ThresholdPolicy
    scorer: CandidateScorer
    engine: DecisionEngine


@dataclass(frozen=True, slots=True)
class _Assessment:
    account_id: str
    decision: Decision
    account: ExternalAccount | None = None
    result: ScoringResult | None = None


class ReconciliationOrchestrator:
    """Drive accounts through lookup, scoring, decision and audit."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        directory: IdentityDirectory,
        account_feed: AccountFeed | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        slots: ConnectorSlots | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._directory = directory
        self._account_feed = account_feed
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._slots = slots or connector_slots
        self._collaborator_retry = RetryPolicy.for_collaborators(self._settings)
        self._audit_retry = RetryPolicy.for_audit_writes(self._settings)

    def load_context(self, connector_id: str) -> _BatchContext:
        """Freeze rules and policy for one batch."""

        db = self._session_factory()
        try:
            rules = load_rule_set(db, connector_id)
            policy = load_threshold_policy(db, connector_id, self._settings)
        finally:
            db.close()
        return _BatchContext(
            connector_id=connector_id,
            rules=rules,
            policy=policy,
            scorer=CandidateScorer(rules),
            engine=DecisionEngine(policy),
        )

    async def run_batch(
        self,
        connector_id: str,
        accounts: Sequence[AccountRef],
        *,
        cancel_event: asyncio.Event | None = None,
        on_outcome: Callable[[AccountOutcome], None] | None = None,
    ) -> BatchResult:
        """Evaluate accounts given by id (fetched from the feed) or pre-fetched.

        Duplicate ids are evaluated once. Setting ``cancel_event`` abandons
        in-flight and remaining accounts without recording anything for them.
        ``on_outcome`` is called in a worker thread, one outcome at a time.
        """

        started = perf_counter()
        context = await asyncio.to_thread(self.load_context, connector_id)
        unique: dict[str, AccountRef] = {}
        for ref in accounts:
            unique.setdefault(_account_id(ref), ref)
        refs = list(unique.values())

        batch = BatchResult(connector_id=connector_id)
        chunk_size = max(context.policy.batch_size, 1)
        for start in range(0, len(refs), chunk_size):
            chunk = refs[start : start + chunk_size]
            if cancel_event is not None and cancel_event.is_set():
                outcomes = [AccountOutcome(_account_id(ref), "cancelled") for ref in chunk]
            else:
                outcomes = await self._run_chunk(context, chunk, cancel_event)
            for outcome in outcomes:
                batch.outcomes.append(outcome)
                if on_outcome is not None:
                    await asyncio.to_thread(on_outcome, outcome)

        batch.cancelled = any(item.status == "cancelled" for item in batch.outcomes)
        logger.info(
            (
                "correlation.batch_timing connector_id=%s accounts=%d rules=%d auto_confirmed=%d "
                "queued_for_review=%d no_match=%d identities_created=%d errors=%d requeued=%d "
                "cancelled=%s total_ms=%.2f"
            ),
            connector_id,
            len(refs),
            len(context.rules.rules),
            batch.auto_confirmed,
            batch.queued_for_review,
            batch.no_match,
            batch.identities_created,
            batch.errors,
            len(batch.requeued_account_ids),
            batch.cancelled,
            (perf_counter() - started) * 1000.0,
        )
        return batch

    async def _run_chunk(
        self,
        context: _BatchContext,
        chunk: list[AccountRef],
        cancel_event: asyncio.Event | None,
    ) -> list[AccountOutcome]:
        tasks = [asyncio.create_task(self._process(context, ref)) for ref in chunk]
        watcher = None
        if cancel_event is not None:
            watcher = asyncio.create_task(_cancel_when_set(cancel_event, tasks))
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            if watcher is not None:
                watcher.cancel()

        outcomes: list[AccountOutcome] = []
        for ref, result in zip(chunk, results):
            account_id = _account_id(ref)
            if isinstance(result, asyncio.CancelledError):
                logger.info(
                    "correlation.account_cancelled connector_id=%s account_id=%s",
                    context.connector_id,
                    account_id,
                )
                outcomes.append(AccountOutcome(account_id, "cancelled"))
            elif isinstance(result, BaseException):
                # Recording itself failed unexpectedly; hand the account back.
                logger.error(
                    "correlation.account_requeued connector_id=%s account_id=%s error=%s",
                    context.connector_id,
                    account_id,
                    result,
                    exc_info=result,
                )
                outcomes.append(AccountOutcome(account_id, "requeued", reason=str(result)))
            else:
                outcomes.append(result)
        return outcomes

    async def _process(self, context: _BatchContext, ref: AccountRef) -> AccountOutcome:
        account_id = _account_id(ref)
        async with self._slots.hold(context.connector_id, self._settings.max_concurrent_accounts):
            try:
                assessment = await asyncio.wait_for(
                    self._assess(context, ref),
                    timeout=self._settings.account_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "correlation.account_timeout connector_id=%s account_id=%s timeout_s=%.2f",
                    context.connector_id,
                    account_id,
                    self._settings.account_timeout_seconds,
                )
                assessment = _Assessment(
                    account_id=account_id,
                    decision=failure_decision(
                        f"evaluation timed out after {self._settings.account_timeout_seconds:g}s"
                    ),
                )
            except CollaboratorError as exc:
                logger.warning(
                    "correlation.account_failed connector_id=%s account_id=%s error=%s",
                    context.connector_id,
                    account_id,
                    exc,
                )
                assessment = _Assessment(account_id=account_id, decision=failure_decision(str(exc)))
            except Exception as exc:
                logger.exception(
                    "correlation.account_error connector_id=%s account_id=%s",
                    context.connector_id,
                    account_id,
                )
                assessment = _Assessment(
                    account_id=account_id,
                    decision=failure_decision(f"unexpected error: {type(exc).__name__}: {exc}"),
                )
            return await self._record(context, assessment)

    async def _assess(self, context: _BatchContext, ref: AccountRef) -> _Assessment:
        if isinstance(ref, ExternalAccount):
            account = ref
        else:
            if self._account_feed is None:
                raise CollaboratorError(f"account fetch failed: no account feed configured for '{ref}'")
            account = await self._call(
                "account fetch",
                self._account_feed.get_account,
                context.connector_id,
                ref,
            )
        candidates = await self._call(
            "candidate lookup",
            self._directory.lookup_candidates,
            context.connector_id,
            account.attributes,
            include_deactivated=context.policy.include_deactivated,
        )
        result = context.scorer.score(account.attributes, candidates)
        decision = context.engine.decide(result)
        if decision.provisions_identity:
            identity_id = await self._call(
                "identity creation",
                self._directory.create_identity,
                context.connector_id,
                account,
            )
            decision = replace(decision, identity_id=identity_id)
        return _Assessment(account_id=account.account_id, decision=decision, account=account, result=result)

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking collaborator call, retrying transient failures."""

        policy = self._collaborator_retry
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.to_thread(func, *args, **kwargs)
            except TransientCollaboratorError as exc:
                if attempt >= policy.max_attempts:
                    raise CollaboratorError(f"{operation} failed after {attempt} attempts: {exc}") from exc
                delay = policy.delay_for(attempt)
                logger.warning(
                    "correlation.collaborator_retry operation=%s attempt=%d delay_s=%.2f error=%s",
                    operation,
                    attempt,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
            except CollaboratorError as exc:
                raise CollaboratorError(f"{operation} failed: {exc}") from exc

    async def _record(self, context: _BatchContext, assessment: _Assessment) -> AccountOutcome:
        decision = assessment.decision
        result = assessment.result
        limit = self._settings.candidate_snapshot_limit
        decided_at = self._clock()
        event = AuditEventCreate(
            connector_id=context.connector_id,
            account_id=assessment.account_id,
            event_type=decision.event_type,
            outcome=decision.outcome,
            decided_at=decided_at,
            identity_id=decision.identity_id,
            confidence_score=decision.confidence_score,
            candidate_count=result.considered_count if result is not None else 0,
            candidates_summary=result.summary(limit) if result is not None else [],
            rules_snapshot=context.rules.to_snapshot(),
            thresholds_snapshot=context.policy.to_snapshot(),
            reason=decision.reason,
        )
        prepare = self._case_opener(context, assessment, limit) if decision.opens_case else None
        status: AccountStatus = "decided" if decision.outcome == "success" else "failed"

        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._write(assessment.account_id, status, event, prepare)
            except AuditWriteError as exc:
                if attempt >= self._audit_retry.max_attempts:
                    logger.error(
                        "correlation.account_requeued connector_id=%s account_id=%s attempts=%d error=%s",
                        context.connector_id,
                        assessment.account_id,
                        attempt,
                        exc,
                    )
                    return AccountOutcome(
                        account_id=assessment.account_id,
                        status="requeued",
                        event_type=decision.event_type,
                        reason=str(exc),
                    )
                await asyncio.sleep(self._audit_retry.delay_for(attempt))

    async def _write(
        self,
        account_id: str,
        status: AccountStatus,
        event: AuditEventCreate,
        prepare: Callable[[Session], int] | None,
    ) -> AccountOutcome:
        """Record one event in a worker thread with its own session.

        Once started, a write is allowed to finish even if the account is
        cancelled, so the reported outcome matches what was stored.
        """

        pending = asyncio.ensure_future(
            asyncio.to_thread(self._write_sync, account_id, status, event, prepare)
        )
        try:
            return await asyncio.shield(pending)
        except asyncio.CancelledError:
            try:
                return await pending
            except AuditWriteError:
                raise asyncio.CancelledError from None

    def _write_sync(
        self,
        account_id: str,
        status: AccountStatus,
        event: AuditEventCreate,
        prepare: Callable[[Session], int] | None,
    ) -> AccountOutcome:
        db = self._session_factory()
        try:
            row = record_decision(db, event, prepare=prepare)
            return AccountOutcome(
                account_id=account_id,
                status=status,
                event_type=row.event_type,
                identity_id=row.identity_id,
                confidence_score=row.confidence_score,
                case_id=row.case_id,
                audit_event_id=row.id,
                reason=row.reason,
            )
        finally:
            db.close()

    @staticmethod
    def _case_opener(
        context: _BatchContext,
        assessment: _Assessment,
        limit: int,
    ) -> Callable[[Session], int]:
        result = assessment.result
        account = assessment.account
        top = result.top if result is not None else None

        def open_case(session: Session) -> int:
            case = CorrelationCase(
                connector_id=context.connector_id,
                account_id=assessment.account_id,
                status="pending",
                trigger_type="batch",
                account_attributes_json=dict(account.attributes) if account is not None else {},
                candidates_json=result.summary(limit) if result is not None else [],
                highest_confidence=top.score if top is not None else None,
                candidate_count=result.considered_count if result is not None else 0,
                rules_snapshot_json=context.rules.to_snapshot(),
            )
            session.add(case)
            session.flush()
            return case.id

        return open_case


async def _cancel_when_set(cancel_event: asyncio.Event, tasks: list[asyncio.Task]) -> None:
    await cancel_event.wait()
    for task in tasks:
        if not task.done():
            task.cancel()


def _account_id(ref: AccountRef) -> str:
    return ref.account_id if isinstance(ref, ExternalAccount) else str(ref)
