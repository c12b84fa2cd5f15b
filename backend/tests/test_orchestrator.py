"""Batch reconciliation tests with stub collaborators over a file-backed SQLite database."""

from __future__ import annotations

import asyncio
import tempfile
import threading
import time
import unittest
from dataclasses import dataclass, field

from sqlalchemy import create_engine, delete, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from correlation_engine.config import Settings
from correlation_engine.matching.decision import (
    REASON_INSUFFICIENT_MARGIN,
    REASON_NO_CANDIDATES,
    REASON_NO_CONFIDENT_CANDIDATE,
)
from correlation_engine.matching.types import ExternalAccount, IdentityCandidate
from correlation_engine.models.base import Base
from correlation_engine.models.correlation_audit_event import CorrelationAuditEvent
from correlation_engine.models.correlation_case import CorrelationCase
from correlation_engine.models.correlation_rule import CorrelationRule
from correlation_engine.models.correlation_threshold import CorrelationThreshold
from correlation_engine.schemas.correlation_rule import CorrelationRuleCreate
from correlation_engine.schemas.correlation_threshold import CorrelationThresholdUpsert
from correlation_engine.services.collaborators import CollaboratorError, TransientCollaboratorError
from correlation_engine.services.concurrency import ConnectorSlots
from correlation_engine.services.orchestrator import ReconciliationOrchestrator
from correlation_engine.services.rules import create_rule
from correlation_engine.services.thresholds import upsert_thresholds

CONNECTOR = "ldap-main"

ADA = IdentityCandidate(
    identity_id="id-ada",
    attributes={"email": "ada@example.com", "employee_id": "1001", "last_name": "Lovelace"},
    display_name="Ada Lovelace",
)
BYRON = IdentityCandidate(
    identity_id="id-byron",
    attributes={"email": "byron@example.com", "employee_id": "2002", "last_name": "Lovelace"},
    display_name="Byron Lovelace",
)
ADA_TWIN = IdentityCandidate(
    identity_id="id-ada-2",
    attributes={"email": "ada@example.com", "employee_id": "1001", "last_name": "Lovelace"},
    display_name="Ada Lovelace-King",
)

ACCOUNTS = {
    "acct-ada": ExternalAccount(
        connector_id=CONNECTOR,
        account_id="acct-ada",
        attributes={"mail": "Ada@Example.com ", "employeeNumber": "1001", "sn": "Lovelace"},
    ),
    "acct-new": ExternalAccount(
        connector_id=CONNECTOR,
        account_id="acct-new",
        attributes={"mail": "grace@example.com", "employeeNumber": "3003", "sn": "Hopper"},
    ),
    "acct-weak": ExternalAccount(
        connector_id=CONNECTOR,
        account_id="acct-weak",
        attributes={"mail": "someone@example.com", "employeeNumber": "4004", "sn": "Lovelace"},
    ),
}


@dataclass
class StubDirectory:
    """Candidates keyed by the account's ``mail`` attribute."""

    pool: dict[str, list[IdentityCandidate]] = field(default_factory=dict)
    failures: list[Exception] = field(default_factory=list)
    delay_seconds: float = 0.0
    lookups: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    include_deactivated_flags: list[bool] = field(default_factory=list)

    def lookup_candidates(self, connector_id, attributes, *, include_deactivated=False):
        self.lookups.append(str(attributes.get("mail")))
        self.include_deactivated_flags.append(include_deactivated)
        if self.failures:
            raise self.failures.pop(0)
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        return list(self.pool.get(str(attributes.get("mail")), []))

    def create_identity(self, connector_id, account):
        self.created.append(account.account_id)
        return f"id-new-{account.account_id}"


@dataclass
class StubFeed:
    accounts: dict[str, ExternalAccount]

    def get_account(self, connector_id, account_id):
        if account_id not in self.accounts:
            raise CollaboratorError(f"account '{account_id}' not found")
        return self.accounts[account_id]

    def list_account_ids(self, connector_id):
        return sorted(self.accounts)


class CancellingDirectory(StubDirectory):
    """Signals cancellation from inside the first lookup, then stalls."""

    def __init__(self) -> None:
        super().__init__()
        self.loop: asyncio.AbstractEventLoop | None = None
        self.cancel_event: asyncio.Event | None = None
        self._lock = threading.Lock()

    def lookup_candidates(self, connector_id, attributes, *, include_deactivated=False):
        with self._lock:
            self.lookups.append(str(attributes.get("mail")))
        self.loop.call_soon_threadsafe(self.cancel_event.set)
        time.sleep(0.2)
        return []


class ConcurrencyTracker(StubDirectory):
    """Tracks how many lookups run at the same time."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def lookup_candidates(self, connector_id, attributes, *, include_deactivated=False):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            return super().lookup_candidates(connector_id, attributes, include_deactivated=include_deactivated)
        finally:
            with self._lock:
                self.active -= 1


class _CommitFailsSession(Session):
    def commit(self) -> None:
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))


class ReconciliationOrchestratorTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        # Audit writes run in worker threads, so every thread needs its own connection.
        cls.tmpdir = tempfile.TemporaryDirectory()
        cls.engine = create_engine(
            f"sqlite+pysqlite:///{cls.tmpdir.name}/correlation.db",
            connect_args={"check_same_thread": False, "timeout": 30},
            poolclass=NullPool,
        )
        cls.SessionLocal = sessionmaker(bind=cls.engine, autoflush=False, autocommit=False, future=True)
        Base.metadata.create_all(cls.engine)

    @classmethod
    def tearDownClass(cls) -> None:
        Base.metadata.drop_all(cls.engine)
        cls.engine.dispose()
        cls.tmpdir.cleanup()

    def setUp(self) -> None:
        self.db: Session = self.SessionLocal()
        self._reset_decisions()
        self.db.execute(delete(CorrelationRule))
        self.db.execute(delete(CorrelationThreshold))
        self.db.commit()

        for name, source, target, weight in (
            ("Email", "mail", "email", 2.0),
            ("Employee number", "employeeNumber", "employee_id", 1.0),
            ("Last name", "sn", "last_name", 1.0),
        ):
            create_rule(
                self.db,
                CONNECTOR,
                CorrelationRuleCreate(
                    name=name,
                    source_attribute=source,
                    target_attribute=target,
                    match_type="exact",
                    weight=weight,
                ),
            )
        self._policy(auto=0.9, manual=0.6, margin=0.05)

        self.settings = Settings(
            database_url="sqlite+pysqlite:///:memory:",
            retry_initial_delay_seconds=0.0,
            retry_max_attempts=3,
            audit_write_max_attempts=2,
            audit_retry_delay_seconds=0.0,
            account_timeout_seconds=5.0,
            max_concurrent_accounts=4,
        )
        self.directory = StubDirectory(
            pool={
                "Ada@Example.com ": [ADA, BYRON],
                "someone@example.com": [BYRON],
            }
        )
        self.feed = StubFeed(dict(ACCOUNTS))

    def tearDown(self) -> None:
        self.db.close()

    def _reset_decisions(self) -> None:
        self.db.execute(delete(CorrelationAuditEvent))
        self.db.execute(delete(CorrelationCase))
        self.db.commit()

    def _policy(self, *, auto: float, manual: float, margin: float = 0.0, **extra) -> None:
        upsert_thresholds(
            self.db,
            CONNECTOR,
            CorrelationThresholdUpsert(
                auto_confirm_threshold=auto,
                manual_review_threshold=manual,
                min_margin=margin,
                **extra,
            ),
        )

    def _orchestrator(self, *, directory=None, session_factory=None, settings=None) -> ReconciliationOrchestrator:
        return ReconciliationOrchestrator(
            session_factory or self.SessionLocal,
            directory=directory or self.directory,
            account_feed=self.feed,
            settings=settings or self.settings,
        )

    def _run(self, accounts, **kwargs):
        orchestrator = kwargs.pop("orchestrator", None) or self._orchestrator()
        return asyncio.run(orchestrator.run_batch(CONNECTOR, accounts, **kwargs))

    def _events(self) -> list[CorrelationAuditEvent]:
        return list(
            self.db.scalars(select(CorrelationAuditEvent).order_by(CorrelationAuditEvent.id.asc())).all()
        )

    def test_confident_unique_match_is_auto_confirmed(self) -> None:
        result = self._run(["acct-ada"])

        self.assertEqual(result.auto_confirmed, 1)
        outcome = result.outcomes[0]
        self.assertEqual(outcome.status, "decided")
        self.assertEqual(outcome.event_type, "auto_confirm")
        self.assertEqual(outcome.identity_id, "id-ada")
        self.assertAlmostEqual(outcome.confidence_score, 1.0)
        self.assertIsNone(outcome.case_id)

        events = self._events()
        self.assertEqual(len(events), 1)
        event = events[0]
        self.assertEqual(event.id, outcome.audit_event_id)
        self.assertEqual(event.actor_type, "system")
        self.assertEqual(event.outcome, "success")
        self.assertEqual(event.candidate_count, 2)
        self.assertEqual([item["identity_id"] for item in event.candidates_summary], ["id-ada", "id-byron"])
        self.assertAlmostEqual(event.candidates_summary[1]["aggregate_confidence"], 0.25)
        self.assertEqual(
            sorted(rule["name"] for rule in event.rules_snapshot),
            ["Email", "Employee number", "Last name"],
        )
        self.assertEqual(event.thresholds_snapshot["auto_confirm_threshold"], 0.9)
        self.assertEqual(self.directory.include_deactivated_flags, [False])

    def test_no_candidates_with_auto_provision_creates_identity(self) -> None:
        self._policy(auto=0.9, manual=0.6, auto_provision=True)

        result = self._run(["acct-new"])

        self.assertEqual(result.identities_created, 1)
        self.assertEqual(self.directory.created, ["acct-new"])
        event = self._events()[0]
        self.assertEqual(event.event_type, "create_identity")
        self.assertEqual(event.identity_id, "id-new-acct-new")
        self.assertEqual(event.candidate_count, 0)
        self.assertEqual(event.candidates_summary, [])

    def test_no_candidates_without_auto_provision_opens_case(self) -> None:
        result = self._run(["acct-new"])

        self.assertEqual(result.queued_for_review, 1)
        self.assertEqual(self.directory.created, [])
        event = self._events()[0]
        self.assertEqual(event.event_type, "manual_confirm")
        self.assertEqual(event.reason, REASON_NO_CANDIDATES)
        case = self.db.get(CorrelationCase, event.case_id)
        self.assertEqual(case.status, "pending")
        self.assertEqual(case.candidate_count, 0)

    def test_insufficient_margin_queues_case_with_ranked_candidates(self) -> None:
        self._policy(auto=0.7, manual=0.5, margin=0.1)
        self.directory.pool["Ada@Example.com "] = [ADA_TWIN, ADA]
        update = dict(ACCOUNTS["acct-ada"].attributes, employeeNumber="9999")
        self.feed.accounts["acct-ada"] = ExternalAccount(CONNECTOR, "acct-ada", update)

        result = self._run(["acct-ada"])

        outcome = result.outcomes[0]
        self.assertEqual(outcome.event_type, "manual_confirm")
        self.assertIsNone(outcome.identity_id)
        self.assertIsNotNone(outcome.case_id)
        self.assertEqual(outcome.reason, REASON_INSUFFICIENT_MARGIN)

        case = self.db.get(CorrelationCase, outcome.case_id)
        self.assertEqual(case.status, "pending")
        self.assertEqual(case.trigger_type, "batch")
        self.assertEqual(case.candidate_count, 2)
        self.assertAlmostEqual(case.highest_confidence, 0.75)
        self.assertEqual([item["identity_id"] for item in case.candidates_json], ["id-ada", "id-ada-2"])
        self.assertEqual(case.account_attributes_json["employeeNumber"], "9999")
        self.assertEqual(len(case.rules_snapshot_json), 3)

    def test_weak_candidate_is_rejected(self) -> None:
        result = self._run(["acct-weak"])

        self.assertEqual(result.no_match, 1)
        event = self._events()[0]
        self.assertEqual(event.event_type, "reject")
        self.assertEqual(event.outcome, "success")
        self.assertEqual(event.reason, REASON_NO_CONFIDENT_CANDIDATE)
        self.assertAlmostEqual(event.confidence_score, 0.25)

    def test_transient_lookup_failure_is_retried(self) -> None:
        self.directory.failures = [TransientCollaboratorError("HTTP 503")]

        result = self._run(["acct-ada"])

        self.assertEqual(len(self.directory.lookups), 2)
        self.assertEqual(result.outcomes[0].event_type, "auto_confirm")
        self.assertEqual(result.errors, 0)

    def test_exhausted_retries_record_failure_event(self) -> None:
        self.directory.failures = [TransientCollaboratorError("HTTP 503") for _ in range(3)]

        result = self._run(["acct-ada"])

        self.assertEqual(len(self.directory.lookups), 3)
        self.assertEqual(result.errors, 1)
        outcome = result.outcomes[0]
        self.assertEqual(outcome.status, "failed")
        self.assertTrue(outcome.reason.startswith("candidate lookup failed after 3 attempts"))
        event = self._events()[0]
        self.assertEqual(event.event_type, "reject")
        self.assertEqual(event.outcome, "failure")

    def test_permanent_failures_are_not_retried(self) -> None:
        self.directory.failures = [CollaboratorError("HTTP 400: bad filter")]

        result = self._run(["acct-ada", "ghost"])

        self.assertEqual(len(self.directory.lookups), 1)
        reasons = {item.account_id: item.reason for item in result.outcomes}
        self.assertEqual(reasons["acct-ada"], "candidate lookup failed: HTTP 400: bad filter")
        self.assertEqual(reasons["ghost"], "account fetch failed: account 'ghost' not found")
        self.assertEqual({event.outcome for event in self._events()}, {"failure"})

    def test_slow_account_times_out_without_blocking_the_batch(self) -> None:
        settings = self.settings.model_copy(update={"account_timeout_seconds": 0.05})
        slow = StubDirectory(pool=self.directory.pool, delay_seconds=0.5)

        result = self._run(["acct-ada"], orchestrator=self._orchestrator(directory=slow, settings=settings))

        outcome = result.outcomes[0]
        self.assertEqual(outcome.status, "failed")
        self.assertEqual(outcome.reason, "evaluation timed out after 0.05s")
        self.assertEqual(self._events()[0].outcome, "failure")

    def test_cancellation_records_nothing_for_abandoned_accounts(self) -> None:
        self._policy(auto=0.9, manual=0.6, batch_size=2)
        directory = CancellingDirectory()
        orchestrator = self._orchestrator(directory=directory)

        async def run():
            directory.loop = asyncio.get_running_loop()
            directory.cancel_event = asyncio.Event()
            return await orchestrator.run_batch(
                CONNECTOR,
                ["acct-ada", "acct-new", "acct-weak"],
                cancel_event=directory.cancel_event,
            )

        result = asyncio.run(run())

        self.assertTrue(result.cancelled)
        self.assertEqual([item.status for item in result.outcomes], ["cancelled"] * 3)
        self.assertNotIn("someone@example.com", directory.lookups)
        self.assertEqual(self._events(), [])

    def test_failed_audit_writes_requeue_the_account(self) -> None:
        failing = sessionmaker(bind=self.engine, class_=_CommitFailsSession, autoflush=False, future=True)

        with self.assertLogs("correlation_engine.services.orchestrator", level="ERROR"):
            result = self._run(["acct-ada"], orchestrator=self._orchestrator(session_factory=failing))

        self.assertEqual(result.requeued_account_ids, ["acct-ada"])
        self.assertEqual(result.outcomes[0].status, "requeued")
        self.assertEqual(self._events(), [])

    def test_unexpected_directory_error_records_failure_and_batch_continues(self) -> None:
        settings = self.settings.model_copy(update={"max_concurrent_accounts": 1})
        self.directory.failures = [ValueError("unexpected payload shape")]

        with self.assertLogs("correlation_engine.services.orchestrator", level="ERROR"):
            result = self._run(["acct-ada", "acct-weak"], orchestrator=self._orchestrator(settings=settings))

        failed, decided = result.outcomes
        self.assertEqual(failed.account_id, "acct-ada")
        self.assertEqual(failed.status, "failed")
        self.assertEqual(failed.reason, "unexpected error: ValueError: unexpected payload shape")
        self.assertEqual(decided.account_id, "acct-weak")
        self.assertEqual(decided.event_type, "reject")
        self.assertEqual(result.errors, 1)
        events = self._events()
        self.assertEqual(
            [(event.account_id, event.outcome) for event in events],
            [("acct-ada", "failure"), ("acct-weak", "success")],
        )

    def test_audit_write_does_not_block_the_event_loop(self) -> None:
        gate = threading.Event()
        opened: list[bool] = []

        class GatedSession(Session):
            def commit(self) -> None:
                opened.append(gate.wait(2.0))
                super().commit()

        gated = sessionmaker(bind=self.engine, class_=GatedSession, autoflush=False, future=True)
        orchestrator = self._orchestrator(session_factory=gated)

        async def run():
            # Only a free event loop can open the gate while a commit waits on it.
            asyncio.get_running_loop().call_later(0.05, gate.set)
            return await orchestrator.run_batch(CONNECTOR, ["acct-ada"])

        result = asyncio.run(run())

        self.assertEqual(opened, [True])
        self.assertEqual(result.outcomes[0].event_type, "auto_confirm")
        self.assertEqual(len(self._events()), 1)

    def test_concurrent_batches_share_the_connector_limit(self) -> None:
        settings = self.settings.model_copy(update={"max_concurrent_accounts": 2})
        directory = ConcurrencyTracker(pool=self.directory.pool, delay_seconds=0.05)
        slots = ConnectorSlots()

        def orchestrator():
            return ReconciliationOrchestrator(
                self.SessionLocal,
                directory=directory,
                settings=settings,
                slots=slots,
            )

        def accounts(prefix: str) -> list[ExternalAccount]:
            return [
                ExternalAccount(CONNECTOR, f"{prefix}-{index}", {"mail": "someone@example.com"})
                for index in range(3)
            ]

        async def run():
            return await asyncio.gather(
                orchestrator().run_batch(CONNECTOR, accounts("first")),
                orchestrator().run_batch(CONNECTOR, accounts("second")),
            )

        first, second = asyncio.run(run())

        self.assertEqual(len(first.outcomes) + len(second.outcomes), 6)
        self.assertLessEqual(directory.peak, 2)
        self.assertEqual(slots.in_use(CONNECTOR), 0)
        self.assertEqual(len(self._events()), 6)

    def test_duplicate_ids_are_evaluated_once_in_input_order(self) -> None:
        result = self._run(["acct-weak", "acct-ada", "acct-weak"])

        self.assertEqual([item.account_id for item in result.outcomes], ["acct-weak", "acct-ada"])
        self.assertEqual(len(self.directory.lookups), 2)
        self.assertEqual(len(self._events()), 2)

    def test_prefetched_accounts_skip_the_feed(self) -> None:
        orchestrator = ReconciliationOrchestrator(
            self.SessionLocal,
            directory=self.directory,
            settings=self.settings,
        )

        result = self._run([ACCOUNTS["acct-ada"]], orchestrator=orchestrator)

        self.assertEqual(result.outcomes[0].event_type, "auto_confirm")

    def test_candidate_snapshot_is_truncated_but_count_is_kept(self) -> None:
        settings = self.settings.model_copy(update={"candidate_snapshot_limit": 1})

        self._run(["acct-ada"], orchestrator=self._orchestrator(settings=settings))

        event = self._events()[0]
        self.assertEqual(event.candidate_count, 2)
        self.assertEqual(len(event.candidates_summary), 1)

    def test_same_inputs_produce_same_decisions(self) -> None:
        def decisions():
            result = self._run(["acct-ada", "acct-new", "acct-weak"])
            return [
                (item.account_id, item.event_type, item.identity_id, item.confidence_score)
                for item in result.outcomes
            ]

        first = decisions()
        self._reset_decisions()
        second = decisions()

        self.assertEqual(first, second)


if __name__ == "__main__":
    unittest.main()
