"""Manual-review queue tests: listing, detail and reviewer decisions."""

from __future__ import annotations

import unittest
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from correlation_engine.matching.decision import REASON_REVIEWER_OVERRIDE, CaseDecisionError
from correlation_engine.models.base import Base
from correlation_engine.models.correlation_audit_event import CorrelationAuditEvent
from correlation_engine.models.correlation_case import CorrelationCase
from correlation_engine.schemas.correlation_audit import AuditEventCreate
from correlation_engine.schemas.correlation_case import CaseDecisionRequest
from correlation_engine.services.audit import record_decision
from correlation_engine.services.cases import (
    CaseAlreadyResolvedError,
    decide_case,
    get_case_detail,
    list_cases,
)
from correlation_engine.services.collaborators import CollaboratorError

CONNECTOR = "ldap-main"
OPENED_AT = datetime(2026, 10, 2, 8, 30, tzinfo=timezone.utc)
DECIDED_AT = datetime(2026, 10, 3, 14, 0, tzinfo=timezone.utc)
THRESHOLDS = {"auto_confirm_threshold": 0.9, "manual_review_threshold": 0.6, "min_margin": 0.05}


@dataclass
class StubDirectory:
    fail: bool = False
    created: list[str] = field(default_factory=list)

    def lookup_candidates(self, connector_id, attributes, *, include_deactivated=False):
        return []

    def create_identity(self, connector_id, account):
        if self.fail:
            raise CollaboratorError("identity directory unavailable")
        self.created.append(account.account_id)
        return f"id-new-{account.account_id}"


def _candidate(identity_id: str, score: float) -> dict[str, object]:
    return {
        "identity_id": identity_id,
        "display_name": identity_id.upper(),
        "aggregate_confidence": score,
        "per_rule_scores": {"1:Email": 1.0, "2:Last name": None},
        "tier_scores": {"1": score},
        "is_deactivated": False,
        "is_definitive_match": False,
    }


class CorrelationCaseTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        cls.SessionLocal = sessionmaker(bind=cls.engine, autoflush=False, autocommit=False, future=True)
        Base.metadata.create_all(cls.engine)

    @classmethod
    def tearDownClass(cls) -> None:
        Base.metadata.drop_all(cls.engine)
        cls.engine.dispose()

    def setUp(self) -> None:
        self.db: Session = self.SessionLocal()
        self.db.execute(delete(CorrelationAuditEvent))
        self.db.execute(delete(CorrelationCase))
        self.db.commit()
        self.directory = StubDirectory()

    def tearDown(self) -> None:
        self.db.close()

    def _open_case(
        self,
        account_id: str = "acct-1",
        candidates: list[dict[str, object]] | None = None,
        *,
        connector_id: str = CONNECTOR,
        created_at: datetime = OPENED_AT,
    ) -> CorrelationCase:
        candidates = candidates if candidates is not None else [_candidate("id-a", 0.82), _candidate("id-b", 0.8)]
        highest = candidates[0]["aggregate_confidence"] if candidates else None

        def open_case(session: Session) -> int:
            case = CorrelationCase(
                connector_id=connector_id,
                account_id=account_id,
                account_attributes_json={"mail": f"{account_id}@example.com"},
                candidates_json=candidates,
                highest_confidence=highest,
                candidate_count=len(candidates),
                rules_snapshot_json=[{"id": 1, "name": "Email", "weight": 1.0}],
                created_at=created_at,
            )
            session.add(case)
            session.flush()
            return case.id

        event = record_decision(
            self.db,
            AuditEventCreate(
                connector_id=connector_id,
                account_id=account_id,
                event_type="manual_confirm",
                outcome="success",
                decided_at=created_at,
                confidence_score=highest,
                candidate_count=len(candidates),
                candidates_summary=candidates,
                thresholds_snapshot=THRESHOLDS,
                reason="margin to runner-up below minimum",
            ),
            prepare=open_case,
        )
        return self.db.get(CorrelationCase, event.case_id)

    def _decide(self, case_id: int, **payload):
        return decide_case(
            self.db,
            case_id,
            CaseDecisionRequest(**payload),
            actor_id="reviewer-7",
            directory=self.directory,
            clock=lambda: DECIDED_AT,
        )

    def _reviewer_events(self, case_id: int) -> list[CorrelationAuditEvent]:
        return list(
            self.db.scalars(
                select(CorrelationAuditEvent).where(
                    CorrelationAuditEvent.case_id == case_id,
                    CorrelationAuditEvent.actor_type == "user",
                )
            ).all()
        )

    def test_accepting_top_candidate_confirms_case(self) -> None:
        case = self._open_case()

        result = self._decide(case.id, action="accept", candidate_id="id-a")

        self.assertEqual(result.case.status, "confirmed")
        self.assertEqual(result.case.resolved_by, "reviewer-7")
        self.assertEqual(result.case.resolved_identity_id, "id-a")
        events = self._reviewer_events(case.id)
        self.assertEqual(len(events), 1)
        event = events[0]
        self.assertEqual(event.id, result.audit_event_id)
        self.assertEqual(event.event_type, "manual_confirm")
        self.assertEqual(event.identity_id, "id-a")
        self.assertEqual(event.actor_id, "reviewer-7")
        self.assertAlmostEqual(event.confidence_score, 0.82)
        self.assertEqual(event.thresholds_snapshot, THRESHOLDS)
        self.assertEqual(event.rules_snapshot, [{"id": 1, "name": "Email", "weight": 1.0}])

    def test_accepting_runner_up_is_recorded_as_reassign(self) -> None:
        case = self._open_case()

        result = self._decide(case.id, action="accept", candidate_id="id-b")

        self.assertEqual(result.case.status, "reassigned")
        event = self._reviewer_events(case.id)[0]
        self.assertEqual(event.event_type, "reassign")
        self.assertEqual(event.identity_id, "id-b")
        self.assertEqual(event.reason, REASON_REVIEWER_OVERRIDE)
        self.assertAlmostEqual(event.confidence_score, 0.8)

    def test_reassign_requires_reason(self) -> None:
        case = self._open_case()

        with self.assertRaises(CaseDecisionError):
            self._decide(case.id, action="reassign", candidate_id="id-b")

        result = self._decide(case.id, action="reassign", candidate_id="id-b", reason="HR confirmed owner")
        self.assertEqual(result.case.resolution_reason, "HR confirmed owner")

    def test_reject_requires_reason_and_records_highest_confidence(self) -> None:
        case = self._open_case()

        with self.assertRaises(CaseDecisionError):
            self._decide(case.id, action="reject", reason="  ")
        self.assertEqual(self.db.get(CorrelationCase, case.id).status, "pending")
        self.assertEqual(self._reviewer_events(case.id), [])

        result = self._decide(case.id, action="reject", reason="service account")

        self.assertEqual(result.case.status, "rejected")
        event = self._reviewer_events(case.id)[0]
        self.assertEqual(event.event_type, "reject")
        self.assertIsNone(event.identity_id)
        self.assertAlmostEqual(event.confidence_score, 0.82)

    def test_unknown_candidate_is_refused(self) -> None:
        case = self._open_case()

        with self.assertRaises(CaseDecisionError):
            self._decide(case.id, action="accept", candidate_id="id-zzz")
        self.assertEqual(self._reviewer_events(case.id), [])

    def test_create_identity_provisions_through_directory(self) -> None:
        case = self._open_case("acct-9", candidates=[])

        result = self._decide(case.id, action="create_identity")

        self.assertEqual(self.directory.created, ["acct-9"])
        self.assertEqual(result.case.status, "identity_created")
        self.assertEqual(result.case.resolved_identity_id, "id-new-acct-9")
        event = self._reviewer_events(case.id)[0]
        self.assertEqual(event.event_type, "create_identity")
        self.assertEqual(event.identity_id, "id-new-acct-9")

    def test_failed_provisioning_leaves_case_pending(self) -> None:
        case = self._open_case()
        self.directory.fail = True

        with self.assertRaises(CollaboratorError):
            self._decide(case.id, action="create_identity")
        self.assertEqual(self.db.get(CorrelationCase, case.id).status, "pending")
        self.assertEqual(self._reviewer_events(case.id), [])

    def test_resolved_case_cannot_be_decided_twice(self) -> None:
        case = self._open_case()
        self._decide(case.id, action="accept", candidate_id="id-a")

        with self.assertRaises(CaseAlreadyResolvedError):
            self._decide(case.id, action="reject", reason="changed my mind")
        self.assertEqual(len(self._reviewer_events(case.id)), 1)

    def test_missing_case_returns_none(self) -> None:
        self.assertIsNone(self._decide(999, action="accept", candidate_id="id-a"))
        self.assertIsNone(get_case_detail(self.db, 999))

    def test_detail_exposes_candidates_and_snapshot(self) -> None:
        case = self._open_case()

        detail = get_case_detail(self.db, case.id)

        self.assertEqual(detail.account_attributes, {"mail": "acct-1@example.com"})
        self.assertEqual([item.identity_id for item in detail.candidates], ["id-a", "id-b"])
        self.assertEqual(detail.candidates[0].per_rule_scores, {"1:Email": 1.0, "2:Last name": None})
        self.assertEqual(detail.rules_snapshot[0]["name"], "Email")
        self.assertIsNone(detail.resolved_at)

    def test_list_filters_sorts_and_paginates(self) -> None:
        low = self._open_case("acct-low", [_candidate("id-x", 0.61)], created_at=OPENED_AT)
        high = self._open_case("acct-high", [_candidate("id-y", 0.88)], created_at=OPENED_AT + timedelta(days=1))
        other = self._open_case(
            "acct-other",
            [_candidate("id-z", 0.7)],
            connector_id="scim-hr",
            created_at=OPENED_AT + timedelta(days=2),
        )
        self._decide(high.id, action="accept", candidate_id="id-y")

        pending = list_cases(self.db, status="pending", limit=10, offset=0)
        self.assertEqual(pending.total, 2)
        self.assertEqual({item.id for item in pending.items}, {low.id, other.id})

        scoped = list_cases(
            self.db,
            connector_id=CONNECTOR,
            sort_by="highest_confidence",
            sort_order="asc",
            limit=10,
            offset=0,
        )
        self.assertEqual([item.id for item in scoped.items], [low.id, high.id])

        newest_first = list_cases(self.db, limit=1, offset=0)
        self.assertEqual(newest_first.total, 3)
        self.assertEqual([item.id for item in newest_first.items], [other.id])

        ranged = list_cases(
            self.db,
            start=OPENED_AT + timedelta(hours=12),
            end=OPENED_AT + timedelta(days=2),
            limit=10,
            offset=0,
        )
        self.assertEqual([item.id for item in ranged.items], [high.id])

        self.assertEqual(int(self.db.scalar(select(func.count(CorrelationCase.id))) or 0), 3)


if __name__ == "__main__":
    unittest.main()
