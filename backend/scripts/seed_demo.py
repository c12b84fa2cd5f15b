"""Seed demo correlation rules for a connector and reconcile a few accounts.

Usage (from repository root):
    python backend/scripts/seed_demo.py

Usage (from backend directory):
    python scripts/seed_demo.py
    # or
    python -m scripts.seed_demo
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy import delete

# Make `correlation_engine` imports work whether the script is run from repo root or backend/.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from correlation_engine.db.session import SessionLocal
from correlation_engine.matching.types import ExternalAccount, IdentityCandidate
from correlation_engine.models.correlation_rule import CorrelationRule
from correlation_engine.models.correlation_threshold import CorrelationThreshold
from correlation_engine.schemas.correlation_rule import CorrelationRuleCreate
from correlation_engine.schemas.correlation_threshold import CorrelationThresholdUpsert
from correlation_engine.services.orchestrator import ReconciliationOrchestrator
from correlation_engine.services.rules import create_rule
from correlation_engine.services.thresholds import upsert_thresholds


DEFAULT_CONNECTOR_ID = "hr-feed-demo"


@dataclass
class DemoDirectory:
    """Fixed identity pool; provisioned identities get sequential ids."""

    identities: list[IdentityCandidate]
    created: list[str] = field(default_factory=list)

    def lookup_candidates(self, connector_id, attributes, *, include_deactivated=False):
        return [item for item in self.identities if include_deactivated or not item.is_deactivated]

    def create_identity(self, connector_id, account):
        identity_id = f"id-new-{len(self.created) + 1:03d}"
        self.created.append(identity_id)
        return identity_id


def build_demo_identities() -> list[IdentityCandidate]:
    return [
        IdentityCandidate(
            identity_id="id-001",
            display_name="Jane Doe",
            attributes={"email": "jane.doe@example.com", "employee_number": "E1001", "full_name": "Jane Doe"},
        ),
        IdentityCandidate(
            identity_id="id-002",
            display_name="John Smith",
            attributes={"email": "john.smith@example.com", "employee_number": "E1002", "full_name": "John Smith"},
        ),
        IdentityCandidate(
            identity_id="id-003",
            display_name="Jon Smyth",
            attributes={"email": "jon.smyth@example.com", "employee_number": "E1003", "full_name": "Jon Smyth"},
        ),
    ]


def build_demo_accounts(connector_id: str) -> list[ExternalAccount]:
    """Return accounts covering auto-confirm, review and no-match paths."""

    payloads = [
        ("acct-jdoe", {"mail": "Jane.Doe@Example.com ", "employee_id": "E1001", "cn": "Jane Doe"}),
        ("acct-jsmith", {"mail": "j.smith@contractor.example", "cn": "Jon Smith"}),
        ("acct-ghost", {"mail": "nobody@elsewhere.example", "cn": "Alice Jones"}),
    ]
    return [
        ExternalAccount(connector_id=connector_id, account_id=account_id, attributes=attributes)
        for account_id, attributes in payloads
    ]


def build_demo_rules() -> list[CorrelationRuleCreate]:
    return [
        CorrelationRuleCreate(
            name="Employee number",
            source_attribute="employee_id",
            target_attribute="employee_number",
            match_type="exact",
            is_definitive=True,
            weight=1.0,
            tier=1,
        ),
        CorrelationRuleCreate(
            name="Email",
            source_attribute="mail",
            target_attribute="email",
            match_type="exact",
            weight=1.0,
            tier=2,
        ),
        CorrelationRuleCreate(
            name="Full name",
            source_attribute="cn",
            target_attribute="full_name",
            match_type="fuzzy",
            algorithm="jaro_winkler",
            threshold=0.8,
            weight=0.5,
            tier=2,
        ),
    ]


def reset_connector(db, connector_id: str) -> None:
    """Remove existing rules and thresholds for the demo connector."""

    db.execute(delete(CorrelationRule).where(CorrelationRule.connector_id == connector_id))
    db.execute(delete(CorrelationThreshold).where(CorrelationThreshold.connector_id == connector_id))
    db.commit()


def parse_args() -> argparse.Namespace:
    """Parse script CLI arguments."""

    parser = argparse.ArgumentParser(description="Seed demo correlation rules and reconcile demo accounts.")
    parser.add_argument(
        "--connector-id",
        default=DEFAULT_CONNECTOR_ID,
        help=f"Connector ID to seed (default: {DEFAULT_CONNECTOR_ID})",
    )
    parser.add_argument(
        "--no-reset",
        action="store_true",
        help="Do not delete existing rules and thresholds for the connector before seeding.",
    )
    parser.add_argument(
        "--auto-provision",
        action="store_true",
        help="Create identities for accounts with no candidates.",
    )
    return parser.parse_args()


def main() -> None:
    """Seed demo data, run one batch and print a short summary."""

    args = parse_args()
    connector_id: str = args.connector_id

    with SessionLocal() as db:
        if not args.no_reset:
            reset_connector(db, connector_id)
        created_rules = [create_rule(db, connector_id, payload) for payload in build_demo_rules()]
        upsert_thresholds(
            db,
            connector_id,
            CorrelationThresholdUpsert(
                auto_confirm_threshold=0.9,
                manual_review_threshold=0.6,
                min_margin=0.05,
                auto_provision=args.auto_provision,
            ),
        )

    orchestrator = ReconciliationOrchestrator(SessionLocal, directory=DemoDirectory(build_demo_identities()))
    batch = asyncio.run(orchestrator.run_batch(connector_id, build_demo_accounts(connector_id)))

    print("Seed complete")
    print(f"connector_id={connector_id}")
    print(f"rules_created={len(created_rules)}")
    for outcome in batch.outcomes:
        print(
            f"  {outcome.account_id}: {outcome.event_type} identity={outcome.identity_id} "
            f"confidence={outcome.confidence_score} case={outcome.case_id}"
        )
    print()
    print("Inspect:")
    print(f"  GET /connectors/{connector_id}/correlation/rules")
    print(f"  GET /connectors/{connector_id}/correlation/audit")
    print(f"  GET /connectors/{connector_id}/correlation/statistics")
    print("  GET /correlation/cases?status=pending")


if __name__ == "__main__":
    main()
