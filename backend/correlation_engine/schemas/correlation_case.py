"""Manual-review case schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

CaseStatusParam = Literal["pending", "confirmed", "rejected", "reassigned", "identity_created"]
CaseActionParam = Literal["accept", "reject", "reassign", "create_identity"]


class CorrelationCandidateRead(BaseModel):
    """Ranked candidate attached to a case."""

    identity_id: str
    display_name: str | None = None
    aggregate_confidence: float
    per_rule_scores: dict[str, float | None] = Field(default_factory=dict)
    tier_scores: dict[str, float] = Field(default_factory=dict)
    is_deactivated: bool = False
    is_definitive_match: bool = False


class CorrelationCaseRead(BaseModel):
    """Case row for the review queue."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    connector_id: str
    account_id: str
    status: str
    trigger_type: str
    highest_confidence: float | None
    candidate_count: int
    assigned_to: str | None
    created_at: datetime
    updated_at: datetime


class CorrelationCaseDetail(CorrelationCaseRead):
    """Case with candidates, account attributes and resolution details."""

    account_attributes: dict[str, Any]
    candidates: list[CorrelationCandidateRead]
    rules_snapshot: list[dict[str, Any]]
    resolved_by: str | None
    resolved_at: datetime | None
    resolution_reason: str | None
    resolved_identity_id: str | None


class CaseDecisionRequest(BaseModel):
    """Reviewer resolution of a pending case."""

    action: CaseActionParam
    candidate_id: str | None = Field(default=None, min_length=1)
    reason: str | None = None


class ConfirmCaseRequest(BaseModel):
    candidate_id: str = Field(min_length=1)
    reason: str | None = None


class RejectCaseRequest(BaseModel):
    reason: str = Field(min_length=1)


class CreateIdentityFromCaseRequest(BaseModel):
    reason: str | None = None


class ReassignCaseRequest(BaseModel):
    candidate_id: str = Field(min_length=1)
    reason: str = Field(min_length=1)


class CaseDecisionResult(BaseModel):
    """Resolved case plus the follow-up audit event it produced."""

    case: CorrelationCaseDetail
    audit_event_id: int
