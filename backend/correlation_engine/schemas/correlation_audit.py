"""Correlation audit event schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

EventTypeParam = Literal["auto_confirm", "manual_confirm", "reject", "create_identity", "reassign"]
OutcomeParam = Literal["success", "failure"]
ActorTypeParam = Literal["system", "user"]


class AuditEventCreate(BaseModel):
    """Fully-formed decision record handed to the audit recorder."""

    connector_id: str = Field(min_length=1)
    account_id: str = Field(min_length=1)
    event_type: EventTypeParam
    outcome: OutcomeParam
    decided_at: datetime
    case_id: int | None = None
    identity_id: str | None = None
    confidence_score: float | None = Field(default=None, ge=0.0, le=1.0)
    candidate_count: int = Field(default=0, ge=0)
    candidates_summary: list[dict[str, Any]] = Field(default_factory=list)
    rules_snapshot: list[dict[str, Any]] = Field(default_factory=list)
    thresholds_snapshot: dict[str, Any] = Field(default_factory=dict)
    actor_type: ActorTypeParam = "system"
    actor_id: str | None = None
    reason: str | None = None

    @model_validator(mode="after")
    def validate_invariants(self) -> "AuditEventCreate":
        if (self.actor_type == "user") != (self.actor_id is not None):
            raise ValueError("actor_id must be set exactly when actor_type is 'user'")
        if self.event_type in ("reject", "reassign") and not (self.reason and self.reason.strip()):
            raise ValueError(f"reason is required for {self.event_type} events")
        return self


class CorrelationAuditEventRead(BaseModel):
    """Serialized audit event."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    connector_id: str
    account_id: str
    case_id: int | None
    identity_id: str | None
    event_type: str
    outcome: str
    confidence_score: float | None
    candidate_count: int
    candidates_summary: list[dict[str, Any]]
    rules_snapshot: list[dict[str, Any]]
    thresholds_snapshot: dict[str, Any]
    actor_type: str
    actor_id: str | None
    reason: str | None
    created_at: datetime
