"""Correlation rule request/response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from correlation_engine.matching.matchers import validate_rule_definition

MatchTypeParam = Literal["exact", "fuzzy", "expression"]
AlgorithmParam = Literal["jaro_winkler", "levenshtein"]

# Only these may be set to null in an update; everything else keeps a value.
_CLEARABLE_FIELDS = frozenset({"algorithm", "expression"})


class CorrelationRuleCreate(BaseModel):
    """Payload for creating a connector-scoped rule."""

    name: str = Field(min_length=1, max_length=255)
    source_attribute: str = Field(min_length=1, max_length=255)
    target_attribute: str = Field(min_length=1, max_length=255)
    match_type: MatchTypeParam
    algorithm: AlgorithmParam | None = None
    threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    weight: float = Field(default=1.0, ge=0.0)
    expression: str | None = None
    tier: int = Field(default=1, ge=1)
    is_definitive: bool = False
    normalize: bool = True
    is_active: bool = True
    priority: int = Field(default=10, ge=0)

    @model_validator(mode="after")
    def validate_definition(self) -> "CorrelationRuleCreate":
        if self.expression is not None and not self.expression.strip():
            self.expression = None
        validate_rule_definition(
            match_type=self.match_type,
            algorithm=self.algorithm,
            expression=self.expression,
            threshold=self.threshold,
            weight=self.weight,
            tier=self.tier,
        )
        return self


class CorrelationRuleUpdate(BaseModel):
    """Allowed mutable fields for a rule; the merged result is re-validated."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    source_attribute: str | None = Field(default=None, min_length=1, max_length=255)
    target_attribute: str | None = Field(default=None, min_length=1, max_length=255)
    match_type: MatchTypeParam | None = None
    algorithm: AlgorithmParam | None = None
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    weight: float | None = Field(default=None, ge=0.0)
    expression: str | None = None
    tier: int | None = Field(default=None, ge=1)
    is_definitive: bool | None = None
    normalize: bool | None = None
    is_active: bool | None = None
    priority: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def validate_non_empty_update(self) -> "CorrelationRuleUpdate":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided.")
        cleared = sorted(
            name
            for name in self.model_fields_set - _CLEARABLE_FIELDS
            if getattr(self, name) is None
        )
        if cleared:
            raise ValueError(f"Fields cannot be null: {', '.join(cleared)}.")
        return self


class CorrelationRuleRead(BaseModel):
    """Serialized correlation rule."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    connector_id: str
    name: str
    source_attribute: str
    target_attribute: str
    match_type: str
    algorithm: str | None
    threshold: float
    weight: float
    expression: str | None
    tier: int
    is_definitive: bool
    normalize: bool
    is_active: bool
    priority: int
    created_at: datetime
    updated_at: datetime


class ExpressionTestInput(BaseModel):
    """Sample attribute maps for a dry run."""

    source: dict[str, Any] = Field(default_factory=dict)
    target: dict[str, Any] = Field(default_factory=dict)


class ValidateExpressionRequest(BaseModel):
    """Dry-run validation request behind the rule form's "Test Expression" button."""

    expression: str = Field(min_length=1)
    normalize: bool = True
    test_input: ExpressionTestInput | None = None


class ValidateExpressionResponse(BaseModel):
    """Parse/evaluation outcome of a dry run."""

    valid: bool
    error: str | None = None
    result: bool | None = None
    referenced_attributes: list[str] = Field(default_factory=list)
