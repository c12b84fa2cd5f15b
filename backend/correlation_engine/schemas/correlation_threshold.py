"""Connector threshold policy schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CorrelationThresholdUpsert(BaseModel):
    """Replace a connector's decision policy."""

    auto_confirm_threshold: float = Field(ge=0.0, le=1.0)
    manual_review_threshold: float = Field(ge=0.0, le=1.0)
    min_margin: float = Field(default=0.0, ge=0.0, le=1.0)
    auto_provision: bool = False
    tuning_mode: bool = False
    include_deactivated: bool = False
    batch_size: int = Field(default=100, ge=1, le=10000)

    @model_validator(mode="after")
    def validate_threshold_order(self) -> "CorrelationThresholdUpsert":
        if self.auto_confirm_threshold < self.manual_review_threshold:
            raise ValueError(
                "Auto-confirm threshold must be greater than or equal to manual review threshold"
            )
        return self


class CorrelationThresholdRead(BaseModel):
    """Policy in effect for a connector; ``id`` is null while defaults apply."""

    model_config = ConfigDict(from_attributes=True)

    id: int | None
    connector_id: str
    auto_confirm_threshold: float
    manual_review_threshold: float
    min_margin: float
    auto_provision: bool
    tuning_mode: bool
    include_deactivated: bool
    batch_size: int
    created_at: datetime | None
    updated_at: datetime | None
