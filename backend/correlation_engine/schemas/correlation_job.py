"""Reconciliation job schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class TriggerCorrelationRequest(BaseModel):
    """Accounts to evaluate; all accounts of the connector when omitted."""

    account_ids: list[str] | None = Field(default=None, min_length=1)


class CorrelationJobRead(BaseModel):
    """Progress counters of a reconciliation job."""

    model_config = ConfigDict(from_attributes=True)

    job_id: int = Field(validation_alias="id")
    connector_id: str
    status: str
    total_accounts: int
    processed_accounts: int
    auto_confirmed: int
    queued_for_review: int
    no_match: int
    identities_created: int
    errors: int
    requeued_account_ids: list[str] = Field(validation_alias="requeued_account_ids_json")
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None
