"""Correlation statistics schemas."""

from datetime import date

from pydantic import BaseModel


class CorrelationStatistics(BaseModel):
    """Decision mix for a connector over a period."""

    connector_id: str
    period_start: date | None
    period_end: date | None
    total_evaluated: int
    auto_confirmed_count: int
    auto_confirmed_percentage: float
    manual_review_count: int
    manual_review_percentage: float
    no_match_count: int
    no_match_percentage: float
    average_confidence: float | None
    review_queue_depth: int
    suggestions: list[str]


class DailyTrend(BaseModel):
    """Decision counts for one day."""

    date: date
    total_evaluated: int
    auto_confirmed: int
    manual_review: int
    no_match: int
    average_confidence: float | None


class CorrelationTrends(BaseModel):
    """Daily decision trend for a connector."""

    connector_id: str
    period_start: date
    period_end: date
    daily_trends: list[DailyTrend]
    suggestions: list[str]
