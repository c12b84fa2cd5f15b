"""Decision mix and daily trends computed from the audit ledger."""

from __future__ import annotations

from collections import Counter, defaultdict
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from correlation_engine.models.correlation_audit_event import CorrelationAuditEvent
from correlation_engine.models.correlation_case import CorrelationCase
from correlation_engine.schemas.correlation_statistics import CorrelationStatistics, CorrelationTrends, DailyTrend
from correlation_engine.services.audit import day_bounds

_NO_MATCH_TYPES = ("reject", "create_identity")
DEFAULT_TREND_DAYS = 30


def _system_decisions(
    db: Session,
    connector_id: str,
    start_date: date | None,
    end_date: date | None,
) -> list[tuple[str, float | None, datetime]]:
    start, end = day_bounds(start_date, end_date)
    stmt = select(
        CorrelationAuditEvent.event_type,
        CorrelationAuditEvent.confidence_score,
        CorrelationAuditEvent.created_at,
    ).where(
        CorrelationAuditEvent.connector_id == connector_id,
        CorrelationAuditEvent.actor_type == "system",
        CorrelationAuditEvent.outcome == "success",
    )
    if start is not None:
        stmt = stmt.where(CorrelationAuditEvent.created_at >= start)
    if end is not None:
        stmt = stmt.where(CorrelationAuditEvent.created_at < end)
    return [(row.event_type, row.confidence_score, row.created_at) for row in db.execute(stmt)]


def _percentage(count: int, total: int) -> float:
    return round(count * 100.0 / total, 2) if total else 0.0


def _average(values: list[float]) -> float | None:
    return round(sum(values) / len(values), 4) if values else None


def _suggestions(total: int, manual: int, no_match: int) -> list[str]:
    if not total:
        return []
    suggestions: list[str] = []
    if _percentage(manual, total) > 30:
        suggestions.append(
            "Over 30% of accounts need manual review; consider adding definitive rules "
            "or lowering the auto-confirm threshold."
        )
    if _percentage(no_match, total) > 50:
        suggestions.append(
            "Over half of accounts find no confident match; check attribute mappings "
            "and normalization on the connector's rules."
        )
    return suggestions


def get_statistics(
    db: Session,
    connector_id: str,
    *,
    start_date: date | None = None,
    end_date: date | None = None,
) -> CorrelationStatistics:
    """Summarize system decisions for a connector within an optional date range."""

    decisions = _system_decisions(db, connector_id, start_date, end_date)
    counts = Counter(event_type for event_type, _, _ in decisions)
    total = len(decisions)
    auto = counts["auto_confirm"]
    manual = counts["manual_confirm"]
    no_match = sum(counts[name] for name in _NO_MATCH_TYPES)
    queue_depth = int(
        db.scalar(
            select(func.count(CorrelationCase.id)).where(
                CorrelationCase.connector_id == connector_id,
                CorrelationCase.status == "pending",
            )
        )
        or 0
    )
    return CorrelationStatistics(
        connector_id=connector_id,
        period_start=start_date,
        period_end=end_date,
        total_evaluated=total,
        auto_confirmed_count=auto,
        auto_confirmed_percentage=_percentage(auto, total),
        manual_review_count=manual,
        manual_review_percentage=_percentage(manual, total),
        no_match_count=no_match,
        no_match_percentage=_percentage(no_match, total),
        average_confidence=_average([score for _, score, _ in decisions if score is not None]),
        review_queue_depth=queue_depth,
        suggestions=_suggestions(total, manual, no_match),
    )


def get_trends(
    db: Session,
    connector_id: str,
    *,
    start_date: date | None = None,
    end_date: date | None = None,
) -> CorrelationTrends:
    """Daily decision buckets; defaults to the last 30 days ending today (UTC)."""

    end_date = end_date or datetime.now(timezone.utc).date()
    start_date = start_date or end_date - timedelta(days=DEFAULT_TREND_DAYS - 1)
    decisions = _system_decisions(db, connector_id, start_date, end_date)

    buckets: dict[date, list[tuple[str, float | None]]] = defaultdict(list)
    for event_type, score, created_at in decisions:
        if created_at.tzinfo is not None:
            created_at = created_at.astimezone(timezone.utc)
        buckets[created_at.date()].append((event_type, score))

    daily: list[DailyTrend] = []
    day = start_date
    while day <= end_date:
        items = buckets.get(day, [])
        counts = Counter(event_type for event_type, _ in items)
        daily.append(
            DailyTrend(
                date=day,
                total_evaluated=len(items),
                auto_confirmed=counts["auto_confirm"],
                manual_review=counts["manual_confirm"],
                no_match=sum(counts[name] for name in _NO_MATCH_TYPES),
                average_confidence=_average([score for _, score in items if score is not None]),
            )
        )
        day += timedelta(days=1)

    total = len(decisions)
    return CorrelationTrends(
        connector_id=connector_id,
        period_start=start_date,
        period_end=end_date,
        daily_trends=daily,
        suggestions=_suggestions(
            total,
            sum(trend.manual_review for trend in daily),
            sum(trend.no_match for trend in daily),
        ),
    )
