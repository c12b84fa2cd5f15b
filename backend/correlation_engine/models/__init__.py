"""ORM models package exports."""

from correlation_engine.models.correlation_audit_event import AuditImmutableError, CorrelationAuditEvent
from correlation_engine.models.correlation_case import CorrelationCase
from correlation_engine.models.correlation_job import CorrelationJob
from correlation_engine.models.correlation_rule import CorrelationRule
from correlation_engine.models.correlation_threshold import CorrelationThreshold

__all__ = [
    "AuditImmutableError",
    "CorrelationAuditEvent",
    "CorrelationCase",
    "CorrelationJob",
    "CorrelationRule",
    "CorrelationThreshold",
]
