"""SQLAlchemy metadata registry import for Alembic."""

from correlation_engine.models import (
    CorrelationAuditEvent,
    CorrelationCase,
    CorrelationJob,
    CorrelationRule,
    CorrelationThreshold,
)
from correlation_engine.models.base import Base

__all__ = [
    "Base",
    "CorrelationAuditEvent",
    "CorrelationCase",
    "CorrelationJob",
    "CorrelationRule",
    "CorrelationThreshold",
]
