"""Exponential backoff policy shared by collaborator calls and audit writes."""

from __future__ import annotations

from dataclasses import dataclass

from correlation_engine.config import Settings


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff retry configuration."""

    max_attempts: int = 4
    initial_delay_seconds: float = 0.5
    max_delay_seconds: float = 10.0
    backoff_multiplier: float = 2.0

    @classmethod
    def for_collaborators(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=max(settings.retry_max_attempts, 1),
            initial_delay_seconds=settings.retry_initial_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )

    @classmethod
    def for_audit_writes(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=max(settings.audit_write_max_attempts, 1),
            initial_delay_seconds=settings.audit_retry_delay_seconds,
            max_delay_seconds=settings.audit_retry_delay_seconds * 8,
            backoff_multiplier=2.0,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""

        delay = self.initial_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)
