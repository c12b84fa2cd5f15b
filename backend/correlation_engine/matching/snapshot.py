"""Immutable per-batch views of a connector's rules and decision policy."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from itertools import groupby
from typing import Any, Protocol

from correlation_engine.matching.matchers import BrokenRuleMatcher, Matcher, RuleConfigurationError, build_matcher


class RuleDefinition(Protocol):
    """Attributes read from a stored rule (ORM row or plain object)."""

    id: int
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


@dataclass(frozen=True, slots=True)
class CompiledRule:
    """A rule frozen at batch start with its matcher compiled once."""

    id: int
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
    priority: int
    updated_at: datetime | None
    matcher: Matcher

    @property
    def key(self) -> str:
        return f"{self.id}:{self.name}"

    @classmethod
    def from_definition(cls, rule: RuleDefinition) -> "CompiledRule":
        label = f"{rule.id}:{rule.name}"
        try:
            matcher: Matcher = build_matcher(
                rule_label=label,
                match_type=rule.match_type,
                source_attribute=rule.source_attribute,
                target_attribute=rule.target_attribute,
                normalize=rule.normalize,
                algorithm=rule.algorithm,
                threshold=rule.threshold,
                expression=rule.expression,
            )
        except RuleConfigurationError as exc:
            matcher = BrokenRuleMatcher(rule_label=label, error=str(exc))
        return cls(
            id=rule.id,
            name=rule.name,
            source_attribute=rule.source_attribute,
            target_attribute=rule.target_attribute,
            match_type=rule.match_type,
            algorithm=rule.algorithm,
            threshold=float(rule.threshold),
            weight=float(rule.weight),
            expression=rule.expression,
            tier=int(rule.tier),
            is_definitive=bool(rule.is_definitive),
            normalize=bool(rule.normalize),
            priority=int(rule.priority),
            updated_at=getattr(rule, "updated_at", None),
            matcher=matcher,
        )

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-serializable copy stored with each audit event."""

        return {
            "id": self.id,
            "name": self.name,
            "source_attribute": self.source_attribute,
            "target_attribute": self.target_attribute,
            "match_type": self.match_type,
            "algorithm": self.algorithm,
            "threshold": self.threshold,
            "weight": self.weight,
            "expression": self.expression,
            "tier": self.tier,
            "is_definitive": self.is_definitive,
            "normalize": self.normalize,
            "priority": self.priority,
            "updated_at": self.updated_at.isoformat() if self.updated_at is not None else None,
        }


def _evaluation_order(rule: CompiledRule) -> tuple[int, int, str, int]:
    return (rule.tier, -rule.priority, rule.name, rule.id)


@dataclass(frozen=True, slots=True)
class RuleSetSnapshot:
    """Active rules of one connector in deterministic evaluation order."""

    connector_id: str
    rules: tuple[CompiledRule, ...]

    @classmethod
    def build(cls, connector_id: str, rules: Iterable[RuleDefinition]) -> "RuleSetSnapshot":
        compiled = [CompiledRule.from_definition(rule) for rule in rules if rule.is_active]
        compiled.sort(key=_evaluation_order)
        return cls(connector_id=connector_id, rules=tuple(compiled))

    @property
    def tiers(self) -> tuple[tuple[int, tuple[CompiledRule, ...]], ...]:
        """Rules grouped by tier ascending; each group already priority-ordered."""

        return tuple(
            (tier, tuple(group)) for tier, group in groupby(self.rules, key=lambda rule: rule.tier)
        )

    def to_snapshot(self) -> list[dict[str, Any]]:
        return [rule.to_snapshot() for rule in self.rules]


@dataclass(frozen=True, slots=True)
class ThresholdPolicy:
    """Connector-level decision policy in effect for a batch."""

    auto_confirm_threshold: float = 0.9
    manual_review_threshold: float = 0.7
    min_margin: float = 0.0
    auto_provision: bool = False
    tuning_mode: bool = False
    include_deactivated: bool = False
    batch_size: int = 100

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "auto_confirm_threshold": self.auto_confirm_threshold,
            "manual_review_threshold": self.manual_review_threshold,
            "min_margin": self.min_margin,
            "auto_provision": self.auto_provision,
            "tuning_mode": self.tuning_mode,
            "include_deactivated": self.include_deactivated,
            "batch_size": self.batch_size,
        }
