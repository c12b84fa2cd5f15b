"""Tiered, weighted confidence scoring of candidate identities."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from correlation_engine.matching.snapshot import RuleSetSnapshot
from correlation_engine.matching.types import IdentityCandidate

DEFAULT_TOP_N = 5


@dataclass(frozen=True, slots=True)
class ScoredCandidate:
    """Aggregate confidence for one candidate identity."""

    identity_id: str
    score: float
    display_name: str | None = None
    is_deactivated: bool = False
    is_definitive_match: bool = False
    tier_scores: Mapping[int, float] = field(default_factory=dict)
    rule_scores: Mapping[str, float | None] = field(default_factory=dict)

    def to_summary(self) -> dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "display_name": self.display_name,
            "aggregate_confidence": self.score,
            "is_deactivated": self.is_deactivated,
            "is_definitive_match": self.is_definitive_match,
            "tier_scores": {str(tier): score for tier, score in self.tier_scores.items()},
            "per_rule_scores": dict(self.rule_scores),
        }


@dataclass(frozen=True, slots=True)
class ScoringResult:
    """Ranked candidates for one account.

    ``considered_count`` is the size of the candidate pool, independent of how
    many entries survive ranking or snapshot truncation.
    """

    candidates: tuple[ScoredCandidate, ...]
    considered_count: int
    definitive_rule_id: int | None = None

    @property
    def top(self) -> ScoredCandidate | None:
        return self.candidates[0] if self.candidates else None

    @property
    def runner_up(self) -> ScoredCandidate | None:
        return self.candidates[1] if len(self.candidates) > 1 else None

    def ranked(self, limit: int = DEFAULT_TOP_N) -> list[tuple[str, float]]:
        return [(candidate.identity_id, candidate.score) for candidate in self.candidates[:limit]]

    def summary(self, limit: int = DEFAULT_TOP_N) -> list[dict[str, Any]]:
        return [candidate.to_summary() for candidate in self.candidates[:limit]]


@dataclass(slots=True)
class _Accumulator:
    candidate: IdentityCandidate
    weighted_sum: float = 0.0
    evaluated_weight: float = 0.0
    tier_scores: dict[int, float] = field(default_factory=dict)
    rule_scores: dict[str, float | None] = field(default_factory=dict)

    def aggregate(self) -> float:
        if self.evaluated_weight <= 0:
            return 0.0
        return min(self.weighted_sum / self.evaluated_weight, 1.0)


class CandidateScorer:
    """Evaluate a connector's active rules against a candidate pool."""

    def __init__(self, rules: RuleSetSnapshot) -> None:
        self._rules = rules

    def score(
        self,
        account_attributes: Mapping[str, object],
        candidates: Sequence[IdentityCandidate],
    ) -> ScoringResult:
        """Rank candidates by weighted confidence, deterministically.

        Tiers run lowest first, rules inside a tier by priority descending then
        name. A tier whose definitive rules match exactly one candidate ends
        scoring with that candidate as the sole result.
        """

        pool: dict[str, _Accumulator] = {}
        for candidate in candidates:
            pool.setdefault(candidate.identity_id, _Accumulator(candidate=candidate))
        considered = len(pool)
        if not pool:
            return ScoringResult(candidates=(), considered_count=0)

        for tier, rules in self._rules.tiers:
            definitive_hits: set[str] = set()
            definitive_rule_ids: dict[str, int] = {}
            for identity_id, acc in pool.items():
                tier_total = 0.0
                for rule in rules:
                    result = rule.matcher.evaluate(account_attributes, acc.candidate.attributes)
                    acc.rule_scores[rule.key] = result.score
                    if result.score is None:
                        continue
                    weighted = result.score * rule.weight
                    acc.weighted_sum += weighted
                    acc.evaluated_weight += rule.weight
                    tier_total += weighted
                    if rule.is_definitive and result.score >= 1.0:
                        definitive_hits.add(identity_id)
                        definitive_rule_ids.setdefault(identity_id, rule.id)
                acc.tier_scores[tier] = tier_total

            if len(definitive_hits) == 1:
                winner_id = next(iter(definitive_hits))
                winner = pool[winner_id]
                return ScoringResult(
                    candidates=(
                        ScoredCandidate(
                            identity_id=winner_id,
                            score=1.0,
                            display_name=winner.candidate.display_name,
                            is_deactivated=winner.candidate.is_deactivated,
                            is_definitive_match=True,
                            tier_scores=dict(winner.tier_scores),
                            rule_scores=dict(winner.rule_scores),
                        ),
                    ),
                    considered_count=considered,
                    definitive_rule_id=definitive_rule_ids[winner_id],
                )

        scored = [
            ScoredCandidate(
                identity_id=identity_id,
                score=acc.aggregate(),
                display_name=acc.candidate.display_name,
                is_deactivated=acc.candidate.is_deactivated,
                tier_scores=dict(acc.tier_scores),
                rule_scores=dict(acc.rule_scores),
            )
            for identity_id, acc in pool.items()
        ]
        scored.sort(key=lambda candidate: (-candidate.score, candidate.identity_id))
        return ScoringResult(candidates=tuple(scored), considered_count=considered)
