"""Comparison strategies selected by a rule's ``match_type``."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from functools import partial
from typing import Literal, Protocol

from correlation_engine.matching.expression import (
    Expression,
    ExpressionEvaluationError,
    ExpressionSyntaxError,
    compile_expression,
)
from correlation_engine.matching.normalize import attribute_values, normalize_value
from correlation_engine.matching.similarity import SIMILARITY_ALGORITHMS, get_similarity_algorithm

logger = logging.getLogger(__name__)

MatchType = Literal["exact", "fuzzy", "expression"]
MATCH_TYPES: tuple[str, ...] = ("exact", "fuzzy", "expression")


class RuleConfigurationError(ValueError):
    """Raised when a rule definition can never be evaluated."""


@dataclass(frozen=True, slots=True)
class MatchResult:
    """Raw rule outcome for one (account, candidate) pair.

    ``score`` is ``None`` when the rule could not run because an attribute it
    compares is missing on either side.
    """

    score: float | None

    @property
    def evaluated(self) -> bool:
        return self.score is not None


NOT_EVALUATED = MatchResult(score=None)
NO_MATCH = MatchResult(score=0.0)
FULL_MATCH = MatchResult(score=1.0)


class Matcher(Protocol):
    """Protocol shared by all comparison strategies."""

    def evaluate(self, source: Mapping[str, object], target: Mapping[str, object]) -> MatchResult:
        """Score one account/candidate pair."""


@dataclass(frozen=True, slots=True)
class ExactMatcher:
    """Equality after optional normalization; any multi-value pair may match."""

    source_attribute: str
    target_attribute: str
    normalize: bool

    def evaluate(self, source: Mapping[str, object], target: Mapping[str, object]) -> MatchResult:
        left_values = attribute_values(source, self.source_attribute)
        right_values = attribute_values(target, self.target_attribute)
        if not left_values or not right_values:
            return NOT_EVALUATED
        right_set = {normalize_value(value, self.normalize) for value in right_values}
        for value in left_values:
            if normalize_value(value, self.normalize) in right_set:
                return FULL_MATCH
        return NO_MATCH


@dataclass(frozen=True, slots=True)
class FuzzyMatcher:
    """Similarity via a named algorithm; sub-threshold similarity scores zero."""

    source_attribute: str
    target_attribute: str
    normalize: bool
    algorithm: str
    threshold: float
    similarity: Callable[[str, str], float]

    def evaluate(self, source: Mapping[str, object], target: Mapping[str, object]) -> MatchResult:
        left_values = attribute_values(source, self.source_attribute)
        right_values = attribute_values(target, self.target_attribute)
        if not left_values or not right_values:
            return NOT_EVALUATED
        best = 0.0
        for left in left_values:
            left_norm = normalize_value(left, self.normalize)
            for right in right_values:
                best = max(best, self.similarity(left_norm, normalize_value(right, self.normalize)))
        if best < self.threshold:
            return NO_MATCH
        return MatchResult(score=min(best, 1.0))


@dataclass(frozen=True, slots=True)
class ExpressionMatcher:
    """Boolean expression over the full source/target attribute maps."""

    rule_label: str
    expression: Expression
    normalize: bool

    def evaluate(self, source: Mapping[str, object], target: Mapping[str, object]) -> MatchResult:
        normalizer = partial(normalize_value, enabled=True) if self.normalize else None
        try:
            matched = self.expression.evaluate(source, target, normalizer=normalizer)
        except ExpressionEvaluationError as exc:
            logger.warning(
                "correlation.expression_runtime_error rule=%s error=%s",
                self.rule_label,
                exc,
            )
            return NO_MATCH
        return FULL_MATCH if matched else NO_MATCH


@dataclass(frozen=True, slots=True)
class BrokenRuleMatcher:
    """Stand-in for a stored rule that no longer compiles; never matches."""

    rule_label: str
    error: str

    def evaluate(self, source: Mapping[str, object], target: Mapping[str, object]) -> MatchResult:
        logger.error(
            "correlation.rule_evaluation_failed rule=%s error=%s",
            self.rule_label,
            self.error,
        )
        return NO_MATCH


def validate_rule_definition(
    *,
    match_type: str,
    algorithm: str | None,
    expression: str | None,
    threshold: float,
    weight: float,
    tier: int,
) -> None:
    """Reject rule configurations that could never evaluate correctly."""

    if match_type not in MATCH_TYPES:
        raise RuleConfigurationError(f"Unsupported match_type '{match_type}'")
    if not 0.0 <= threshold <= 1.0:
        raise RuleConfigurationError("threshold must be between 0 and 1")
    if weight < 0:
        raise RuleConfigurationError("weight must be non-negative")
    if tier < 1:
        raise RuleConfigurationError("tier must be at least 1")
    if match_type == "fuzzy":
        if not algorithm:
            raise RuleConfigurationError("algorithm is required when match_type is fuzzy")
        if algorithm not in SIMILARITY_ALGORITHMS:
            supported = ", ".join(sorted(SIMILARITY_ALGORITHMS))
            raise RuleConfigurationError(f"Unknown algorithm '{algorithm}' (supported: {supported})")
    elif algorithm is not None:
        raise RuleConfigurationError("algorithm is only allowed when match_type is fuzzy")
    if match_type == "expression":
        if not expression or not expression.strip():
            raise RuleConfigurationError("expression is required when match_type is expression")
        try:
            compile_expression(expression)
        except ExpressionSyntaxError as exc:
            raise RuleConfigurationError(f"Invalid expression: {exc}") from exc
    elif expression is not None:
        raise RuleConfigurationError("expression is only allowed when match_type is expression")


def build_matcher(
    *,
    rule_label: str,
    match_type: str,
    source_attribute: str,
    target_attribute: str,
    normalize: bool,
    algorithm: str | None = None,
    threshold: float = 0.0,
    expression: str | None = None,
) -> Matcher:
    """Compile the strategy for one rule, raising ``RuleConfigurationError`` if impossible."""

    if match_type == "exact":
        return ExactMatcher(source_attribute, target_attribute, normalize)
    if match_type == "fuzzy":
        try:
            similarity = get_similarity_algorithm(algorithm or "")
        except KeyError as exc:
            raise RuleConfigurationError(str(exc)) from exc
        return FuzzyMatcher(
            source_attribute=source_attribute,
            target_attribute=target_attribute,
            normalize=normalize,
            algorithm=algorithm or "",
            threshold=threshold,
            similarity=similarity,
        )
    if match_type == "expression":
        try:
            compiled = compile_expression(expression or "")
        except ExpressionSyntaxError as exc:
            raise RuleConfigurationError(f"Invalid expression: {exc}") from exc
        return ExpressionMatcher(rule_label=rule_label, expression=compiled, normalize=normalize)
    raise RuleConfigurationError(f"Unsupported match_type '{match_type}'")
