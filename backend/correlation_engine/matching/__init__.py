"""Correlation matching package."""

from correlation_engine.matching.decision import Decision, DecisionEngine
from correlation_engine.matching.scorer import CandidateScorer, ScoredCandidate, ScoringResult
from correlation_engine.matching.snapshot import CompiledRule, RuleSetSnapshot, ThresholdPolicy
from correlation_engine.matching.types import ExternalAccount, IdentityCandidate

__all__ = [
    "CandidateScorer",
    "CompiledRule",
    "Decision",
    "DecisionEngine",
    "ExternalAccount",
    "IdentityCandidate",
    "RuleSetSnapshot",
    "ScoredCandidate",
    "ScoringResult",
    "ThresholdPolicy",
]
