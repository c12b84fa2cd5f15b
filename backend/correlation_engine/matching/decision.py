"""Threshold policy applied to ranked candidates."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from correlation_engine.matching.scorer import ScoringResult
from correlation_engine.matching.snapshot import ThresholdPolicy

EventType = Literal["auto_confirm", "manual_confirm", "reject", "create_identity", "reassign"]
Outcome = Literal["success", "failure"]
ReviewAction = Literal["accept", "reject", "reassign", "create_identity"]

EVENT_TYPES: tuple[str, ...] = ("auto_confirm", "manual_confirm", "reject", "create_identity", "reassign")
OUTCOMES: tuple[str, ...] = ("success", "failure")

REASON_NO_CONFIDENT_CANDIDATE = "no candidate met minimum confidence"
REASON_NO_CANDIDATES = "no candidates found"
REASON_INSUFFICIENT_MARGIN = "margin to runner-up below minimum"
REASON_BELOW_AUTO_CONFIRM = "top candidate below auto-confirm threshold"
REASON_TUNING_MODE = "tuning mode routes matches to manual review"
REASON_REVIEWER_OVERRIDE = "reviewer selected a candidate other than the top-ranked match"

_EPSILON = 1e-9


class CaseDecisionError(ValueError):
    """Raised when a reviewer decision is not valid for the case."""


@dataclass(frozen=True, slots=True)
class Decision:
    """Classification of one account evaluation."""

    event_type: EventType
    outcome: Outcome
    identity_id: str | None
    confidence_score: float | None
    reason: str | None
    opens_case: bool = False
    provisions_identity: bool = False


@dataclass(frozen=True, slots=True)
class ReviewDecision:
    """Audit shape of a reviewer's resolution of a pending case."""

    event_type: EventType
    identity_id: str | None
    reason: str | None
    case_status: str


class DecisionEngine:
    """Single-pass classification: auto-confirm, review, reject, or provision."""

    def __init__(self, policy: ThresholdPolicy) -> None:
        self._policy = policy

    @property
    def policy(self) -> ThresholdPolicy:
        return self._policy

    def decide(self, result: ScoringResult) -> Decision:
        """Choose exactly one terminal outcome for a scored account."""

        policy = self._policy
        top = result.top
        if top is None:
            if policy.auto_provision:
                return Decision(
                    event_type="create_identity",
                    outcome="success",
                    identity_id=None,
                    confidence_score=None,
                    reason=None,
                    provisions_identity=True,
                )
            return Decision(
                event_type="manual_confirm",
                outcome="success",
                identity_id=None,
                confidence_score=None,
                reason=REASON_NO_CANDIDATES,
                opens_case=True,
            )

        runner_up = result.runner_up
        margin = top.score - (runner_up.score if runner_up is not None else 0.0)
        meets_auto = top.score + _EPSILON >= policy.auto_confirm_threshold
        meets_margin = margin + _EPSILON >= policy.min_margin

        if meets_auto and meets_margin and not policy.tuning_mode:
            return Decision(
                event_type="auto_confirm",
                outcome="success",
                identity_id=top.identity_id,
                confidence_score=top.score,
                reason=None,
            )
        if top.score + _EPSILON >= policy.manual_review_threshold:
            if policy.tuning_mode and meets_auto and meets_margin:
                reason = REASON_TUNING_MODE
            elif meets_auto:
                reason = REASON_INSUFFICIENT_MARGIN
            else:
                reason = REASON_BELOW_AUTO_CONFIRM
            return Decision(
                event_type="manual_confirm",
                outcome="success",
                identity_id=None,
                confidence_score=top.score,
                reason=reason,
                opens_case=True,
            )
        return Decision(
            event_type="reject",
            outcome="success",
            identity_id=None,
            confidence_score=top.score,
            reason=REASON_NO_CONFIDENT_CANDIDATE,
        )


def failure_decision(reason: str) -> Decision:
    """Decision recorded when evaluation could not complete."""

    return Decision(
        event_type="reject",
        outcome="failure",
        identity_id=None,
        confidence_score=None,
        reason=reason,
    )


def resolve_review(
    action: ReviewAction,
    *,
    case_candidate_ids: list[str],
    candidate_id: str | None,
    reason: str | None,
) -> ReviewDecision:
    """Map a reviewer action on a pending case to its follow-up audit event.

    ``case_candidate_ids`` is the case's ranked candidate list, best first.
    Accepting anything other than the top-ranked candidate is recorded as a
    ``reassign``.
    """

    clean_reason = reason.strip() if reason and reason.strip() else None
    if action == "accept":
        if not candidate_id:
            raise CaseDecisionError("candidate_id is required to accept a candidate")
        if candidate_id not in case_candidate_ids:
            raise CaseDecisionError(f"Candidate '{candidate_id}' is not part of this case")
        if candidate_id == case_candidate_ids[0]:
            return ReviewDecision("manual_confirm", candidate_id, clean_reason, "confirmed")
        return ReviewDecision("reassign", candidate_id, clean_reason or REASON_REVIEWER_OVERRIDE, "reassigned")
    if action == "reassign":
        if not candidate_id:
            raise CaseDecisionError("candidate_id is required to reassign a case")
        if clean_reason is None:
            raise CaseDecisionError("reason is required to reassign a case")
        return ReviewDecision("reassign", candidate_id, clean_reason, "reassigned")
    if action == "reject":
        if clean_reason is None:
            raise CaseDecisionError("reason is required to reject a case")
        return ReviewDecision("reject", None, clean_reason, "rejected")
    if action == "create_identity":
        return ReviewDecision("create_identity", None, clean_reason, "identity_created")
    raise CaseDecisionError(f"Unsupported action '{action}'")
