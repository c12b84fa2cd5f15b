"""Connector-scoped correlation rule store."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from correlation_engine.matching.expression import validate_expression
from correlation_engine.matching.matchers import validate_rule_definition
from correlation_engine.matching.normalize import normalize_value
from correlation_engine.matching.snapshot import RuleSetSnapshot
from correlation_engine.models.correlation_rule import CorrelationRule
from correlation_engine.schemas.common import PaginatedResponse
from correlation_engine.schemas.correlation_rule import (
    CorrelationRuleCreate,
    CorrelationRuleRead,
    CorrelationRuleUpdate,
    ValidateExpressionRequest,
    ValidateExpressionResponse,
)

_DEFINITION_FIELDS = ("match_type", "algorithm", "expression", "threshold", "weight", "tier")


def list_rules(
    db: Session,
    connector_id: str,
    *,
    limit: int,
    offset: int,
    match_type: str | None = None,
    is_active: bool | None = None,
    tier: int | None = None,
) -> PaginatedResponse[CorrelationRuleRead]:
    """Return a connector's rules in evaluation order."""

    base = select(CorrelationRule).where(CorrelationRule.connector_id == connector_id)
    if match_type is not None:
        base = base.where(CorrelationRule.match_type == match_type)
    if is_active is not None:
        base = base.where(CorrelationRule.is_active.is_(is_active))
    if tier is not None:
        base = base.where(CorrelationRule.tier == tier)
    total = int(db.scalar(select(func.count()).select_from(base.subquery())) or 0)
    rows = db.scalars(
        base.order_by(
            CorrelationRule.tier.asc(),
            CorrelationRule.priority.desc(),
            CorrelationRule.name.asc(),
            CorrelationRule.id.asc(),
        )
        .limit(limit)
        .offset(offset)
    ).all()
    return PaginatedResponse[CorrelationRuleRead](
        items=[CorrelationRuleRead.model_validate(row) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


def get_rule(db: Session, connector_id: str, rule_id: int) -> CorrelationRule | None:
    rule = db.get(CorrelationRule, rule_id)
    if rule is None or rule.connector_id != connector_id:
        return None
    return rule


def create_rule(db: Session, connector_id: str, payload: CorrelationRuleCreate) -> CorrelationRule:
    """Persist a validated rule for a connector."""

    rule = CorrelationRule(connector_id=connector_id, **payload.model_dump())
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return rule


def update_rule(
    db: Session,
    connector_id: str,
    rule_id: int,
    payload: CorrelationRuleUpdate,
) -> CorrelationRule | None:
    """Apply a partial update and re-validate the merged rule.

    Changing ``match_type`` clears ``algorithm``/``expression`` that no longer
    apply, unless the request sets them explicitly.

    Raises ``RuleConfigurationError`` when the merged rule is not evaluable.
    """

    rule = get_rule(db, connector_id, rule_id)
    if rule is None:
        return None

    changes = payload.model_dump(exclude_unset=True)
    if "expression" in changes and changes["expression"] is not None and not changes["expression"].strip():
        changes["expression"] = None
    merged = {name: getattr(rule, name) for name in _DEFINITION_FIELDS}
    merged.update({name: changes[name] for name in _DEFINITION_FIELDS if name in changes})
    if "match_type" in changes:
        if merged["match_type"] != "fuzzy" and "algorithm" not in changes:
            merged["algorithm"] = None
        if merged["match_type"] != "expression" and "expression" not in changes:
            merged["expression"] = None
    validate_rule_definition(**merged)

    for name, value in changes.items():
        setattr(rule, name, value)
    rule.algorithm = merged["algorithm"]
    rule.expression = merged["expression"]

    db.commit()
    db.refresh(rule)
    return rule


def delete_rule(db: Session, connector_id: str, rule_id: int) -> bool:
    rule = get_rule(db, connector_id, rule_id)
    if rule is None:
        return False
    db.delete(rule)
    db.commit()
    return True


def load_rule_set(db: Session, connector_id: str) -> RuleSetSnapshot:
    """Freeze the connector's active rules for one batch."""

    rows = db.scalars(
        select(CorrelationRule).where(
            CorrelationRule.connector_id == connector_id,
            CorrelationRule.is_active.is_(True),
        )
    ).all()
    return RuleSetSnapshot.build(connector_id, rows)


def dry_run_expression(payload: ValidateExpressionRequest) -> ValidateExpressionResponse:
    """Parse an expression and optionally evaluate it against sample input."""

    test_input = payload.test_input
    outcome = validate_expression(
        payload.expression,
        source=test_input.source if test_input is not None else None,
        target=test_input.target if test_input is not None else None,
        normalizer=normalize_value if payload.normalize else None,
    )
    return ValidateExpressionResponse(
        valid=outcome.valid,
        error=outcome.error,
        result=outcome.result,
        referenced_attributes=list(outcome.references),
    )
