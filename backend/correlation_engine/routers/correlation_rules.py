"""Connector rule and threshold routes."""

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response
from sqlalchemy.orm import Session

from correlation_engine.db.dependencies import get_db
from correlation_engine.matching.matchers import RuleConfigurationError
from correlation_engine.schemas.common import PaginatedResponse
from correlation_engine.schemas.correlation_rule import (
    CorrelationRuleCreate,
    CorrelationRuleRead,
    CorrelationRuleUpdate,
    MatchTypeParam,
    ValidateExpressionRequest,
    ValidateExpressionResponse,
)
from correlation_engine.schemas.correlation_threshold import CorrelationThresholdRead, CorrelationThresholdUpsert
from correlation_engine.services.rules import (
    create_rule,
    delete_rule,
    dry_run_expression,
    get_rule,
    list_rules,
    update_rule,
)
from correlation_engine.services.thresholds import get_thresholds, upsert_thresholds

router = APIRouter(prefix="/connectors/{connector_id}/correlation")


@router.get("/rules", response_model=PaginatedResponse[CorrelationRuleRead])
def get_rules(
    connector_id: str = Path(..., min_length=1),
    match_type: MatchTypeParam | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    tier: int | None = Query(default=None, ge=1),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> PaginatedResponse[CorrelationRuleRead]:
    """List a connector's rules in evaluation order."""

    return list_rules(
        db,
        connector_id,
        limit=limit,
        offset=offset,
        match_type=match_type,
        is_active=is_active,
        tier=tier,
    )


@router.post("/rules", response_model=CorrelationRuleRead, status_code=201)
def post_rule(
    payload: CorrelationRuleCreate,
    connector_id: str = Path(..., min_length=1),
    db: Session = Depends(get_db),
) -> CorrelationRuleRead:
    """Create a rule; invalid definitions are rejected with 422."""

    return CorrelationRuleRead.model_validate(create_rule(db, connector_id, payload))


@router.post("/rules/validate-expression", response_model=ValidateExpressionResponse)
def post_validate_expression(
    payload: ValidateExpressionRequest,
    connector_id: str = Path(..., min_length=1),
) -> ValidateExpressionResponse:
    """Dry-run an expression without storing anything."""

    return dry_run_expression(payload)


@router.get("/rules/{rule_id}", response_model=CorrelationRuleRead)
def get_one_rule(
    connector_id: str = Path(..., min_length=1),
    rule_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
) -> CorrelationRuleRead:
    rule = get_rule(db, connector_id, rule_id)
    if rule is None:
        raise HTTPException(status_code=404, detail="Correlation rule not found")
    return CorrelationRuleRead.model_validate(rule)


def _apply_update(db: Session, connector_id: str, rule_id: int, payload: CorrelationRuleUpdate) -> CorrelationRuleRead:
    try:
        updated = update_rule(db, connector_id, rule_id, payload)
    except RuleConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if updated is None:
        raise HTTPException(status_code=404, detail="Correlation rule not found")
    return CorrelationRuleRead.model_validate(updated)


@router.put("/rules/{rule_id}", response_model=CorrelationRuleRead)
def put_rule(
    payload: CorrelationRuleUpdate,
    connector_id: str = Path(..., min_length=1),
    rule_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
) -> CorrelationRuleRead:
    """Update a rule; only the provided fields change."""

    return _apply_update(db, connector_id, rule_id, payload)


@router.patch("/rules/{rule_id}", response_model=CorrelationRuleRead)
def patch_rule(
    payload: CorrelationRuleUpdate,
    connector_id: str = Path(..., min_length=1),
    rule_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
) -> CorrelationRuleRead:
    return _apply_update(db, connector_id, rule_id, payload)


@router.delete("/rules/{rule_id}", status_code=204)
def remove_rule(
    connector_id: str = Path(..., min_length=1),
    rule_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
) -> Response:
    """Delete a rule. Recorded decisions keep their own rule snapshots."""

    if not delete_rule(db, connector_id, rule_id):
        raise HTTPException(status_code=404, detail="Correlation rule not found")
    return Response(status_code=204)


@router.get("/thresholds", response_model=CorrelationThresholdRead)
def get_connector_thresholds(
    connector_id: str = Path(..., min_length=1),
    db: Session = Depends(get_db),
) -> CorrelationThresholdRead:
    """Return the connector policy, or defaults when none is stored."""

    return get_thresholds(db, connector_id)


@router.put("/thresholds", response_model=CorrelationThresholdRead)
def put_connector_thresholds(
    payload: CorrelationThresholdUpsert,
    connector_id: str = Path(..., min_length=1),
    db: Session = Depends(get_db),
) -> CorrelationThresholdRead:
    return upsert_thresholds(db, connector_id, payload)
