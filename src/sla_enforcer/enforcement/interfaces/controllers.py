"""
SLA Controllers (API Routes)
=============================

FastAPI routes for SLA monitoring, violations and rule management.

Controllers are thin - they delegate to the enforcement engine and
application services.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from sla_enforcer.config import get_settings
from sla_enforcer.infrastructure.database import get_session
from sla_enforcer.enforcement.application import SLARuleService, ViolationQueryService
from sla_enforcer.enforcement.application.dto import (
    ActionExecutionResponse,
    MonitoringResultResponse,
    SLARuleCreateDTO,
    SLARuleResponse,
    SLARuleUpdateDTO,
    ViolationListResponse,
    ViolationQueryDTO,
    ViolationResponse,
    ViolationStatusStr,
    ViolationSummaryResponse,
)
from sla_enforcer.enforcement.infrastructure import (
    DefaultRulesLoader,
    SLAEnforcementEngine,
    SQLAlchemySLARuleRepository,
    SQLAlchemyViolationRepository,
)
from sla_enforcer.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/sla", tags=["SLA Enforcement"])


# ========== Example payloads for Swagger ==========

RULE_CREATE_EXAMPLE = {
    "name": "Express Delivery",
    "description": "Express shipments must be delivered within 24 hours",
    "rule_type": "delivery_time",
    "priority": "high",
    "threshold_minutes": 1440,
    "grace_period_minutes": 30,
    "conditions": {"priority": "express"},
    "actions": {
        "alert_emails": ["logistics@company.com", "manager@company.com"],
        "webhook_url": "https://api.company.com/sla-breach",
        "penalty_amount": 100
    }
}

SUMMARY_RESPONSE_EXAMPLE = {
    "total_violations": 12,
    "active_violations": 3,
    "resolved_violations": 8,
    "escalated_violations": 1,
    "average_delay_minutes": 97.5,
    "resolution_rate": 66.67,
    "violations_by_priority": {"high": 5, "medium": 7},
    "violations_by_type": {"delivery_time": 9, "pickup_time": 3}
}


# ========== Dependencies ==========

def get_engine(request: Request) -> SLAEnforcementEngine:
    """Engine created by the application lifespan."""
    return request.app.state.engine


async def get_rule_service(session: AsyncSession = Depends(get_session)) -> SLARuleService:
    return SLARuleService(SQLAlchemySLARuleRepository(session))


async def get_query_service(session: AsyncSession = Depends(get_session)) -> ViolationQueryService:
    return ViolationQueryService(SQLAlchemyViolationRepository(session))


def get_rules_loader() -> DefaultRulesLoader:
    return DefaultRulesLoader(get_settings().default_rules_path)


# ========== Monitoring ==========

@router.post(
    "/monitoring/run",
    response_model=List[MonitoringResultResponse],
    summary="Run a monitoring pass",
    description="""
    Evaluate every active rule against its candidate shipments now.

    New breaches are recorded as violations and their remedial actions
    run once; already tracked breaches only get their delay refreshed.
    """
)
async def run_monitoring(engine: SLAEnforcementEngine = Depends(get_engine)):
    results = await engine.run_monitoring()
    logger.info(
        "On-demand monitoring pass finished",
        extra={"evaluated": len(results), "violations": sum(r.is_violated for r in results)}
    )
    return [MonitoringResultResponse.model_validate(r) for r in results]


@router.get(
    "/monitoring/results",
    response_model=List[MonitoringResultResponse],
    summary="Evaluate without recording",
    description="""
    Read-only evaluation. With both `shipment_id` and `rule_id` a single
    pair is evaluated; otherwise every active rule is.
    """
)
async def get_monitoring_results(
    shipment_id: Optional[str] = Query(None, description="Shipment to evaluate"),
    rule_id: Optional[str] = Query(None, description="Rule to evaluate the shipment against"),
    engine: SLAEnforcementEngine = Depends(get_engine)
):
    results = await engine.get_monitoring_results(shipment_id, rule_id)
    return [MonitoringResultResponse.model_validate(r) for r in results]


# ========== Violations ==========

@router.get(
    "/violations/summary",
    response_model=ViolationSummaryResponse,
    summary="Violation summary",
    description="Counts, average delay and breakdowns; date bounds are inclusive on detected_at.",
    responses={
        200: {
            "description": "Violation summary",
            "content": {"application/json": {"example": SUMMARY_RESPONSE_EXAMPLE}}
        }
    }
)
async def get_violation_summary(
    from_date: Optional[datetime] = Query(None, description="Earliest detected_at"),
    to_date: Optional[datetime] = Query(None, description="Latest detected_at"),
    engine: SLAEnforcementEngine = Depends(get_engine)
):
    summary = await engine.get_violation_summary(from_date, to_date)
    return ViolationSummaryResponse.model_validate(summary)


@router.get(
    "/violations",
    response_model=ViolationListResponse,
    summary="List violations"
)
async def list_violations(
    violation_status: Optional[ViolationStatusStr] = Query(None, alias="status", description="Filter by status"),
    rule_id: Optional[str] = Query(None),
    shipment_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000, description="Results per page"),
    offset: int = Query(0, ge=0, description="Page offset"),
    query_service: ViolationQueryService = Depends(get_query_service)
):
    query = ViolationQueryDTO(
        status=violation_status, rule_id=rule_id, shipment_id=shipment_id, limit=limit, offset=offset
    )
    violations = await query_service.list_violations(query.filters(), limit=query.limit, offset=query.offset)
    return ViolationListResponse(
        violations=[ViolationResponse.model_validate(v) for v in violations],
        count=len(violations)
    )


@router.get(
    "/violations/{violation_id}",
    response_model=ViolationResponse,
    summary="Get violation",
    responses={404: {"description": "Violation not found"}}
)
async def get_violation(
    violation_id: str,
    query_service: ViolationQueryService = Depends(get_query_service)
):
    violation = await query_service.get_violation(violation_id)
    return ViolationResponse.model_validate(violation)


@router.post(
    "/violations/{violation_id}/retrigger",
    response_model=List[ActionExecutionResponse],
    summary="Re-run remedial actions",
    description="Runs every configured action channel again for an existing violation.",
    responses={404: {"description": "Violation not found"}}
)
async def retrigger_actions(
    violation_id: str,
    engine: SLAEnforcementEngine = Depends(get_engine)
):
    results = await engine.retrigger_actions(violation_id)
    return [ActionExecutionResponse.model_validate(r) for r in results]


# ========== Rules ==========

@router.post(
    "/rules",
    response_model=SLARuleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create SLA rule",
    openapi_extra={
        "requestBody": {"content": {"application/json": {"example": RULE_CREATE_EXAMPLE}}}
    }
)
async def create_rule(
    request: SLARuleCreateDTO,
    rule_service: SLARuleService = Depends(get_rule_service)
):
    rule = await rule_service.create_rule(request)
    return SLARuleResponse.model_validate(rule)


@router.get(
    "/rules",
    response_model=List[SLARuleResponse],
    summary="List SLA rules"
)
async def list_rules(
    is_active: Optional[bool] = Query(None, description="Filter by active flag"),
    rule_service: SLARuleService = Depends(get_rule_service)
):
    rules = await rule_service.list_rules(is_active=is_active)
    return [SLARuleResponse.model_validate(r) for r in rules]


@router.post(
    "/rules/seed-defaults",
    response_model=List[SLARuleResponse],
    summary="Seed default SLA rules",
    description="Creates the default rules that are missing (matched by name). Safe to call repeatedly."
)
async def seed_default_rules(
    rule_service: SLARuleService = Depends(get_rule_service),
    loader: DefaultRulesLoader = Depends(get_rules_loader)
):
    rules = await rule_service.seed_default_rules(loader.load())
    return [SLARuleResponse.model_validate(r) for r in rules]


@router.get(
    "/rules/{rule_id}",
    response_model=SLARuleResponse,
    summary="Get SLA rule",
    responses={404: {"description": "Rule not found"}}
)
async def get_rule(
    rule_id: str,
    rule_service: SLARuleService = Depends(get_rule_service)
):
    return SLARuleResponse.model_validate(await rule_service.get_rule(rule_id))


@router.put(
    "/rules/{rule_id}",
    response_model=SLARuleResponse,
    summary="Update SLA rule",
    description="Partial update: only the fields present in the body change.",
    responses={404: {"description": "Rule not found"}}
)
async def update_rule(
    rule_id: str,
    request: SLARuleUpdateDTO,
    rule_service: SLARuleService = Depends(get_rule_service)
):
    rule = await rule_service.update_rule(rule_id, request)
    return SLARuleResponse.model_validate(rule)


@router.delete(
    "/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete SLA rule",
    responses={404: {"description": "Rule not found"}}
)
async def delete_rule(
    rule_id: str,
    rule_service: SLARuleService = Depends(get_rule_service)
):
    await rule_service.delete_rule(rule_id)


# Export router for inclusion in main app
sla_router = router
