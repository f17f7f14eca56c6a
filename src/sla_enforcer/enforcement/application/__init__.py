"""
SLA Application Layer
======================

Application services and DTOs for SLA enforcement.
"""

from sla_enforcer.enforcement.application.services import (
    ISLARuleRepository,
    IShipmentRepository,
    IViolationRepository,
    IPenaltyRepository,
    IActionChannel,
    ViolationContext,
    SLAActionService,
    ViolationReconciler,
    ReconcileOutcome,
    SLAMonitoringService,
    ViolationQueryService,
    SLARuleService,
)

__all__ = [
    "ISLARuleRepository",
    "IShipmentRepository",
    "IViolationRepository",
    "IPenaltyRepository",
    "IActionChannel",
    "ViolationContext",
    "SLAActionService",
    "ViolationReconciler",
    "ReconcileOutcome",
    "SLAMonitoringService",
    "ViolationQueryService",
    "SLARuleService",
]
