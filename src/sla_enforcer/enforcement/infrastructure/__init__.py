"""
SLA Infrastructure Layer
=========================

Concrete implementations: SQLAlchemy models and repositories, action
channels, the monitoring scheduler and the enforcement engine.
"""

from sla_enforcer.enforcement.infrastructure.repositories import (
    SQLAlchemySLARuleRepository,
    SQLAlchemyShipmentRepository,
    SQLAlchemyViolationRepository,
    SQLAlchemyPenaltyRepository,
)
from sla_enforcer.enforcement.infrastructure.external import (
    CircuitBreaker,
    CircuitState,
    EmailAlertChannel,
    WebhookChannel,
    SmartContractChannel,
    PenaltyChannel,
    MonitoringScheduler,
    DefaultRulesLoader,
)
from sla_enforcer.enforcement.infrastructure.engine import SLAEnforcementEngine

__all__ = [
    "SQLAlchemySLARuleRepository",
    "SQLAlchemyShipmentRepository",
    "SQLAlchemyViolationRepository",
    "SQLAlchemyPenaltyRepository",
    "CircuitBreaker",
    "CircuitState",
    "EmailAlertChannel",
    "WebhookChannel",
    "SmartContractChannel",
    "PenaltyChannel",
    "MonitoringScheduler",
    "DefaultRulesLoader",
    "SLAEnforcementEngine",
]
