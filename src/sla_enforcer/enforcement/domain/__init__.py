"""
SLA Domain Layer
================

Domain layer for the SLA enforcement module.

Contains:
- Entities: Shipment, SLARule, SLAViolation, SLAPenalty and result records
- Value Objects: RuleEvaluator, CandidateCriteria, channel action union

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from sla_enforcer.enforcement.domain.entities import (
    Shipment,
    SLARule,
    SLAViolation,
    SLAPenalty,
    MonitoringResult,
    ActionExecutionResult,
    ViolationSummary,
    utc_now,
)
from sla_enforcer.enforcement.domain.value_objects import (
    RuleEvaluator,
    RuleEvaluation,
    RuleConditions,
    CandidateCriteria,
    EmailAlertAction,
    WebhookAction,
    SmartContractAction,
    PenaltyAction,
    ChannelAction,
    ParsedActions,
    parse_action_bag,
    ensure_utc,
)

__all__ = [
    # Entities
    "Shipment",
    "SLARule",
    "SLAViolation",
    "SLAPenalty",
    "MonitoringResult",
    "ActionExecutionResult",
    "ViolationSummary",
    "utc_now",
    # Value Objects & Services
    "RuleEvaluator",
    "RuleEvaluation",
    "RuleConditions",
    "CandidateCriteria",
    "EmailAlertAction",
    "WebhookAction",
    "SmartContractAction",
    "PenaltyAction",
    "ChannelAction",
    "ParsedActions",
    "parse_action_bag",
    "ensure_utc",
]
