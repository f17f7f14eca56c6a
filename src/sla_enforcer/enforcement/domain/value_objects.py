"""
SLA Value Objects
==================

Immutable value objects and pure domain services for SLA enforcement.

- RuleEvaluator: decides breach state and delay for a (shipment, rule) pair
- CandidateCriteria: which shipments a rule applies to
- Channel actions: the rule's action bag as a tagged union of channel configs

Everything here is a pure function of its inputs; "now" is always passed in.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from sla_enforcer.config import (
    ActionType,
    RuleType,
    ShipmentStatus,
    TERMINAL_SHIPMENT_STATUSES,
)
from sla_enforcer.core import UnsupportedRuleTypeException

if TYPE_CHECKING:
    from sla_enforcer.enforcement.domain.entities import Shipment, SLARule


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ========== Rule Evaluation ==========

@dataclass(frozen=True)
class RuleEvaluation:
    """Outcome of evaluating one shipment against one rule."""
    is_violated: bool
    delay_minutes: int
    expected_time: datetime
    actual_time: Optional[datetime] = None


class RuleEvaluator:
    """
    Pure functions for SLA breach evaluation.

    Stateless utility class: every input, including the current time,
    is passed in explicitly.
    """

    @staticmethod
    def expected_and_actual(
        shipment: "Shipment",
        rule: "SLARule"
    ) -> Tuple[datetime, Optional[datetime]]:
        """
        Resolve the rule type's expected and actual timestamps.

        Raises:
            UnsupportedRuleTypeException: For response_time and unknown types
        """
        threshold = timedelta(minutes=rule.threshold_minutes)

        if rule.rule_type == RuleType.DELIVERY_TIME:
            return (
                ensure_utc(shipment.expected_delivery_at),
                ensure_utc(shipment.actual_delivery_at),
            )

        if rule.rule_type == RuleType.PICKUP_TIME:
            return (
                ensure_utc(shipment.created_at) + threshold,
                ensure_utc(shipment.picked_up_at),
            )

        if rule.rule_type == RuleType.PROCESSING_TIME:
            started_at = shipment.picked_up_at or shipment.created_at
            return (
                ensure_utc(started_at) + threshold,
                ensure_utc(shipment.actual_delivery_at),
            )

        # response_time has no measured interval on shipments yet
        raise UnsupportedRuleTypeException(
            rule.rule_type,
            {"rule_id": rule.id, "shipment_id": shipment.id}
        )

    @staticmethod
    def delay_minutes(expected: datetime, now: datetime) -> int:
        """Whole minutes elapsed past ``expected`` (0 if not yet due)."""
        elapsed = (ensure_utc(now) - ensure_utc(expected)).total_seconds()
        if elapsed <= 0:
            return 0
        return int(elapsed // 60)

    @staticmethod
    def is_breach(delay_minutes: int, grace_period_minutes: int) -> bool:
        """A delay equal to the grace period is still tolerated."""
        return delay_minutes > grace_period_minutes

    @classmethod
    def evaluate(cls, shipment: "Shipment", rule: "SLARule", now: datetime) -> RuleEvaluation:
        """
        Evaluate a shipment against a rule at ``now``.

        The breach clock only runs while the rule's actual time is absent;
        once the measured event happened the pair is never in breach.
        """
        expected, actual = cls.expected_and_actual(shipment, rule)

        delay = 0
        if actual is None and ensure_utc(now) > expected:
            delay = cls.delay_minutes(expected, now)

        return RuleEvaluation(
            is_violated=cls.is_breach(delay, rule.grace_period_minutes),
            delay_minutes=delay,
            expected_time=expected,
            actual_time=actual,
        )


# ========== Candidate Selection ==========

class RuleConditions(BaseModel):
    """
    Conjunctive shipment filter attached to a rule.

    A missing key means no constraint on that attribute.
    """
    model_config = ConfigDict(extra="ignore")

    priority: Optional[str] = None
    origin: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Optional[Dict[str, Any]]) -> "RuleConditions":
        return cls.model_validate(raw or {})


@dataclass(frozen=True)
class CandidateCriteria:
    """
    Which shipments a rule should be evaluated against.

    Built from a rule and "now"; the shipment repository translates the
    fields to a single SQL query.
    """
    excluded_statuses: Tuple[str, ...] = tuple(TERMINAL_SHIPMENT_STATUSES)
    required_statuses: Optional[Tuple[str, ...]] = None
    expected_before: Optional[datetime] = None
    priority: Optional[str] = None
    origin_contains: Optional[str] = None

    @classmethod
    def for_rule(cls, rule: "SLARule", now: datetime) -> "CandidateCriteria":
        conditions = RuleConditions.from_raw(rule.conditions)
        required: Optional[Tuple[str, ...]] = None
        expected_before: Optional[datetime] = None

        if rule.rule_type == RuleType.DELIVERY_TIME:
            expected_before = ensure_utc(now)
        elif rule.rule_type == RuleType.PICKUP_TIME:
            required = (ShipmentStatus.CREATED,)
        elif rule.rule_type == RuleType.PROCESSING_TIME:
            required = (ShipmentStatus.PICKED_UP, ShipmentStatus.IN_TRANSIT)

        return cls(
            required_statuses=required,
            expected_before=expected_before,
            priority=conditions.priority or None,
            origin_contains=conditions.origin or None,
        )


# ========== Channel Actions (tagged union) ==========

class EmailAlertAction(BaseModel):
    """Alert email to a fixed recipient list."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["email_alert"] = ActionType.EMAIL_ALERT
    recipients: List[str] = Field(min_length=1)
    escalation_level: int = Field(default=1, ge=1)

    @field_validator("recipients")
    @classmethod
    def validate_recipients(cls, v: List[str]) -> List[str]:
        for address in v:
            if not isinstance(address, str) or "@" not in address:
                raise ValueError(f"invalid email address: {address!r}")
        return v

    @property
    def target(self) -> str:
        return ", ".join(self.recipients)


class WebhookAction(BaseModel):
    """HTTP POST notification to an operator-provided URL."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["webhook"] = ActionType.WEBHOOK
    url: str = Field(min_length=1)
    escalation_level: int = Field(default=1, ge=1)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("webhook url must be http(s)")
        return v

    @property
    def target(self) -> str:
        return self.url


class SmartContractAction(BaseModel):
    """On-chain violation report."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["smart_contract"] = ActionType.SMART_CONTRACT
    contract_address: str = Field(min_length=1)
    penalty_amount: float = Field(default=0.0, ge=0)

    @property
    def target(self) -> str:
        return self.contract_address


class PenaltyAction(BaseModel):
    """Monetary penalty assessed against the shipment's customer."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["penalty"] = ActionType.PENALTY
    amount: float = Field(gt=0)

    @property
    def target(self) -> str:
        return f"{self.amount:.2f}"


ChannelAction = Annotated[
    Union[EmailAlertAction, WebhookAction, SmartContractAction, PenaltyAction],
    Field(discriminator="kind"),
]

_channel_action_adapter = TypeAdapter(ChannelAction)


@dataclass(frozen=True)
class ParsedActions:
    """A rule's action bag split into valid channel configs and config errors."""
    actions: Tuple[Any, ...] = ()
    errors: Tuple[str, ...] = ()
    escalation_level: int = 1

    @property
    def action_types(self) -> List[str]:
        return [a.kind for a in self.actions]


def _escalation_level(raw: Dict[str, Any]) -> int:
    level = raw.get("escalation_level", 1)
    if isinstance(level, bool) or not isinstance(level, int) or level < 1:
        return 1
    return level


def _numeric_or_zero(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def parse_action_bag(raw: Optional[Dict[str, Any]]) -> ParsedActions:
    """
    Turn a stored action bag into typed channel configs.

    Each channel is parsed on its own so a malformed entry only disables
    that channel. Returned actions are in dispatch order.

    Bag keys:
        alert_emails, webhook_url, smart_contract_address,
        penalty_amount, escalation_level
    """
    if raw is None:
        return ParsedActions()
    if not isinstance(raw, dict):
        return ParsedActions(errors=(f"action bag must be an object, got {type(raw).__name__}",))

    level = _escalation_level(raw)
    candidates: List[Tuple[str, Dict[str, Any]]] = []

    emails = raw.get("alert_emails")
    if emails:
        candidates.append((ActionType.EMAIL_ALERT, {
            "kind": ActionType.EMAIL_ALERT,
            "recipients": emails if isinstance(emails, list) else [emails],
            "escalation_level": level,
        }))

    if raw.get("webhook_url"):
        candidates.append((ActionType.WEBHOOK, {
            "kind": ActionType.WEBHOOK,
            "url": raw["webhook_url"],
            "escalation_level": level,
        }))

    if raw.get("smart_contract_address"):
        candidates.append((ActionType.SMART_CONTRACT, {
            "kind": ActionType.SMART_CONTRACT,
            "contract_address": raw["smart_contract_address"],
            "penalty_amount": _numeric_or_zero(raw.get("penalty_amount")),
        }))

    if raw.get("penalty_amount"):
        candidates.append((ActionType.PENALTY, {
            "kind": ActionType.PENALTY,
            "amount": raw["penalty_amount"],
        }))

    actions = []
    errors = []
    for action_type, payload in candidates:
        try:
            actions.append(_channel_action_adapter.validate_python(payload))
        except ValidationError as e:
            reasons = "; ".join(err["msg"] for err in e.errors())
            errors.append(f"{action_type}: {reasons}")

    return ParsedActions(actions=tuple(actions), errors=tuple(errors), escalation_level=level)
