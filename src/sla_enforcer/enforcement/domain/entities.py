"""
SLA Domain Entities
====================

Pure Python domain entities for SLA enforcement.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sla_enforcer.config import (
    ViolationStatus,
    OPEN_VIOLATION_STATUSES,
)
from sla_enforcer.enforcement.domain.value_objects import ParsedActions, parse_action_bag


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Shipment:
    """
    Read-only snapshot of a shipment owned by the shipment module.

    The enforcement engine never mutates shipments.
    """

    id: str
    tracking_number: str
    status: str
    priority: str
    origin: str
    destination: str
    customer_id: str
    created_at: datetime
    expected_delivery_at: datetime
    picked_up_at: Optional[datetime] = None
    actual_delivery_at: Optional[datetime] = None

    def snapshot(self) -> Dict[str, Any]:
        """Shipment details included in outbound notifications."""
        return {
            "origin": self.origin,
            "destination": self.destination,
            "status": self.status,
            "expected_delivery_at": self.expected_delivery_at.isoformat()
            if self.expected_delivery_at else None,
        }


@dataclass
class SLARule:
    """
    SLA rule entity.

    A named policy: an allowed duration for one shipment lifecycle interval,
    a grace period, a conjunctive shipment filter and the remedial actions
    to run on breach.
    """

    id: str
    name: str
    rule_type: str
    priority: str
    threshold_minutes: int
    grace_period_minutes: int = 0
    conditions: Dict[str, Any] = field(default_factory=dict)
    actions: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def channel_actions(self) -> ParsedActions:
        """Typed channel configs from the stored action bag."""
        return parse_action_bag(self.actions)


@dataclass
class SLAViolation:
    """
    SLA violation entity: one breach episode of a (shipment, rule) pair.

    Status moves detected -> processing -> resolved | escalated and is
    driven by the action dispatcher only.
    """

    id: Optional[str]
    shipment_id: str
    rule_id: str
    delay_minutes: int
    detected_at: datetime
    status: str = ViolationStatus.DETECTED
    resolved_at: Optional[datetime] = None
    actions_taken: List[Dict[str, Any]] = field(default_factory=list)
    notes: Optional[str] = None
    breach_cleared_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_VIOLATION_STATUSES

    @property
    def key(self) -> tuple[str, str]:
        return (self.shipment_id, self.rule_id)

    def update_delay(self, delay_minutes: int) -> None:
        self.delay_minutes = delay_minutes

    def mark_processing(self) -> None:
        self.status = ViolationStatus.PROCESSING

    def resolve(self, timestamp: Optional[datetime] = None) -> None:
        self.status = ViolationStatus.RESOLVED
        self.resolved_at = timestamp or utc_now()

    def escalate(self, note: str) -> None:
        self.status = ViolationStatus.ESCALATED
        self.resolved_at = None
        self.add_note(note)

    def add_note(self, note: str) -> None:
        self.notes = f"{self.notes}\n{note}" if self.notes else note

    def record_actions(self, results: List["ActionExecutionResult"], targets: Dict[str, str]) -> None:
        """Append channel outcomes to the action log (never rewrites it)."""
        self.actions_taken = [
            *self.actions_taken,
            *(r.to_log_entry(targets.get(r.action_type)) for r in results),
        ]


@dataclass
class SLAPenalty:
    """Monetary penalty recorded against a shipment's customer."""

    violation_id: str
    shipment_id: str
    customer_id: str
    amount: float
    reason: str
    delay_minutes: int
    assessed_at: datetime
    id: Optional[str] = None


@dataclass
class MonitoringResult:
    """Verdict for one evaluated (shipment, rule) pair."""

    shipment_id: str
    tracking_number: str
    rule_id: str
    rule_name: str
    is_violated: bool
    expected_time: datetime
    status: str
    delay_minutes: Optional[int] = None
    actual_time: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "shipment_id": self.shipment_id,
            "tracking_number": self.tracking_number,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "is_violated": self.is_violated,
            "delay_minutes": self.delay_minutes,
            "expected_time": self.expected_time.isoformat(),
            "actual_time": self.actual_time.isoformat() if self.actual_time else None,
            "status": self.status,
        }


@dataclass
class ActionExecutionResult:
    """Outcome of one remedial action channel call."""

    action_type: str
    success: bool
    message: str
    timestamp: datetime = field(default_factory=utc_now)
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def failure(cls, action_type: str, message: str, **details: Any) -> "ActionExecutionResult":
        return cls(
            action_type=action_type,
            success=False,
            message=message,
            details=details or None,
        )

    def to_log_entry(self, target: Optional[str] = None) -> Dict[str, Any]:
        return {
            "action_type": self.action_type,
            "success": self.success,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "target": target,
        }


@dataclass
class ViolationSummary:
    """Aggregate view over the violation store."""

    total_violations: int = 0
    active_violations: int = 0
    resolved_violations: int = 0
    escalated_violations: int = 0
    average_delay_minutes: float = 0.0
    violations_by_priority: Dict[str, int] = field(default_factory=dict)
    violations_by_type: Dict[str, int] = field(default_factory=dict)

    @property
    def resolution_rate(self) -> float:
        """Percentage of violations resolved."""
        if not self.total_violations:
            return 0.0
        return round(self.resolved_violations / self.total_violations * 100, 2)
