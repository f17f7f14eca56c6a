"""
SLA Application DTOs
=====================

Data Transfer Objects for the enforcement API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime


# ========== Type Aliases for Literals ==========
RuleTypeStr = Literal["delivery_time", "pickup_time", "processing_time", "response_time"]
RulePriorityStr = Literal["low", "medium", "high", "critical"]
ViolationStatusStr = Literal["detected", "processing", "resolved", "escalated"]
ActionTypeStr = Literal["email_alert", "webhook", "smart_contract", "penalty"]


# ========== Request DTOs ==========

class ActionBagDTO(BaseModel):
    """Remedial actions to run when a rule is breached."""
    alert_emails: Optional[List[str]] = Field(None, description="Alert email recipients")
    webhook_url: Optional[str] = Field(None, description="Webhook notified on breach")
    smart_contract_address: Optional[str] = Field(None, description="Contract receiving on-chain reports")
    penalty_amount: Optional[float] = Field(None, ge=0, description="Penalty charged to the customer")
    escalation_level: Optional[int] = Field(None, ge=1, description="Escalation level reported to channels")

    @field_validator("webhook_url")
    @classmethod
    def validate_webhook_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError("webhook_url must be an http(s) URL")
        return v

    @field_validator("alert_emails")
    @classmethod
    def validate_alert_emails(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is not None:
            for address in v:
                if "@" not in address:
                    raise ValueError(f"invalid email address: {address}")
        return v

    def to_bag(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class RuleConditionsDTO(BaseModel):
    """Conjunctive shipment filter; absent keys do not constrain."""
    model_config = ConfigDict(extra="allow")

    priority: Optional[str] = Field(None, description="Exact shipment priority match")
    origin: Optional[str] = Field(None, description="Case-insensitive substring of the origin")

    def to_conditions(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class SLARuleCreateDTO(BaseModel):
    """DTO for creating an SLA rule."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    rule_type: RuleTypeStr
    priority: RulePriorityStr = "medium"
    threshold_minutes: int = Field(..., ge=0, description="Allowed duration in minutes")
    grace_period_minutes: int = Field(default=0, ge=0, description="Tolerated delay before a breach is actionable")
    conditions: RuleConditionsDTO = Field(default_factory=RuleConditionsDTO)
    actions: ActionBagDTO = Field(default_factory=ActionBagDTO)
    is_active: bool = True


class SLARuleUpdateDTO(BaseModel):
    """DTO for a partial SLA rule update."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    rule_type: Optional[RuleTypeStr] = None
    priority: Optional[RulePriorityStr] = None
    threshold_minutes: Optional[int] = Field(None, ge=0)
    grace_period_minutes: Optional[int] = Field(None, ge=0)
    conditions: Optional[RuleConditionsDTO] = None
    actions: Optional[ActionBagDTO] = None
    is_active: Optional[bool] = None


class ViolationQueryDTO(BaseModel):
    """Query parameters for the violation listing."""
    status: Optional[ViolationStatusStr] = None
    rule_id: Optional[str] = None
    shipment_id: Optional[str] = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    def filters(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude={"limit", "offset"})


# ========== Response DTOs ==========

class SLARuleResponse(BaseModel):
    """Response model for an SLA rule."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    rule_type: RuleTypeStr
    priority: RulePriorityStr
    threshold_minutes: int
    grace_period_minutes: int
    conditions: Dict[str, Any] = Field(default_factory=dict)
    actions: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MonitoringResultResponse(BaseModel):
    """Verdict for one evaluated (shipment, rule) pair."""
    model_config = ConfigDict(from_attributes=True)

    shipment_id: str
    tracking_number: str
    rule_id: str
    rule_name: str
    is_violated: bool
    delay_minutes: Optional[int] = Field(None, description="Breach magnitude, set only when violated")
    expected_time: datetime
    actual_time: Optional[datetime] = None
    status: str = Field(..., description="Shipment status at evaluation time")


class ActionExecutionResponse(BaseModel):
    """Outcome of one remedial action channel."""
    model_config = ConfigDict(from_attributes=True)

    action_type: ActionTypeStr
    success: bool
    message: str
    timestamp: datetime
    details: Optional[Dict[str, Any]] = None


class ViolationResponse(BaseModel):
    """Response model for an SLA violation."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    shipment_id: str
    rule_id: str
    status: ViolationStatusStr
    delay_minutes: int
    detected_at: datetime
    resolved_at: Optional[datetime] = None
    breach_cleared_at: Optional[datetime] = None
    actions_taken: List[Dict[str, Any]] = Field(default_factory=list)
    notes: Optional[str] = None


class ViolationListResponse(BaseModel):
    violations: List[ViolationResponse]
    count: int


class ViolationSummaryResponse(BaseModel):
    """Aggregate counts, rates and breakdowns over violations."""
    model_config = ConfigDict(from_attributes=True)

    total_violations: int
    active_violations: int
    resolved_violations: int
    escalated_violations: int
    average_delay_minutes: float
    resolution_rate: float = Field(..., description="Percentage of violations resolved")
    violations_by_priority: Dict[str, int]
    violations_by_type: Dict[str, int]
