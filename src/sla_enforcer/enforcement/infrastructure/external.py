"""
SLA External Service Integrations
==================================

External services used by SLA enforcement:
- Remedial action channels (email, webhook, smart contract, penalty)
- Circuit breaker guarding outbound HTTP
- APScheduler for the periodic monitoring pass
- YAML loader for the default rule set
"""

import asyncio
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import sendgrid
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from sendgrid.helpers.mail import Mail
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sla_enforcer.config import ActionType
from sla_enforcer.core import ChannelException, ConfigurationException
from sla_enforcer.enforcement.application import IActionChannel, ViolationContext
from sla_enforcer.enforcement.application.dto import SLARuleCreateDTO
from sla_enforcer.enforcement.domain import (
    ActionExecutionResult,
    EmailAlertAction,
    PenaltyAction,
    SLAPenalty,
    SmartContractAction,
    WebhookAction,
    utc_now,
)
from sla_enforcer.enforcement.infrastructure.repositories import SQLAlchemyPenaltyRepository
from sla_enforcer.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if self._clock() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()

        # A failed trial call re-opens immediately
        if self._failure_count >= self.failure_threshold or self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


# ========== Action Channels ==========

class EmailAlertChannel(IActionChannel):
    """
    Alert emails through SendGrid.

    Without an API key the delivery is simulated and logged.
    """

    action_type = ActionType.EMAIL_ALERT

    def __init__(self, api_key: Optional[str] = None, from_email: str = "sla-alerts@freight.example.com"):
        self._api_key = api_key
        self._from_email = from_email

    def _build_subject(self, context: ViolationContext) -> str:
        return (
            f"SLA violation: {context.shipment.tracking_number} "
            f"({context.rule.name}, level {context.escalation_level})"
        )

    def _build_body(self, context: ViolationContext) -> str:
        shipment = context.shipment
        return (
            f"<p>Shipment <strong>{shipment.tracking_number}</strong> breached SLA rule "
            f"<strong>{context.rule.name}</strong> ({context.rule.rule_type}).</p>"
            f"<p>Delay: {context.violation.delay_minutes} minutes<br>"
            f"Route: {shipment.origin} &rarr; {shipment.destination}<br>"
            f"Status: {shipment.status}<br>"
            f"Escalation level: {context.escalation_level}</p>"
        )

    def _send(self, message: Mail) -> int:
        client = sendgrid.SendGridAPIClient(api_key=self._api_key)
        return client.send(message).status_code

    async def execute(self, action: EmailAlertAction, context: ViolationContext) -> ActionExecutionResult:
        if not action.recipients:
            raise ConfigurationException("Email alert has no recipients")

        subject = self._build_subject(context)
        if not self._api_key:
            logger.info(
                "SendGrid not configured, logging SLA alert email",
                extra={
                    "recipients": action.recipients,
                    "subject": subject,
                    "violation_id": context.violation.id
                }
            )
            return ActionExecutionResult(
                action_type=self.action_type,
                success=True,
                message=f"Alert logged for {len(action.recipients)} recipient(s)",
                details={"recipients": action.recipients, "delivery": "simulated"},
            )

        message = Mail(
            from_email=self._from_email,
            to_emails=action.recipients,
            subject=subject,
            html_content=self._build_body(context),
        )
        # sendgrid is blocking
        status_code = await asyncio.to_thread(self._send, message)
        if status_code not in (200, 201, 202):
            raise ChannelException(self.action_type, f"SendGrid returned {status_code}")

        logger.info(
            "SLA alert email sent",
            extra={"recipients": action.recipients, "violation_id": context.violation.id}
        )
        return ActionExecutionResult(
            action_type=self.action_type,
            success=True,
            message=f"Alert sent to {len(action.recipients)} recipient(s)",
            details={"recipients": action.recipients, "delivery": "sendgrid"},
        )


class WebhookChannel(IActionChannel):
    """
    Webhook notifications with a circuit breaker.

    Any non-2xx response is a failure.
    """

    action_type = ActionType.WEBHOOK

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        timeout_seconds: float = 10.0
    ):
        self._http_client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout_seconds
        self._circuit_breaker = circuit_breaker or CircuitBreaker(failure_threshold=5, recovery_timeout=60)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    @staticmethod
    def build_payload(context: ViolationContext) -> Dict[str, Any]:
        violation, rule, shipment = context.violation, context.rule, context.shipment
        return {
            "violation_id": violation.id,
            "shipment_id": shipment.id,
            "tracking_number": shipment.tracking_number,
            "rule_name": rule.name,
            "rule_type": rule.rule_type,
            "priority": rule.priority,
            "escalation_level": context.escalation_level,
            "delay_minutes": violation.delay_minutes,
            "detected_at": violation.detected_at.isoformat(),
            "shipment_details": shipment.snapshot(),
        }

    async def execute(self, action: WebhookAction, context: ViolationContext) -> ActionExecutionResult:
        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Circuit breaker open, skipping webhook",
                extra={"url": action.url, "violation_id": context.violation.id}
            )
            raise ChannelException(self.action_type, "circuit breaker open")

        client = await self._get_client()
        try:
            response = await client.post(action.url, json=self.build_payload(context))
        except httpx.HTTPError as e:
            self._circuit_breaker.record_failure()
            raise ChannelException(self.action_type, f"request to {action.url} failed: {e}")

        if not response.is_success:
            self._circuit_breaker.record_failure()
            raise ChannelException(
                self.action_type,
                f"{action.url} returned {response.status_code}",
                {"status_code": response.status_code}
            )

        self._circuit_breaker.record_success()
        logger.info(
            "Webhook notification sent",
            extra={"url": action.url, "violation_id": context.violation.id}
        )
        return ActionExecutionResult(
            action_type=self.action_type,
            success=True,
            message=f"Webhook delivered ({response.status_code})",
            details={"url": action.url, "status_code": response.status_code},
        )

    async def close(self) -> None:
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None


class SmartContractChannel(IActionChannel):
    """
    On-chain violation reports.

    Posts a reportSLAViolation call to the contract gateway when one is
    configured; otherwise the call is simulated and logged.
    """

    action_type = ActionType.SMART_CONTRACT
    method = "reportSLAViolation"

    def __init__(
        self,
        gateway_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 10.0
    ):
        self._gateway_url = gateway_url
        self._http_client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout_seconds

    def build_call(self, action: SmartContractAction, context: ViolationContext) -> Dict[str, Any]:
        return {
            "contract_address": action.contract_address,
            "method": self.method,
            "args": {
                "shipment_id": context.shipment.id,
                "violation_id": context.violation.id,
                "delay_minutes": context.violation.delay_minutes,
                "penalty_amount": action.penalty_amount,
            },
        }

    async def execute(self, action: SmartContractAction, context: ViolationContext) -> ActionExecutionResult:
        call = self.build_call(action, context)

        if not self._gateway_url:
            logger.info(
                "Contract gateway not configured, logging contract call",
                extra={"contract_call": call, "violation_id": context.violation.id}
            )
            return ActionExecutionResult(
                action_type=self.action_type,
                success=True,
                message=f"{self.method} recorded for {action.contract_address}",
                details={**call, "delivery": "simulated"},
            )

        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await self._http_client.post(self._gateway_url, json=call)
        except httpx.HTTPError as e:
            raise ChannelException(self.action_type, f"contract gateway request failed: {e}")
        if not response.is_success:
            raise ChannelException(self.action_type, f"contract gateway returned {response.status_code}")

        logger.info(
            "Smart contract violation reported",
            extra={"contract_address": action.contract_address, "violation_id": context.violation.id}
        )
        return ActionExecutionResult(
            action_type=self.action_type,
            success=True,
            message=f"{self.method} submitted to {action.contract_address}",
            details=call,
        )

    async def close(self) -> None:
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None


class PenaltyChannel(IActionChannel):
    """
    Records a monetary penalty against the shipment's customer.

    The penalty is written and committed in its own session; a failed
    write never touches the dispatcher's unit of work.
    """

    action_type = ActionType.PENALTY

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], clock: Callable = utc_now):
        self._session_maker = session_maker
        self._clock = clock

    async def execute(self, action: PenaltyAction, context: ViolationContext) -> ActionExecutionResult:
        async with self._session_maker() as session:
            penalty = await SQLAlchemyPenaltyRepository(session).create(SLAPenalty(
                violation_id=context.violation.id,
                shipment_id=context.shipment.id,
                customer_id=context.shipment.customer_id,
                amount=action.amount,
                reason=f"SLA rule '{context.rule.name}' breached by {context.violation.delay_minutes} minutes",
                delay_minutes=context.violation.delay_minutes,
                assessed_at=self._clock(),
            ))
            await session.commit()

        logger.info(
            "SLA penalty recorded",
            extra={
                "penalty_id": penalty.id,
                "customer_id": penalty.customer_id,
                "amount": penalty.amount
            }
        )
        return ActionExecutionResult(
            action_type=self.action_type,
            success=True,
            message=f"Penalty of {action.amount:.2f} recorded for customer {penalty.customer_id}",
            details={"penalty_id": penalty.id, "amount": action.amount},
        )


# ========== Scheduling ==========

class MonitoringScheduler:
    """
    Wrapper for APScheduler running the periodic monitoring pass.

    Manages the lifecycle of the scheduler and its single job.
    """

    job_id = "sla_monitoring"

    def __init__(self, interval_seconds: int = 300):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("SLA monitoring scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id=self.job_id,
            name="SLA Monitoring Job",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info(
            "SLA monitoring scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        self._running = False
        logger.info("SLA monitoring scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def get_job(self):
        return self._scheduler.get_job(self.job_id) if self._scheduler else None


# ========== Default Rules ==========

class DefaultRulesLoader:
    """Loads the default SLA rule set from YAML."""

    def __init__(self, path: Path):
        self._path = Path(path)

    def load(self) -> List[SLARuleCreateDTO]:
        """
        Parse the rules file.

        Raises:
            ConfigurationException: If the file is missing or malformed
        """
        if not self._path.exists():
            raise ConfigurationException(
                f"Default SLA rules file not found: {self._path}",
                {"path": str(self._path)}
            )

        with open(self._path, "r") as f:
            data = yaml.safe_load(f) or {}

        raw_rules = data.get("rules", []) if isinstance(data, dict) else data
        if not isinstance(raw_rules, list):
            raise ConfigurationException(f"'rules' in {self._path} must be a list")

        try:
            rules = [SLARuleCreateDTO.model_validate(r) for r in raw_rules]
        except ValidationError as e:
            raise ConfigurationException(
                f"Invalid default SLA rule in {self._path}",
                {"errors": str(e)}
            )

        logger.info("Loaded default SLA rules", extra={"path": str(self._path), "count": len(rules)})
        return rules
