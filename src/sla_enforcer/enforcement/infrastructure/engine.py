"""
SLA Enforcement Engine
=======================

Composition root for SLA enforcement.

Wires repositories, services and channels per database session, owns the
keyed lock shared by every dispatch path and the monitoring scheduler.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sla_enforcer.config import Settings, get_settings
from sla_enforcer.enforcement.application import (
    SLAActionService,
    SLAMonitoringService,
    ViolationQueryService,
    ViolationReconciler,
)
from sla_enforcer.enforcement.domain import (
    ActionExecutionResult,
    MonitoringResult,
    ViolationSummary,
    utc_now,
)
from sla_enforcer.enforcement.infrastructure.external import (
    EmailAlertChannel,
    MonitoringScheduler,
    PenaltyChannel,
    SmartContractChannel,
    WebhookChannel,
)
from sla_enforcer.enforcement.infrastructure.repositories import (
    SQLAlchemyShipmentRepository,
    SQLAlchemySLARuleRepository,
    SQLAlchemyViolationRepository,
)
from sla_enforcer.shared.infrastructure.locking import KeyedLock
from sla_enforcer.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)


@dataclass
class _SessionServices:
    monitoring: SLAMonitoringService
    actions: SLAActionService
    queries: ViolationQueryService


class SLAEnforcementEngine:
    """
    Entry point for monitoring passes, reporting and manual retriggers.

    Usage:
        engine = SLAEnforcementEngine(get_session_maker())
        await engine.start()
        results = await engine.run_monitoring()
        await engine.stop()
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        email_channel: Optional[EmailAlertChannel] = None,
        webhook_channel: Optional[WebhookChannel] = None,
        smart_contract_channel: Optional[SmartContractChannel] = None,
        clock=utc_now
    ):
        self._session_maker = session_maker
        self._settings = settings or get_settings()
        self._clock = clock
        self._locks = KeyedLock()

        timeout = self._settings.action_channel_timeout_seconds
        self._email_channel = email_channel or EmailAlertChannel(
            api_key=self._settings.sendgrid_api_key,
            from_email=self._settings.alert_from_email,
        )
        self._webhook_channel = webhook_channel or WebhookChannel(timeout_seconds=timeout)
        self._smart_contract_channel = smart_contract_channel or SmartContractChannel(
            gateway_url=self._settings.contract_gateway_url,
            timeout_seconds=timeout,
        )
        self._penalty_channel = PenaltyChannel(session_maker, clock=self._clock)
        self._scheduler = MonitoringScheduler(self._settings.monitoring_interval_seconds)

    @property
    def locks(self) -> KeyedLock:
        return self._locks

    @property
    def scheduler(self) -> MonitoringScheduler:
        return self._scheduler

    def _build_services(self, session: AsyncSession) -> _SessionServices:
        rule_repo = SQLAlchemySLARuleRepository(session)
        shipment_repo = SQLAlchemyShipmentRepository(session)
        violation_repo = SQLAlchemyViolationRepository(session)

        actions = SLAActionService(
            violation_repository=violation_repo,
            rule_repository=rule_repo,
            shipment_repository=shipment_repo,
            channels=[
                self._email_channel,
                self._webhook_channel,
                self._smart_contract_channel,
                self._penalty_channel,
            ],
            locks=self._locks,
            channel_timeout_seconds=self._settings.action_channel_timeout_seconds,
            escalate_when_all_channels_fail=self._settings.escalate_when_all_channels_fail,
            clock=self._clock,
        )
        reconciler = ViolationReconciler(violation_repo, actions, self._locks, clock=self._clock)
        monitoring = SLAMonitoringService(
            rule_repo, shipment_repo, violation_repo, reconciler, clock=self._clock
        )
        return _SessionServices(monitoring, actions, ViolationQueryService(violation_repo))

    # ========== Operations ==========

    async def run_monitoring(self, now: Optional[datetime] = None) -> List[MonitoringResult]:
        """Run one monitoring pass and reconcile every breach it finds."""
        async with self._session_maker() as session:
            services = self._build_services(session)
            return await services.monitoring.run_monitoring(now)

    async def get_monitoring_results(
        self,
        shipment_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[MonitoringResult]:
        async with self._session_maker() as session:
            services = self._build_services(session)
            return await services.monitoring.get_monitoring_results(shipment_id, rule_id, now)

    async def get_violation_summary(
        self,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None
    ) -> ViolationSummary:
        async with self._session_maker() as session:
            services = self._build_services(session)
            return await services.queries.get_violation_summary(from_date, to_date)

    async def retrigger_actions(self, violation_id: str) -> List[ActionExecutionResult]:
        async with self._session_maker() as session:
            services = self._build_services(session)
            return await services.actions.retrigger_actions(violation_id)

    # ========== Lifecycle ==========

    async def _scheduled_pass(self) -> None:
        """Scheduler job; a failing pass is logged and never propagates."""
        try:
            with log_latency(logger, "sla_monitoring_pass", trigger="scheduled"):
                results = await self.run_monitoring()
            logger.info(
                "Scheduled SLA monitoring pass finished",
                extra={"evaluated": len(results), "violations": sum(r.is_violated for r in results)}
            )
        except Exception as e:
            logger.error("Scheduled SLA monitoring pass failed", extra={"error": str(e)}, exc_info=True)

    async def start(self) -> None:
        if not self._settings.scheduler_enabled:
            logger.info("SLA monitoring scheduler disabled")
            return
        await self._scheduler.start(self._scheduled_pass)

    async def stop(self) -> None:
        await self._scheduler.stop()
        await self._webhook_channel.close()
        await self._smart_contract_channel.close()
