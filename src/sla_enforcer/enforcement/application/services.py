"""
SLA Application Services
=========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

- SLAMonitoringService: evaluates active rules against candidate shipments
- ViolationReconciler: find-or-create of violation episodes
- SLAActionService: runs the remedial action channels for a violation
- ViolationQueryService: read-side reporting over violations
- SLARuleService: rule CRUD and default rule seeding
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sla_enforcer.config import ACTION_ORDER, ViolationStatus
from sla_enforcer.core import (
    RepositoryException,
    ResourceNotFoundException,
    UnsupportedRuleTypeException,
    ValidationException,
)
from sla_enforcer.enforcement.domain import (
    ActionExecutionResult,
    CandidateCriteria,
    MonitoringResult,
    RuleEvaluator,
    Shipment,
    SLAPenalty,
    SLARule,
    SLAViolation,
    ViolationSummary,
    utc_now,
)
from sla_enforcer.enforcement.application.dto import SLARuleCreateDTO, SLARuleUpdateDTO
from sla_enforcer.shared.infrastructure.locking import KeyedLock
from sla_enforcer.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


# ========== Repository Interfaces (Dependency Inversion) ==========

class ISLARuleRepository(ABC):
    """Interface for SLA rule data access."""

    @abstractmethod
    async def get_by_id(self, rule_id: str) -> Optional[SLARule]:
        """Get rule by ID."""

    @abstractmethod
    async def get_by_name(self, name: str) -> Optional[SLARule]:
        """Get rule by its unique name."""

    @abstractmethod
    async def list(self, is_active: Optional[bool] = None) -> List[SLARule]:
        """List rules, newest first."""

    @abstractmethod
    async def create(self, rule: SLARule) -> SLARule:
        """Create new rule."""

    @abstractmethod
    async def update(self, rule: SLARule) -> SLARule:
        """Update existing rule."""

    @abstractmethod
    async def delete(self, rule_id: str) -> bool:
        """Delete rule; False if it did not exist."""


class IShipmentRepository(ABC):
    """Read-only interface over shipments owned by the shipment module."""

    @abstractmethod
    async def get_by_id(self, shipment_id: str) -> Optional[Shipment]:
        """Get shipment by ID."""

    @abstractmethod
    async def find_candidates(self, criteria: CandidateCriteria) -> List[Shipment]:
        """Shipments matching the candidate criteria of a rule."""


class IViolationRepository(ABC):
    """Interface for SLA violation data access."""

    @abstractmethod
    async def get_by_id(self, violation_id: str) -> Optional[SLAViolation]:
        """Get violation by ID."""

    @abstractmethod
    async def find_tracked(self, shipment_id: str, rule_id: str) -> Optional[SLAViolation]:
        """The episode currently tracked for the pair, if any."""

    @abstractmethod
    async def create_if_absent(self, violation: SLAViolation) -> Tuple[SLAViolation, bool]:
        """
        Insert a new episode unless one is already tracked for its pair.

        Returns the stored episode and whether it was created.
        """

    @abstractmethod
    async def save(self, violation: SLAViolation) -> SLAViolation:
        """Persist changes of an existing violation."""

    @abstractmethod
    async def list(self, filters: dict, limit: int = 100, offset: int = 0) -> List[SLAViolation]:
        """List violations with filters, newest first."""

    @abstractmethod
    async def list_with_rule_info(
        self,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None
    ) -> List[Tuple[SLAViolation, str, str]]:
        """Violations detected in the range with their rule priority and type."""

    @abstractmethod
    async def clear_breaches(self, rule_id: str, still_violated: Iterable[str], at: datetime) -> int:
        """Mark closed episodes of a rule whose shipment left breach as cleared."""

    @abstractmethod
    async def commit(self) -> None:
        """Commit the current unit of work."""

    @abstractmethod
    async def rollback(self) -> None:
        """Discard the current unit of work."""


class IPenaltyRepository(ABC):
    """Interface for the penalty ledger."""

    @abstractmethod
    async def create(self, penalty: SLAPenalty) -> SLAPenalty:
        """Record a penalty."""

    @abstractmethod
    async def list_for_violation(self, violation_id: str) -> List[SLAPenalty]:
        """Penalties recorded for a violation."""


# ========== Action Channels ==========

@dataclass
class ViolationContext:
    """Everything a channel needs to act on a violation."""
    violation: SLAViolation
    rule: SLARule
    shipment: Shipment
    escalation_level: int = 1


class IActionChannel(ABC):
    """A remedial action channel with a success/failure contract."""

    action_type: str

    @abstractmethod
    async def execute(self, action: Any, context: ViolationContext) -> ActionExecutionResult:
        """
        Run the channel for one violation.

        Raise on failure; the dispatcher turns exceptions and timeouts
        into failed results.
        """


# ========== Application Services ==========

class SLAActionService:
    """
    Action dispatcher.

    Runs every channel configured on the violation's rule in a fixed
    order, isolates channel failures and records the outcome on the
    violation.
    """

    def __init__(
        self,
        violation_repository: IViolationRepository,
        rule_repository: ISLARuleRepository,
        shipment_repository: IShipmentRepository,
        channels: Iterable[IActionChannel],
        locks: Optional[KeyedLock] = None,
        channel_timeout_seconds: float = 10.0,
        escalate_when_all_channels_fail: bool = True,
        clock: Clock = utc_now
    ):
        self._violation_repo = violation_repository
        self._rule_repo = rule_repository
        self._shipment_repo = shipment_repository
        self._channels: Dict[str, IActionChannel] = {c.action_type: c for c in channels}
        self._locks = locks or KeyedLock()
        self._timeout = channel_timeout_seconds
        self._escalate_when_all_fail = escalate_when_all_channels_fail
        self._clock = clock

    async def execute_violation_actions(self, violation_id: str) -> List[ActionExecutionResult]:
        """
        Execute all actions for a violation.

        Callers are expected to hold the violation's pair lock.

        Raises:
            ResourceNotFoundException: If the violation does not exist
        """
        violation = await self._violation_repo.get_by_id(violation_id)
        if violation is None:
            raise ResourceNotFoundException("SLA violation", violation_id)

        violation.mark_processing()
        await self._violation_repo.save(violation)
        await self._violation_repo.commit()

        results: List[ActionExecutionResult] = []
        try:
            context = await self._load_context(violation)
            parsed = context.rule.channel_actions()

            for error in parsed.errors:
                logger.warning(
                    "Skipping misconfigured action channel",
                    extra={"violation_id": violation_id, "rule_id": context.rule.id, "error": error}
                )
                violation.add_note(f"Configuration error: {error}")

            ordered = sorted(parsed.actions, key=lambda a: ACTION_ORDER.index(a.kind))
            for action in ordered:
                results.append(await self._run_channel(action, context))

            violation.record_actions(results, {a.kind: a.target for a in ordered})
            failures = [r for r in results if not r.success]
            for failure in failures:
                violation.add_note(failure.message)

            if results and len(failures) == len(results) and self._escalate_when_all_fail:
                violation.escalate("All action channels failed")
            else:
                violation.resolve(self._clock())

            logger.info(
                "Executed violation actions",
                extra={
                    "violation_id": violation_id,
                    "actions": len(results),
                    "failed": len(failures),
                    "status": violation.status
                }
            )
        except Exception as e:
            logger.error(
                "Error executing actions for violation",
                extra={"violation_id": violation_id, "error": str(e)}
            )
            violation.escalate(f"Action execution failed: {e}")

        try:
            await self._violation_repo.save(violation)
            await self._violation_repo.commit()
        except Exception as e:
            logger.error(
                "Failed to record action results",
                extra={"violation_id": violation_id, "error": str(e)}
            )
            await self._violation_repo.rollback()
            violation.escalate(f"Failed to record action results: {e}")
            await self._violation_repo.save(violation)
            await self._violation_repo.commit()
        return results

    async def retrigger_actions(self, violation_id: str) -> List[ActionExecutionResult]:
        """
        Manually re-run the actions for an existing violation.

        Raises:
            ResourceNotFoundException: If the violation does not exist
        """
        violation = await self._violation_repo.get_by_id(violation_id)
        if violation is None:
            raise ResourceNotFoundException("SLA violation", violation_id)

        logger.info("Manually retriggering actions", extra={"violation_id": violation_id})
        async with self._locks.hold(violation.key):
            return await self.execute_violation_actions(violation_id)

    async def _load_context(self, violation: SLAViolation) -> ViolationContext:
        rule = await self._rule_repo.get_by_id(violation.rule_id)
        if rule is None:
            raise RepositoryException(f"SLA rule {violation.rule_id} not found for violation {violation.id}")
        shipment = await self._shipment_repo.get_by_id(violation.shipment_id)
        if shipment is None:
            raise RepositoryException(
                f"Shipment {violation.shipment_id} not found for violation {violation.id}"
            )
        return ViolationContext(
            violation=violation,
            rule=rule,
            shipment=shipment,
            escalation_level=rule.channel_actions().escalation_level,
        )

    async def _run_channel(self, action: Any, context: ViolationContext) -> ActionExecutionResult:
        channel = self._channels.get(action.kind)
        if channel is None:
            return ActionExecutionResult.failure(action.kind, f"No channel registered for {action.kind}")

        try:
            return await asyncio.wait_for(channel.execute(action, context), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Action channel timed out",
                extra={"action_type": action.kind, "violation_id": context.violation.id,
                       "timeout_seconds": self._timeout}
            )
            return ActionExecutionResult.failure(
                action.kind, f"{action.kind} timed out after {self._timeout:g}s"
            )
        except Exception as e:
            logger.warning(
                "Action channel failed",
                extra={"action_type": action.kind, "violation_id": context.violation.id, "error": str(e)}
            )
            # A failed channel must not leave the unit of work unusable
            await self._violation_repo.rollback()
            return ActionExecutionResult.failure(action.kind, f"{action.kind} failed: {e}")


@dataclass
class ReconcileOutcome:
    """What the reconciler did with one violated pair."""
    violation: SLAViolation
    created: bool
    action_results: List[ActionExecutionResult] = field(default_factory=list)


class ViolationReconciler:
    """
    Deduplicates violations across monitoring passes.

    A pair that is already tracked only gets its delay refreshed; a new
    episode is created and dispatched exactly once.
    """

    def __init__(
        self,
        violation_repository: IViolationRepository,
        action_service: SLAActionService,
        locks: KeyedLock,
        clock: Clock = utc_now
    ):
        self._violation_repo = violation_repository
        self._action_service = action_service
        self._locks = locks
        self._clock = clock

    async def reconcile(self, result: MonitoringResult) -> ReconcileOutcome:
        if not result.is_violated or result.delay_minutes is None:
            raise ValueError("Only violated monitoring results can be reconciled")

        async with self._locks.hold((result.shipment_id, result.rule_id)):
            existing = await self._violation_repo.find_tracked(result.shipment_id, result.rule_id)
            if existing is not None:
                return await self._refresh(existing, result.delay_minutes)

            violation, created = await self._violation_repo.create_if_absent(SLAViolation(
                id=None,
                shipment_id=result.shipment_id,
                rule_id=result.rule_id,
                delay_minutes=result.delay_minutes,
                detected_at=self._clock(),
                status=ViolationStatus.DETECTED,
            ))
            if not created:
                return await self._refresh(violation, result.delay_minutes)
            await self._violation_repo.commit()

            logger.warning(
                "SLA violation detected",
                extra={
                    "violation_id": violation.id,
                    "tracking_number": result.tracking_number,
                    "rule_name": result.rule_name,
                    "delay_minutes": result.delay_minutes
                }
            )

            action_results = await self._action_service.execute_violation_actions(violation.id)
            stored = await self._violation_repo.get_by_id(violation.id)
            return ReconcileOutcome(stored or violation, True, action_results)

    async def _refresh(self, violation: SLAViolation, delay_minutes: int) -> ReconcileOutcome:
        violation.update_delay(delay_minutes)
        await self._violation_repo.save(violation)
        await self._violation_repo.commit()
        return ReconcileOutcome(violation, False)


class SLAMonitoringService:
    """
    Monitoring orchestrator.

    One pass loads the active rules, selects candidate shipments per rule,
    evaluates them and hands every breach to the reconciler. Rules are
    isolated from each other: a failing rule is logged and skipped.
    """

    def __init__(
        self,
        rule_repository: ISLARuleRepository,
        shipment_repository: IShipmentRepository,
        violation_repository: IViolationRepository,
        reconciler: ViolationReconciler,
        clock: Clock = utc_now
    ):
        self._rule_repo = rule_repository
        self._shipment_repo = shipment_repository
        self._violation_repo = violation_repository
        self._reconciler = reconciler
        self._clock = clock

    async def run_monitoring(self, now: Optional[datetime] = None) -> List[MonitoringResult]:
        """
        Run one full monitoring pass and reconcile every breach.

        Returns:
            Every evaluated (shipment, rule) pair with its verdict
        """
        now = now or self._clock()
        evaluated = await self._evaluate_active_rules(now)

        results: List[MonitoringResult] = []
        for rule_results in evaluated.values():
            results.extend(rule_results)

        violations = [r for r in results if r.is_violated]
        for result in violations:
            try:
                await self._reconciler.reconcile(result)
            except Exception as e:
                logger.error(
                    "Failed to reconcile SLA violation",
                    extra={"shipment_id": result.shipment_id, "rule_id": result.rule_id, "error": str(e)}
                )
                await self._violation_repo.rollback()

        for rule_id, rule_results in evaluated.items():
            still_violated = {r.shipment_id for r in rule_results if r.is_violated}
            try:
                cleared = await self._violation_repo.clear_breaches(rule_id, still_violated, now)
                await self._violation_repo.commit()
            except Exception as e:
                logger.error(
                    "Failed to clear recovered breaches",
                    extra={"rule_id": rule_id, "error": str(e)}
                )
                continue
            if cleared:
                logger.info("Cleared recovered breaches", extra={"rule_id": rule_id, "cleared": cleared})

        logger.info(
            "Monitoring pass completed",
            extra={"evaluated": len(results), "violations": len(violations)}
        )
        return results

    async def monitor_all_shipments(self, now: Optional[datetime] = None) -> List[MonitoringResult]:
        """Evaluate every active rule without touching the violation store."""
        evaluated = await self._evaluate_active_rules(now or self._clock())
        return [r for rule_results in evaluated.values() for r in rule_results]

    async def monitor_shipments_for_rule(self, rule: SLARule, now: datetime) -> List[MonitoringResult]:
        shipments = await self._shipment_repo.find_candidates(CandidateCriteria.for_rule(rule, now))

        results = []
        for shipment in shipments:
            try:
                results.append(self.evaluate_shipment_against_rule(shipment, rule, now))
            except UnsupportedRuleTypeException as e:
                logger.warning(
                    "Skipping shipment for unsupported rule type",
                    extra={"rule_id": rule.id, "shipment_id": shipment.id, "rule_type": e.rule_type}
                )
        return results

    async def get_monitoring_results(
        self,
        shipment_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[MonitoringResult]:
        """
        Read-only evaluation.

        With both ids a single pair is evaluated (empty for an unsupported
        rule type); otherwise every active rule.

        Raises:
            ResourceNotFoundException: If a given shipment or rule does not exist
        """
        now = now or self._clock()
        if shipment_id and rule_id:
            shipment = await self._shipment_repo.get_by_id(shipment_id)
            if shipment is None:
                raise ResourceNotFoundException("Shipment", shipment_id)
            rule = await self._rule_repo.get_by_id(rule_id)
            if rule is None:
                raise ResourceNotFoundException("SLA rule", rule_id)
            try:
                return [self.evaluate_shipment_against_rule(shipment, rule, now)]
            except UnsupportedRuleTypeException as e:
                logger.warning(
                    "Skipping pair for unsupported rule type",
                    extra={"rule_id": rule.id, "shipment_id": shipment.id, "rule_type": e.rule_type}
                )
                return []

        return await self.monitor_all_shipments(now)

    @staticmethod
    def evaluate_shipment_against_rule(
        shipment: Shipment,
        rule: SLARule,
        now: datetime
    ) -> MonitoringResult:
        evaluation = RuleEvaluator.evaluate(shipment, rule, now)
        return MonitoringResult(
            shipment_id=shipment.id,
            tracking_number=shipment.tracking_number,
            rule_id=rule.id,
            rule_name=rule.name,
            is_violated=evaluation.is_violated,
            delay_minutes=evaluation.delay_minutes if evaluation.is_violated else None,
            expected_time=evaluation.expected_time,
            actual_time=evaluation.actual_time,
            status=shipment.status,
        )

    async def _evaluate_active_rules(self, now: datetime) -> Dict[str, List[MonitoringResult]]:
        """Results per successfully evaluated rule id."""
        active_rules = await self._rule_repo.list(is_active=True)
        if not active_rules:
            logger.warning("No active SLA rules found")
            return {}

        evaluated: Dict[str, List[MonitoringResult]] = {}
        for rule in active_rules:
            try:
                evaluated[rule.id] = await self.monitor_shipments_for_rule(rule, now)
            except Exception as e:
                logger.error(
                    "Error while monitoring SLA rule",
                    extra={"rule_id": rule.id, "rule_name": rule.name, "error": str(e)}
                )
        return evaluated


class ViolationQueryService:
    """Read-side reporting over the violation store."""

    def __init__(self, violation_repository: IViolationRepository):
        self._violation_repo = violation_repository

    async def get_violation_summary(
        self,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None
    ) -> ViolationSummary:
        """
        Aggregate counts and breakdowns, bounded on detected_at (inclusive).
        """
        rows = await self._violation_repo.list_with_rule_info(from_date, to_date)

        summary = ViolationSummary(total_violations=len(rows))
        total_delay = 0
        for violation, rule_priority, rule_type in rows:
            total_delay += violation.delay_minutes
            if violation.is_open:
                summary.active_violations += 1
            elif violation.status == ViolationStatus.RESOLVED:
                summary.resolved_violations += 1
            elif violation.status == ViolationStatus.ESCALATED:
                summary.escalated_violations += 1

            by_priority = summary.violations_by_priority
            by_priority[rule_priority] = by_priority.get(rule_priority, 0) + 1
            by_type = summary.violations_by_type
            by_type[rule_type] = by_type.get(rule_type, 0) + 1

        if rows:
            summary.average_delay_minutes = round(total_delay / len(rows), 2)
        return summary

    async def get_violation(self, violation_id: str) -> SLAViolation:
        violation = await self._violation_repo.get_by_id(violation_id)
        if violation is None:
            raise ResourceNotFoundException("SLA violation", violation_id)
        return violation

    async def list_violations(self, filters: dict, limit: int = 100, offset: int = 0) -> List[SLAViolation]:
        return await self._violation_repo.list(filters, limit=limit, offset=offset)


class SLARuleService:
    """Rule CRUD for operators."""

    def __init__(self, rule_repository: ISLARuleRepository):
        self._rule_repo = rule_repository

    async def create_rule(self, data: SLARuleCreateDTO) -> SLARule:
        if await self._rule_repo.get_by_name(data.name) is not None:
            raise ValidationException(f"SLA rule named '{data.name}' already exists", {"name": data.name})

        rule = SLARule(
            id="",
            name=data.name,
            description=data.description,
            rule_type=data.rule_type,
            priority=data.priority,
            threshold_minutes=data.threshold_minutes,
            grace_period_minutes=data.grace_period_minutes,
            conditions=data.conditions.to_conditions(),
            actions=data.actions.to_bag(),
            is_active=data.is_active,
        )
        created = await self._rule_repo.create(rule)
        logger.info("SLA rule created", extra={"rule_id": created.id, "rule_name": created.name})
        return created

    async def list_rules(self, is_active: Optional[bool] = None) -> List[SLARule]:
        return await self._rule_repo.list(is_active=is_active)

    async def get_rule(self, rule_id: str) -> SLARule:
        rule = await self._rule_repo.get_by_id(rule_id)
        if rule is None:
            raise ResourceNotFoundException("SLA rule", rule_id)
        return rule

    async def update_rule(self, rule_id: str, data: SLARuleUpdateDTO) -> SLARule:
        rule = await self.get_rule(rule_id)
        changes = data.model_dump(exclude_unset=True)

        if "name" in changes and changes["name"] != rule.name:
            if await self._rule_repo.get_by_name(changes["name"]) is not None:
                raise ValidationException(
                    f"SLA rule named '{changes['name']}' already exists", {"name": changes["name"]}
                )

        for key, value in changes.items():
            if key == "conditions":
                value = data.conditions.to_conditions() if data.conditions else {}
            elif key == "actions":
                value = data.actions.to_bag() if data.actions else {}
            setattr(rule, key, value)

        return await self._rule_repo.update(rule)

    async def delete_rule(self, rule_id: str) -> None:
        if not await self._rule_repo.delete(rule_id):
            raise ResourceNotFoundException("SLA rule", rule_id)
        logger.info("SLA rule deleted", extra={"rule_id": rule_id})

    async def seed_default_rules(self, defaults: Iterable[SLARuleCreateDTO]) -> List[SLARule]:
        """Create the default rules that do not exist yet (matched by name)."""
        rules = []
        for data in defaults:
            existing = await self._rule_repo.get_by_name(data.name)
            rules.append(existing if existing is not None else await self.create_rule(data))
        return rules
