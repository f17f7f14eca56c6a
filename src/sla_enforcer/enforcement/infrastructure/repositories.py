"""
SLA Infrastructure Repositories
=================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database. Every timestamp leaving this layer is UTC-aware.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Tuple
from uuid import UUID, uuid4

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sla_enforcer.config import CLOSED_VIOLATION_STATUSES
from sla_enforcer.core import RepositoryException
from sla_enforcer.enforcement.application import (
    IPenaltyRepository,
    IShipmentRepository,
    ISLARuleRepository,
    IViolationRepository,
)
from sla_enforcer.enforcement.domain import (
    CandidateCriteria,
    Shipment,
    SLAPenalty,
    SLARule,
    SLAViolation,
    ensure_utc,
)
from sla_enforcer.enforcement.infrastructure.models import (
    ShipmentModel,
    SLAPenaltyModel,
    SLARuleModel,
    SLAViolationModel,
)
from sla_enforcer.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _as_uuid(value: Optional[str]) -> Optional[UUID]:
    if value is None:
        return None
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _to_rule(model: SLARuleModel) -> SLARule:
    return SLARule(
        id=str(model.id),
        name=model.name,
        description=model.description,
        rule_type=model.rule_type,
        priority=model.priority,
        threshold_minutes=model.threshold_minutes,
        grace_period_minutes=model.grace_period_minutes,
        conditions=dict(model.conditions or {}),
        actions=dict(model.actions or {}),
        is_active=model.is_active,
        created_at=ensure_utc(model.created_at),
        updated_at=ensure_utc(model.updated_at),
    )


def _to_shipment(model: ShipmentModel) -> Shipment:
    return Shipment(
        id=str(model.id),
        tracking_number=model.tracking_number,
        status=model.status,
        priority=model.priority,
        origin=model.origin,
        destination=model.destination,
        customer_id=model.customer_id,
        created_at=ensure_utc(model.created_at),
        expected_delivery_at=ensure_utc(model.expected_delivery_at),
        picked_up_at=ensure_utc(model.picked_up_at),
        actual_delivery_at=ensure_utc(model.actual_delivery_at),
    )


def _to_violation(model: SLAViolationModel) -> SLAViolation:
    return SLAViolation(
        id=str(model.id),
        shipment_id=str(model.shipment_id),
        rule_id=str(model.rule_id),
        status=model.status,
        delay_minutes=model.delay_minutes,
        detected_at=ensure_utc(model.detected_at),
        resolved_at=ensure_utc(model.resolved_at),
        breach_cleared_at=ensure_utc(model.breach_cleared_at),
        actions_taken=list(model.actions_taken or []),
        notes=model.notes,
    )


class SQLAlchemySLARuleRepository(ISLARuleRepository):
    """
    SQLAlchemy implementation of the SLA rule repository.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _get_model(self, rule_id: str) -> Optional[SLARuleModel]:
        rule_uuid = _as_uuid(rule_id)
        if rule_uuid is None:
            return None
        return await self._session.get(SLARuleModel, rule_uuid)

    async def get_by_id(self, rule_id: str) -> Optional[SLARule]:
        model = await self._get_model(rule_id)
        return _to_rule(model) if model else None

    async def get_by_name(self, name: str) -> Optional[SLARule]:
        stmt = select(SLARuleModel).where(SLARuleModel.name == name)
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _to_rule(model) if model else None

    async def list(self, is_active: Optional[bool] = None) -> List[SLARule]:
        stmt = select(SLARuleModel)
        if is_active is not None:
            stmt = stmt.where(SLARuleModel.is_active == is_active)
        stmt = stmt.order_by(SLARuleModel.created_at.desc())

        result = await self._session.execute(stmt)
        return [_to_rule(m) for m in result.scalars().all()]

    async def create(self, rule: SLARule) -> SLARule:
        model = SLARuleModel(
            id=_as_uuid(rule.id) or uuid4(),
            name=rule.name,
            description=rule.description,
            rule_type=rule.rule_type,
            priority=rule.priority,
            threshold_minutes=rule.threshold_minutes,
            grace_period_minutes=rule.grace_period_minutes,
            conditions=dict(rule.conditions or {}),
            actions=dict(rule.actions or {}),
            is_active=rule.is_active,
        )
        self._session.add(model)
        try:
            await self._session.flush()
        except IntegrityError as e:
            raise RepositoryException(f"Could not create SLA rule '{rule.name}': {e.orig}")

        return _to_rule(model)

    async def update(self, rule: SLARule) -> SLARule:
        model = await self._get_model(rule.id)
        if not model:
            raise RepositoryException(f"SLA rule {rule.id} not found")

        model.name = rule.name
        model.description = rule.description
        model.rule_type = rule.rule_type
        model.priority = rule.priority
        model.threshold_minutes = rule.threshold_minutes
        model.grace_period_minutes = rule.grace_period_minutes
        # New dicts so the JSON columns register the change
        model.conditions = dict(rule.conditions or {})
        model.actions = dict(rule.actions or {})
        model.is_active = rule.is_active

        await self._session.flush()
        await self._session.refresh(model)
        return _to_rule(model)

    async def delete(self, rule_id: str) -> bool:
        model = await self._get_model(rule_id)
        if not model:
            return False
        await self._session.delete(model)
        await self._session.flush()
        return True


class SQLAlchemyShipmentRepository(IShipmentRepository):
    """
    Read-only access to the shipments table.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, shipment_id: str) -> Optional[Shipment]:
        shipment_uuid = _as_uuid(shipment_id)
        if shipment_uuid is None:
            return None
        model = await self._session.get(ShipmentModel, shipment_uuid)
        return _to_shipment(model) if model else None

    async def find_candidates(self, criteria: CandidateCriteria) -> List[Shipment]:
        """Translate candidate criteria to a single filtered query."""
        conditions = []
        if criteria.excluded_statuses:
            conditions.append(ShipmentModel.status.not_in(criteria.excluded_statuses))
        if criteria.required_statuses is not None:
            conditions.append(ShipmentModel.status.in_(criteria.required_statuses))
        if criteria.expected_before is not None:
            conditions.append(ShipmentModel.expected_delivery_at < criteria.expected_before)
        if criteria.priority is not None:
            conditions.append(ShipmentModel.priority == criteria.priority)
        if criteria.origin_contains is not None:
            conditions.append(ShipmentModel.origin.icontains(criteria.origin_contains, autoescape=True))

        stmt = select(ShipmentModel)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        stmt = stmt.order_by(ShipmentModel.created_at.asc())

        result = await self._session.execute(stmt)
        return [_to_shipment(m) for m in result.scalars().all()]


class SQLAlchemyViolationRepository(IViolationRepository):
    """
    SQLAlchemy implementation of the SLA violation repository.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _get_model(self, violation_id: str) -> Optional[SLAViolationModel]:
        violation_uuid = _as_uuid(violation_id)
        if violation_uuid is None:
            return None
        return await self._session.get(SLAViolationModel, violation_uuid, populate_existing=True)

    async def get_by_id(self, violation_id: str) -> Optional[SLAViolation]:
        model = await self._get_model(violation_id)
        return _to_violation(model) if model else None

    async def find_tracked(self, shipment_id: str, rule_id: str) -> Optional[SLAViolation]:
        shipment_uuid, rule_uuid = _as_uuid(shipment_id), _as_uuid(rule_id)
        if shipment_uuid is None or rule_uuid is None:
            return None

        stmt = select(SLAViolationModel).where(
            SLAViolationModel.shipment_id == shipment_uuid,
            SLAViolationModel.rule_id == rule_uuid,
            SLAViolationModel.breach_cleared_at.is_(None),
        ).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _to_violation(model) if model else None

    async def create_if_absent(self, violation: SLAViolation) -> Tuple[SLAViolation, bool]:
        """
        Insert a new episode, relying on the tracked-pair unique index.

        When a concurrent writer won the race the unit of work is rolled
        back and the stored episode is returned instead.
        """
        model = SLAViolationModel(
            id=uuid4(),
            shipment_id=_as_uuid(violation.shipment_id),
            rule_id=_as_uuid(violation.rule_id),
            status=violation.status,
            delay_minutes=violation.delay_minutes,
            detected_at=violation.detected_at,
            actions_taken=list(violation.actions_taken),
            notes=violation.notes,
        )
        self._session.add(model)
        try:
            await self._session.flush()
        except IntegrityError:
            await self._session.rollback()
            existing = await self.find_tracked(violation.shipment_id, violation.rule_id)
            if existing is None:
                raise RepositoryException(
                    f"Could not record violation for shipment {violation.shipment_id}"
                    f" and rule {violation.rule_id}"
                )
            logger.info(
                "Violation already tracked by a concurrent writer",
                extra={"violation_id": existing.id, "shipment_id": violation.shipment_id}
            )
            return existing, False

        return _to_violation(model), True

    async def save(self, violation: SLAViolation) -> SLAViolation:
        model = await self._get_model(violation.id)
        if not model:
            raise RepositoryException(f"SLA violation {violation.id} not found")

        model.status = violation.status
        model.delay_minutes = violation.delay_minutes
        model.resolved_at = violation.resolved_at
        model.breach_cleared_at = violation.breach_cleared_at
        model.actions_taken = list(violation.actions_taken)
        model.notes = violation.notes

        await self._session.flush()
        return violation

    async def list(self, filters: dict, limit: int = 100, offset: int = 0) -> List[SLAViolation]:
        """List violations with filters, newest first."""
        stmt = select(SLAViolationModel)

        conditions = []
        if "status" in filters:
            status = filters["status"]
            if isinstance(status, list):
                conditions.append(SLAViolationModel.status.in_(status))
            else:
                conditions.append(SLAViolationModel.status == status)

        for key, column in (("rule_id", SLAViolationModel.rule_id),
                            ("shipment_id", SLAViolationModel.shipment_id)):
            if key in filters:
                value = _as_uuid(filters[key])
                if value is None:
                    return []
                conditions.append(column == value)

        if conditions:
            stmt = stmt.where(and_(*conditions))

        stmt = stmt.order_by(SLAViolationModel.detected_at.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return [_to_violation(m) for m in result.scalars().all()]

    async def list_with_rule_info(
        self,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None
    ) -> List[Tuple[SLAViolation, str, str]]:
        stmt = (
            select(SLAViolationModel, SLARuleModel.priority, SLARuleModel.rule_type)
            .join(SLARuleModel, SLARuleModel.id == SLAViolationModel.rule_id)
        )
        if from_date is not None:
            stmt = stmt.where(SLAViolationModel.detected_at >= ensure_utc(from_date))
        if to_date is not None:
            stmt = stmt.where(SLAViolationModel.detected_at <= ensure_utc(to_date))

        result = await self._session.execute(stmt)
        return [
            (_to_violation(model), priority, rule_type)
            for model, priority, rule_type in result.all()
        ]

    async def clear_breaches(self, rule_id: str, still_violated: Iterable[str], at: datetime) -> int:
        rule_uuid = _as_uuid(rule_id)
        if rule_uuid is None:
            return 0

        stmt = update(SLAViolationModel).where(
            SLAViolationModel.rule_id == rule_uuid,
            SLAViolationModel.breach_cleared_at.is_(None),
            SLAViolationModel.status.in_(CLOSED_VIOLATION_STATUSES),
        )
        violated = [u for u in (_as_uuid(s) for s in still_violated) if u is not None]
        if violated:
            stmt = stmt.where(SLAViolationModel.shipment_id.not_in(violated))

        result = await self._session.execute(
            stmt.values(breach_cleared_at=at).execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()


class SQLAlchemyPenaltyRepository(IPenaltyRepository):
    """
    Penalty ledger backed by the sla_penalties table.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, penalty: SLAPenalty) -> SLAPenalty:
        model = SLAPenaltyModel(
            id=uuid4(),
            violation_id=_as_uuid(penalty.violation_id),
            shipment_id=_as_uuid(penalty.shipment_id),
            customer_id=penalty.customer_id,
            amount=penalty.amount,
            reason=penalty.reason,
            delay_minutes=penalty.delay_minutes,
            assessed_at=penalty.assessed_at,
        )
        self._session.add(model)
        await self._session.flush()

        penalty.id = str(model.id)
        return penalty

    async def list_for_violation(self, violation_id: str) -> List[SLAPenalty]:
        violation_uuid = _as_uuid(violation_id)
        if violation_uuid is None:
            return []

        stmt = (
            select(SLAPenaltyModel)
            .where(SLAPenaltyModel.violation_id == violation_uuid)
            .order_by(SLAPenaltyModel.assessed_at.asc())
        )
        result = await self._session.execute(stmt)
        return [
            SLAPenalty(
                id=str(m.id),
                violation_id=str(m.violation_id),
                shipment_id=str(m.shipment_id),
                customer_id=m.customer_id,
                amount=m.amount,
                reason=m.reason,
                delay_minutes=m.delay_minutes,
                assessed_at=ensure_utc(m.assessed_at),
            )
            for m in result.scalars().all()
        ]
