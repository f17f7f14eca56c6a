"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for the enforcement module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, Uuid, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from sla_enforcer.infrastructure.database import Base
from sla_enforcer.config import RulePriority, ShipmentPriority, ShipmentStatus, ViolationStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShipmentModel(Base):
    """
    Database model for Shipment.

    Maps to the 'shipments' table. The table is owned by the shipment
    module; enforcement only reads it.
    """
    __tablename__ = "shipments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tracking_number: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)

    status: Mapped[str] = mapped_column(String(50), nullable=False, default=ShipmentStatus.CREATED, index=True)
    priority: Mapped[str] = mapped_column(String(50), nullable=False, default=ShipmentPriority.STANDARD)
    origin: Mapped[str] = mapped_column(String(255), nullable=False)
    destination: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # Lifecycle timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expected_delivery_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_delivery_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class SLARuleModel(Base):
    """
    Database model for SLA rules.

    Maps to the 'sla_rules' table.
    """
    __tablename__ = "sla_rules"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    rule_type: Mapped[str] = mapped_column(String(50), nullable=False)
    priority: Mapped[str] = mapped_column(String(50), nullable=False, default=RulePriority.MEDIUM)
    threshold_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    grace_period_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Free-form filter and action bag
    conditions: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    actions: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class SLAViolationModel(Base):
    """
    Database model for SLA violations.

    Maps to the 'sla_violations' table. At most one episode per
    (shipment, rule) pair is tracked at a time: rows whose breach has not
    been cleared are unique on the pair.
    """
    __tablename__ = "sla_violations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    shipment_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("shipments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    rule_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("sla_rules.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    status: Mapped[str] = mapped_column(String(50), nullable=False, default=ViolationStatus.DETECTED, index=True)
    delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    breach_cleared_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Append-only log of channel outcomes
    actions_taken: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index(
            "uq_sla_violations_tracked_pair",
            "shipment_id",
            "rule_id",
            unique=True,
            postgresql_where=text("breach_cleared_at IS NULL"),
            sqlite_where=text("breach_cleared_at IS NULL"),
        ),
    )


class SLAPenaltyModel(Base):
    """
    Database model for assessed penalties.

    Maps to the 'sla_penalties' table.
    """
    __tablename__ = "sla_penalties"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    violation_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("sla_violations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    shipment_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    customer_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    amount: Mapped[float] = mapped_column(Float, nullable=False)
    reason: Mapped[str] = mapped_column(String(500), nullable=False)
    delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    assessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
