"""
Monitoring pass tests: orchestrator and reconciler against a real database.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from sla_enforcer.core import ResourceNotFoundException
from sla_enforcer.enforcement.domain import CandidateCriteria, SLARule
from sla_enforcer.enforcement.infrastructure import (
    SQLAlchemyPenaltyRepository,
    SQLAlchemyShipmentRepository,
)
from sla_enforcer.enforcement.infrastructure.models import (
    ShipmentModel,
    SLAPenaltyModel,
    SLAViolationModel,
)

from conftest import NOW


async def _violations(session_maker):
    async with session_maker() as session:
        result = await session.execute(select(SLAViolationModel).order_by(SLAViolationModel.detected_at))
        return result.scalars().all()


@pytest.mark.asyncio
class TestMonitoringPass:
    async def test_no_active_rules_returns_empty(self, engine, make_shipment, make_rule):
        await make_shipment()
        await make_rule(is_active=False)
        assert await engine.run_monitoring() == []

    async def test_breach_creates_one_violation(self, engine, session_maker, make_shipment, make_rule):
        shipment = await make_shipment()
        rule = await make_rule()

        results = await engine.run_monitoring()

        assert len(results) == 1
        result = results[0]
        assert result.is_violated is True
        assert result.delay_minutes == 125
        assert result.shipment_id == str(shipment.id)
        assert result.rule_name == rule.name

        violations = await _violations(session_maker)
        assert len(violations) == 1
        assert violations[0].delay_minutes == 125
        assert violations[0].detected_at.replace(tzinfo=None) == NOW.replace(tzinfo=None)

    async def test_within_grace_reports_no_delay(self, engine, session_maker, make_shipment, make_rule):
        await make_shipment(expected_delivery_at=NOW - timedelta(minutes=45))
        await make_rule()

        results = await engine.run_monitoring()

        assert len(results) == 1
        assert results[0].is_violated is False
        assert results[0].delay_minutes is None
        assert await _violations(session_maker) == []

    async def test_second_pass_updates_delay_without_new_row(
        self, engine, session_maker, make_shipment, make_rule
    ):
        await make_shipment()
        await make_rule(actions={"alert_emails": ["ops@example.com"]})

        await engine.run_monitoring()
        await engine.run_monitoring(now=NOW + timedelta(minutes=10))

        violations = await _violations(session_maker)
        assert len(violations) == 1
        assert violations[0].delay_minutes == 135
        # Actions ran once, on creation
        assert len(violations[0].actions_taken) == 1

    async def test_repeated_passes_give_same_verdict(self, engine, make_shipment, make_rule):
        await make_shipment()
        await make_rule()

        first = await engine.run_monitoring()
        second = await engine.run_monitoring()

        assert [r.to_dict() for r in first] == [r.to_dict() for r in second]

    async def test_terminal_and_filtered_shipments_are_skipped(self, engine, make_shipment, make_rule):
        await make_shipment(status="delivered")
        await make_shipment(status="cancelled")
        await make_shipment(priority="express")
        await make_rule(conditions={"priority": "standard"})

        assert await engine.run_monitoring() == []

    async def test_actions_run_on_new_violation(
        self, engine, session_maker, make_shipment, make_rule, webhook_requests
    ):
        shipment = await make_shipment()
        await make_rule(actions={
            "alert_emails": ["ops@example.com"],
            "webhook_url": "https://hooks.example.com/sla",
            "smart_contract_address": "0xfeed",
            "penalty_amount": 50,
        })

        await engine.run_monitoring()

        [violation] = await _violations(session_maker)
        assert violation.status == "resolved"
        assert violation.resolved_at is not None
        assert [a["action_type"] for a in violation.actions_taken] == [
            "email_alert", "webhook", "smart_contract", "penalty"
        ]
        assert all(a["success"] for a in violation.actions_taken)
        assert len(webhook_requests) == 1

        async with session_maker() as session:
            penalties = (await session.execute(select(SLAPenaltyModel))).scalars().all()
        assert len(penalties) == 1
        assert penalties[0].amount == 50
        assert penalties[0].customer_id == shipment.customer_id


@pytest.mark.asyncio
class TestMonitoringIsolation:
    async def test_unsupported_rule_type_is_skipped(self, engine, make_shipment, make_rule):
        await make_shipment()
        await make_rule(rule_type="response_time", name="Response")
        delivery = await make_rule(name="Delivery")

        results = await engine.run_monitoring()

        assert [r.rule_id for r in results] == [str(delivery.id)]

    async def test_failing_rule_does_not_abort_pass(self, engine, make_shipment, make_rule):
        await make_shipment()
        await make_rule(name="Broken", conditions={"priority": 5})
        healthy = await make_rule(name="Healthy")

        results = await engine.run_monitoring()

        assert [r.rule_id for r in results] == [str(healthy.id)]
        assert results[0].is_violated is True


@pytest.mark.asyncio
class TestBreachEpisodes:
    async def test_recovered_breach_opens_new_episode(
        self, engine, session_maker, make_shipment, make_rule
    ):
        shipment = await make_shipment()
        await make_rule()

        await engine.run_monitoring()

        # Rescheduled: no longer a candidate, the closed episode is cleared
        async with session_maker() as session:
            model = await session.get(ShipmentModel, shipment.id)
            model.expected_delivery_at = NOW + timedelta(days=1)
            await session.commit()
        await engine.run_monitoring()

        [violation] = await _violations(session_maker)
        assert violation.breach_cleared_at is not None

        async with session_maker() as session:
            model = await session.get(ShipmentModel, shipment.id)
            model.expected_delivery_at = NOW - timedelta(minutes=90)
            await session.commit()
        await engine.run_monitoring()

        violations = await _violations(session_maker)
        assert len(violations) == 2
        assert sum(v.breach_cleared_at is None for v in violations) == 1

    async def test_open_episode_is_not_cleared(self, session_maker):
        from sla_enforcer.enforcement.domain import SLAViolation
        from sla_enforcer.enforcement.infrastructure import SQLAlchemyViolationRepository

        async with session_maker() as session:
            repo = SQLAlchemyViolationRepository(session)
            rule_id = str(uuid.uuid4())
            violation, created = await repo.create_if_absent(SLAViolation(
                id=None, shipment_id=str(uuid.uuid4()), rule_id=rule_id,
                delay_minutes=70, detected_at=NOW,
            ))
            await repo.commit()

            assert created is True
            assert await repo.clear_breaches(rule_id, [], NOW) == 0

    async def test_duplicate_insert_returns_tracked_episode(self, session_maker):
        from sla_enforcer.enforcement.domain import SLAViolation
        from sla_enforcer.enforcement.infrastructure import SQLAlchemyViolationRepository

        shipment_id, rule_id = str(uuid.uuid4()), str(uuid.uuid4())
        async with session_maker() as session:
            repo = SQLAlchemyViolationRepository(session)
            first, _ = await repo.create_if_absent(SLAViolation(
                id=None, shipment_id=shipment_id, rule_id=rule_id, delay_minutes=70, detected_at=NOW,
            ))
            await repo.commit()

            second, created = await repo.create_if_absent(SLAViolation(
                id=None, shipment_id=shipment_id, rule_id=rule_id, delay_minutes=80, detected_at=NOW,
            ))

        assert created is False
        assert second.id == first.id
        async with session_maker() as session:
            count = await session.scalar(select(func.count()).select_from(SLAViolationModel))
        assert count == 1


@pytest.mark.asyncio
class TestMonitoringResults:
    async def test_single_pair_is_evaluated_without_recording(
        self, engine, session_maker, make_shipment, make_rule
    ):
        shipment = await make_shipment()
        rule = await make_rule(is_active=False)

        [result] = await engine.get_monitoring_results(str(shipment.id), str(rule.id))

        assert result.is_violated is True
        assert result.delay_minutes == 125
        assert await _violations(session_maker) == []

    async def test_unknown_shipment_is_not_found(self, engine, make_rule):
        rule = await make_rule()
        with pytest.raises(ResourceNotFoundException):
            await engine.get_monitoring_results(str(uuid.uuid4()), str(rule.id))

    async def test_without_ids_evaluates_active_rules(self, engine, session_maker, make_shipment, make_rule):
        await make_shipment()
        await make_rule()

        results = await engine.get_monitoring_results()

        assert len(results) == 1
        assert await _violations(session_maker) == []

    async def test_unsupported_rule_type_pair_is_skipped(self, engine, make_shipment, make_rule):
        shipment = await make_shipment()
        rule = await make_rule(rule_type="response_time")

        assert await engine.get_monitoring_results(str(shipment.id), str(rule.id)) == []


@pytest.mark.asyncio
class TestCandidateSelection:
    async def _candidates(self, session_maker, rule_type="delivery_time", conditions=None):
        rule = SLARule(
            id="r-1", name="Selection", rule_type=rule_type, priority="medium",
            threshold_minutes=240, grace_period_minutes=15, conditions=conditions or {},
        )
        async with session_maker() as session:
            shipments = await SQLAlchemyShipmentRepository(session).find_candidates(
                CandidateCriteria.for_rule(rule, NOW)
            )
        return {s.tracking_number for s in shipments}

    async def test_delivery_needs_expected_time_strictly_before_now(self, session_maker, make_shipment):
        await make_shipment(tracking_number="LATE")
        await make_shipment(tracking_number="DUE-NOW", expected_delivery_at=NOW)
        await make_shipment(tracking_number="FUTURE", expected_delivery_at=NOW + timedelta(minutes=1))

        assert await self._candidates(session_maker) == {"LATE"}

    async def test_pickup_only_selects_created(self, engine, make_shipment, make_rule):
        created = await make_shipment(tracking_number="NEW", status="created", picked_up_at=None)
        await make_shipment(tracking_number="MOVING", status="in_transit")
        rule = await make_rule(rule_type="pickup_time", threshold_minutes=240, grace_period_minutes=15)

        results = await engine.run_monitoring()

        assert [(r.shipment_id, r.rule_id) for r in results] == [(str(created.id), str(rule.id))]
        assert results[0].is_violated is True

    async def test_processing_selects_picked_up_and_in_transit(self, session_maker, make_shipment):
        await make_shipment(tracking_number="PICKED", status="picked_up")
        await make_shipment(tracking_number="MOVING", status="in_transit")
        await make_shipment(tracking_number="NEW", status="created", picked_up_at=None)
        await make_shipment(tracking_number="OUT", status="out_for_delivery")

        assert await self._candidates(session_maker, "processing_time") == {"PICKED", "MOVING"}

    async def test_origin_condition_is_case_insensitive(self, session_maker, make_shipment):
        await make_shipment(tracking_number="CHI", origin="Chicago, IL")
        await make_shipment(tracking_number="AUS", origin="Austin, TX")

        assert await self._candidates(session_maker, conditions={"origin": "chicago"}) == {"CHI"}

    async def test_origin_wildcards_are_literal(self, session_maker, make_shipment):
        await make_shipment(tracking_number="CHI", origin="Chicago, IL")
        await make_shipment(tracking_number="DOCK", origin="Dock_100% North")

        assert await self._candidates(session_maker, conditions={"origin": "%"}) == {"DOCK"}
        assert await self._candidates(session_maker, conditions={"origin": "k_1"}) == {"DOCK"}
        assert await self._candidates(session_maker, conditions={"origin": "c_g"}) == set()

    async def test_conditions_are_conjunctive(self, session_maker, make_shipment):
        await make_shipment(tracking_number="MATCH", priority="express", origin="Chicago, IL")
        await make_shipment(tracking_number="SLOW", priority="standard", origin="Chicago, IL")
        await make_shipment(tracking_number="ELSEWHERE", priority="express", origin="Austin, TX")

        found = await self._candidates(session_maker, conditions={"priority": "express", "origin": "CHICAGO"})
        assert found == {"MATCH"}


@pytest.mark.asyncio
class TestDispatchPersistence:
    async def test_failed_penalty_write_keeps_other_results(
        self, engine, session_maker, make_shipment, make_rule, monkeypatch
    ):
        original_create = SQLAlchemyPenaltyRepository.create

        async def create_without_customer(repo, penalty):
            penalty.customer_id = None
            return await original_create(repo, penalty)

        monkeypatch.setattr(SQLAlchemyPenaltyRepository, "create", create_without_customer)
        await make_shipment()
        await make_rule(actions={"alert_emails": ["ops@example.com"], "penalty_amount": 40})

        await engine.run_monitoring()

        [violation] = await _violations(session_maker)
        assert violation.status == "resolved"
        assert [(a["action_type"], a["success"]) for a in violation.actions_taken] == [
            ("email_alert", True), ("penalty", False)
        ]
        assert "penalty failed" in violation.notes
        async with session_maker() as session:
            assert (await session.execute(select(SLAPenaltyModel))).scalars().all() == []

    async def test_recovered_breach_is_cleared_after_failed_penalty(
        self, engine, session_maker, make_shipment, make_rule, monkeypatch
    ):
        recovered = await make_shipment()
        await make_rule(name="Plain")
        await engine.run_monitoring()

        async def failing_create(repo, penalty):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(SQLAlchemyPenaltyRepository, "create", failing_create)
        async with session_maker() as session:
            model = await session.get(ShipmentModel, recovered.id)
            model.expected_delivery_at = NOW + timedelta(days=1)
            await session.commit()
        await make_shipment()
        await make_rule(name="Penalized", actions={"penalty_amount": 40})

        await engine.run_monitoring()

        violations = await _violations(session_maker)
        by_shipment = {v.shipment_id: v for v in violations if v.breach_cleared_at is not None}
        assert recovered.id in by_shipment
        assert all(v.status in ("resolved", "escalated") for v in violations)


@pytest.mark.asyncio
class TestOverlappingPasses:
    async def test_each_breach_is_recorded_once(self, engine, session_maker, make_shipment, make_rule):
        shipments = [await make_shipment() for _ in range(3)]
        await make_rule()

        await asyncio.gather(engine.run_monitoring(), engine.run_monitoring())

        violations = await _violations(session_maker)
        assert len(violations) == 3
        assert {v.shipment_id for v in violations} == {s.id for s in shipments}
        assert all(v.breach_cleared_at is None for v in violations)
