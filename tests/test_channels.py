"""
Action channel tests: webhook, email, smart contract, penalty and the
circuit breaker.
"""

import json
from datetime import timedelta

import httpx
import pytest
from sqlalchemy.exc import IntegrityError

from sla_enforcer.core import ChannelException
from sla_enforcer.enforcement.application import ViolationContext
from sla_enforcer.enforcement.domain import (
    EmailAlertAction,
    PenaltyAction,
    Shipment,
    SLARule,
    SLAViolation,
    SmartContractAction,
    WebhookAction,
)
from sla_enforcer.enforcement.infrastructure import (
    CircuitBreaker,
    CircuitState,
    EmailAlertChannel,
    PenaltyChannel,
    SmartContractChannel,
    SQLAlchemyPenaltyRepository,
    WebhookChannel,
)

from conftest import NOW


@pytest.fixture
def context():
    shipment = Shipment(
        id="2b4f7b1e-5d0e-4f44-9a43-1f0f0c1f2a10",
        tracking_number="TRK-42",
        status="in_transit",
        priority="express",
        origin="Chicago, IL",
        destination="Denver, CO",
        customer_id="customer-042",
        created_at=NOW - timedelta(days=2),
        expected_delivery_at=NOW - timedelta(minutes=125),
    )
    rule = SLARule(
        id="rule-1",
        name="Express Delivery",
        rule_type="delivery_time",
        priority="high",
        threshold_minutes=1440,
        grace_period_minutes=30,
    )
    violation = SLAViolation(
        id="7c1e8a7e-3f5e-4d8b-8b61-4d6a7f0b3c21",
        shipment_id=shipment.id,
        rule_id=rule.id,
        delay_minutes=125,
        detected_at=NOW,
    )
    return ViolationContext(violation=violation, rule=rule, shipment=shipment, escalation_level=2)


def _client(status_code, captured):
    def handler(request):
        captured.append(request)
        return httpx.Response(status_code)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ── Webhook ────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestWebhookChannel:
    async def test_posts_violation_payload(self, context):
        captured = []
        channel = WebhookChannel(http_client=_client(200, captured))

        result = await channel.execute(WebhookAction(url="https://hooks.example.com/sla"), context)

        assert result.success is True
        payload = json.loads(captured[0].content)
        assert payload["violation_id"] == context.violation.id
        assert payload["tracking_number"] == "TRK-42"
        assert payload["rule_name"] == "Express Delivery"
        assert payload["rule_type"] == "delivery_time"
        assert payload["priority"] == "high"
        assert payload["escalation_level"] == 2
        assert payload["delay_minutes"] == 125
        assert payload["shipment_details"]["origin"] == "Chicago, IL"
        assert payload["shipment_details"]["destination"] == "Denver, CO"

    async def test_non_2xx_is_a_failure(self, context):
        channel = WebhookChannel(http_client=_client(500, []))

        with pytest.raises(ChannelException) as exc_info:
            await channel.execute(WebhookAction(url="https://hooks.example.com/sla"), context)
        assert "500" in exc_info.value.message

    async def test_transport_error_is_a_failure(self, context):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        channel = WebhookChannel(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        with pytest.raises(ChannelException):
            await channel.execute(WebhookAction(url="https://hooks.example.com/sla"), context)

    async def test_open_circuit_skips_request(self, context):
        captured = []
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60)
        channel = WebhookChannel(http_client=_client(503, captured), circuit_breaker=breaker)
        action = WebhookAction(url="https://hooks.example.com/sla")

        for _ in range(2):
            with pytest.raises(ChannelException):
                await channel.execute(action, context)
        with pytest.raises(ChannelException) as exc_info:
            await channel.execute(action, context)

        assert "circuit breaker open" in exc_info.value.message
        assert len(captured) == 2


# ── Circuit Breaker ────────────────────────────────────────────────


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=60, clock=lambda: 0.0)
        for _ in range(2):
            breaker.record_failure()
        assert breaker.allow_request()
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()

    def test_half_open_after_recovery_timeout(self):
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=lambda: now[0])
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

        now[0] = 31.0
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request()

    def test_failed_trial_call_reopens(self):
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=30, clock=lambda: now[0])
        for _ in range(5):
            breaker.record_failure()
        now[0] = 31.0
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

    def test_success_closes(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0, clock=lambda: 0.0)
        breaker.record_failure()
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED


# ── Email / Smart Contract / Penalty ───────────────────────────────


@pytest.mark.asyncio
class TestEmailAlertChannel:
    async def test_without_api_key_delivery_is_simulated(self, context):
        channel = EmailAlertChannel(api_key=None)
        action = EmailAlertAction(recipients=["ops@example.com", "lead@example.com"])

        result = await channel.execute(action, context)

        assert result.success is True
        assert result.details["delivery"] == "simulated"
        assert "2 recipient" in result.message

    async def test_rejected_send_is_a_failure(self, context, monkeypatch):
        channel = EmailAlertChannel(api_key="SG.test")
        monkeypatch.setattr(channel, "_send", lambda message: 401)

        with pytest.raises(ChannelException):
            await channel.execute(EmailAlertAction(recipients=["ops@example.com"]), context)

    async def test_accepted_send(self, context, monkeypatch):
        sent = []
        channel = EmailAlertChannel(api_key="SG.test")

        def fake_send(message):
            sent.append(message)
            return 202

        monkeypatch.setattr(channel, "_send", fake_send)

        result = await channel.execute(EmailAlertAction(recipients=["ops@example.com"]), context)

        assert result.success is True
        assert result.details["delivery"] == "sendgrid"
        assert len(sent) == 1


@pytest.mark.asyncio
class TestSmartContractChannel:
    async def test_simulated_call(self, context):
        channel = SmartContractChannel(gateway_url=None)
        action = SmartContractAction(contract_address="0xfeed", penalty_amount=100)

        result = await channel.execute(action, context)

        assert result.success is True
        assert result.details["method"] == "reportSLAViolation"
        assert result.details["args"]["delay_minutes"] == 125
        assert result.details["args"]["penalty_amount"] == 100

    async def test_gateway_call(self, context):
        captured = []
        channel = SmartContractChannel(
            gateway_url="https://chain-gateway.example.com/calls",
            http_client=_client(201, captured),
        )

        result = await channel.execute(SmartContractAction(contract_address="0xfeed"), context)

        assert result.success is True
        body = json.loads(captured[0].content)
        assert body["contract_address"] == "0xfeed"
        assert body["args"]["violation_id"] == context.violation.id

    async def test_gateway_error(self, context):
        channel = SmartContractChannel(
            gateway_url="https://chain-gateway.example.com/calls",
            http_client=_client(502, []),
        )
        with pytest.raises(ChannelException):
            await channel.execute(SmartContractAction(contract_address="0xfeed"), context)


@pytest.mark.asyncio
class TestPenaltyChannel:
    async def test_records_penalty(self, context, session_maker):
        channel = PenaltyChannel(session_maker, clock=lambda: NOW)

        result = await channel.execute(PenaltyAction(amount=75.5), context)

        async with session_maker() as session:
            penalties = await SQLAlchemyPenaltyRepository(session).list_for_violation(context.violation.id)

        assert result.success is True
        assert len(penalties) == 1
        assert penalties[0].amount == 75.5
        assert penalties[0].customer_id == "customer-042"
        assert penalties[0].delay_minutes == 125
        assert penalties[0].assessed_at == NOW

    async def test_failed_write_raises_and_records_nothing(self, context, session_maker):
        context.shipment.customer_id = None
        channel = PenaltyChannel(session_maker, clock=lambda: NOW)

        with pytest.raises(IntegrityError):
            await channel.execute(PenaltyAction(amount=10), context)

        async with session_maker() as session:
            assert await SQLAlchemyPenaltyRepository(session).list_for_violation(context.violation.id) == []
