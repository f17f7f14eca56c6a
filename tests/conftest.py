"""
Test Configuration: Fixtures for async DB, engine, test client and mock data.

Every test gets a fresh in-memory SQLite database (StaticPool keeps the
single connection alive across sessions) and a fixed clock.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from sla_enforcer.config import Settings
from sla_enforcer.enforcement.domain import ActionExecutionResult
from sla_enforcer.enforcement.infrastructure import (
    EmailAlertChannel,
    SLAEnforcementEngine,
    SmartContractChannel,
    WebhookChannel,
)
from sla_enforcer.enforcement.infrastructure.models import ShipmentModel, SLARuleModel
from sla_enforcer.infrastructure.database import build_engine, build_session_maker, create_tables

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
DEFAULT_RULES_PATH = Path(__file__).resolve().parents[1] / "config" / "sla_rules.yaml"


@pytest.fixture
async def db_engine():
    engine = build_engine(TEST_DATABASE_URL)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return build_session_maker(db_engine)


@pytest.fixture
def test_settings():
    return Settings(
        environment="test",
        database_url=TEST_DATABASE_URL,
        monitoring_interval_seconds=0,
        action_channel_timeout_seconds=1.0,
        sendgrid_api_key=None,
        contract_gateway_url=None,
    )


@pytest.fixture
def webhook_requests():
    """Requests captured by the mocked webhook endpoint."""
    return []


@pytest.fixture
def webhook_client(webhook_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        if "fail" in request.url.path:
            return httpx.Response(503, json={"error": "unavailable"})
        return httpx.Response(200, json={"ok": True})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
async def engine(session_maker, test_settings, webhook_client):
    enforcement_engine = SLAEnforcementEngine(
        session_maker,
        test_settings,
        email_channel=EmailAlertChannel(api_key=None),
        webhook_channel=WebhookChannel(http_client=webhook_client),
        smart_contract_channel=SmartContractChannel(gateway_url=None),
        clock=lambda: NOW,
    )
    yield enforcement_engine
    await enforcement_engine.stop()
    await webhook_client.aclose()


@pytest.fixture
def make_shipment(session_maker):
    """Insert a shipment; defaults describe an in-transit standard shipment."""

    async def _make(**overrides) -> ShipmentModel:
        values = {
            "id": uuid.uuid4(),
            "tracking_number": f"TRK-{uuid.uuid4().hex[:10].upper()}",
            "status": "in_transit",
            "priority": "standard",
            "origin": "Chicago, IL",
            "destination": "Denver, CO",
            "customer_id": "customer-001",
            "created_at": NOW - timedelta(days=3),
            "expected_delivery_at": NOW - timedelta(minutes=125),
            "picked_up_at": NOW - timedelta(days=2),
            "actual_delivery_at": None,
        }
        values.update(overrides)
        model = ShipmentModel(**values)
        async with session_maker() as session:
            session.add(model)
            await session.commit()
        return model

    return _make


@pytest.fixture
def make_rule(session_maker):
    """Insert an SLA rule; defaults describe an active delivery rule without actions."""

    async def _make(**overrides) -> SLARuleModel:
        values = {
            "id": uuid.uuid4(),
            "name": f"Rule {uuid.uuid4().hex[:8]}",
            "rule_type": "delivery_time",
            "priority": "medium",
            "threshold_minutes": 4320,
            "grace_period_minutes": 60,
            "conditions": {},
            "actions": {},
            "is_active": True,
        }
        values.update(overrides)
        model = SLARuleModel(**values)
        async with session_maker() as session:
            session.add(model)
            await session.commit()
        return model

    return _make


class FakeChannel:
    """Action channel double that records calls and can fail or stall."""

    def __init__(self, action_type: str, error: Exception | None = None, delay: float = 0.0):
        self.action_type = action_type
        self.error = error
        self.delay = delay
        self.calls = []

    async def execute(self, action, context):
        self.calls.append((action, context))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ActionExecutionResult(
            action_type=self.action_type,
            success=True,
            message=f"{self.action_type} ok",
        )


@pytest.fixture
def fake_channels():
    return {
        kind: FakeChannel(kind)
        for kind in ("email_alert", "webhook", "smart_contract", "penalty")
    }


@pytest.fixture
async def client(engine, session_maker):
    """Async test client wired to the test database and engine."""
    from sla_enforcer.enforcement.infrastructure import DefaultRulesLoader
    from sla_enforcer.enforcement.interfaces.controllers import get_rules_loader
    from sla_enforcer.infrastructure.database import get_session
    from sla_enforcer.main import app

    async def override_get_session():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_rules_loader] = lambda: DefaultRulesLoader(DEFAULT_RULES_PATH)
    app.state.engine = engine

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
