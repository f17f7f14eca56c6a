"""
Infrastructure tests: keyed locks, scheduler lifecycle, default rules and
logging redaction.
"""

import asyncio
import json
import logging

import pytest

from sla_enforcer.core import ConfigurationException
from sla_enforcer.enforcement.infrastructure import (
    DefaultRulesLoader,
    MonitoringScheduler,
    SLAEnforcementEngine,
)
from sla_enforcer.shared.infrastructure.locking import KeyedLock
from sla_enforcer.shared.infrastructure.logging import CustomJsonFormatter

from conftest import DEFAULT_RULES_PATH


# ── Keyed Lock ─────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestKeyedLock:
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold(("s-1", "r-1")):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-start", "a-end", "b-start", "b-end"]

    async def test_different_keys_run_concurrently(self):
        locks = KeyedLock()
        inside = asyncio.Event()

        async def holder():
            async with locks.hold("x"):
                inside.set()
                await asyncio.sleep(0.05)

        task = asyncio.create_task(holder())
        await inside.wait()
        async with locks.hold("y"):
            assert locks.is_locked("x")
        await task

    async def test_idle_locks_are_dropped(self):
        locks = KeyedLock()
        async with locks.hold("x"):
            assert len(locks) == 1
        assert len(locks) == 0
        assert not locks.is_locked("x")


# ── Scheduler ──────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestMonitoringScheduler:
    async def test_job_never_overlaps(self):
        scheduler = MonitoringScheduler(interval_seconds=300)

        async def job():
            return None

        await scheduler.start(job)
        try:
            assert scheduler.is_running
            scheduled = scheduler.get_job()
            assert scheduled.max_instances == 1
            assert scheduled.coalesce is True
        finally:
            await scheduler.stop()
        assert not scheduler.is_running

    async def test_engine_without_interval_does_not_schedule(self, engine):
        await engine.start()
        assert not engine.scheduler.is_running

    async def test_failing_scheduled_pass_is_swallowed(self, test_settings):
        def broken_session_maker():
            raise RuntimeError("database unavailable")

        engine = SLAEnforcementEngine(broken_session_maker, test_settings)

        await engine._scheduled_pass()


# ── Default Rules ──────────────────────────────────────────────────


class TestDefaultRulesLoader:
    def test_loads_shipped_rules(self):
        rules = {r.name: r for r in DefaultRulesLoader(DEFAULT_RULES_PATH).load()}

        assert set(rules) == {"Standard Delivery SLA", "Express Delivery SLA", "Pickup Time SLA"}
        assert rules["Standard Delivery SLA"].threshold_minutes == 4320
        assert rules["Express Delivery SLA"].grace_period_minutes == 30
        assert rules["Express Delivery SLA"].actions.alert_emails == ["logistics@company.com", "manager@company.com"]
        assert rules["Pickup Time SLA"].rule_type == "pickup_time"
        assert rules["Pickup Time SLA"].actions.penalty_amount == 25

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationException):
            DefaultRulesLoader(tmp_path / "absent.yaml").load()

    def test_invalid_rule(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("rules:\n  - name: Broken\n    rule_type: delivery_time\n")
        with pytest.raises(ConfigurationException):
            DefaultRulesLoader(path).load()


# ── Logging ────────────────────────────────────────────────────────


class TestJsonLogging:
    def test_secrets_are_redacted(self):
        formatter = CustomJsonFormatter(environment="test")
        record = logging.LogRecord("sla", logging.INFO, __file__, 1, "configured", None, None)
        record.sendgrid_api_key = "SG.secret"
        record.rule_id = "r-1"

        payload = json.loads(formatter.format(record))

        assert payload["sendgrid_api_key"] != "SG.secret"
        assert payload["rule_id"] == "r-1"
        assert payload["environment"] == "test"
        assert payload["message"] == "configured"

    def test_timestamp_and_correlation_id_are_added(self):
        formatter = CustomJsonFormatter(environment="test")
        record = logging.LogRecord("sla", logging.INFO, __file__, 1, "run", None, None)
        record.correlation_id = "corr-1"

        payload = json.loads(formatter.format(record))

        assert payload["correlation_id"] == "corr-1"
        assert payload["timestamp"].endswith("+00:00")

    def test_token_fields_are_redacted(self):
        formatter = CustomJsonFormatter()
        record = logging.LogRecord("sla", logging.INFO, __file__, 1, "called", None, None)
        record.gateway_token = "tok-123"

        payload = json.loads(formatter.format(record))

        assert payload["gateway_token"] == "***REDACTED***"
        assert payload["environment"] == "unknown"
