"""Unit tests for edge-triggered event cleanups."""

from __future__ import annotations

import asyncio

import pytest

from mailbox_cleanup.automation import EventTriggerMonitor
from mailbox_cleanup.automation.triggers import (
    EMAIL_VOLUME,
    PERFORMANCE,
    STORAGE_CRITICAL,
    STORAGE_WARNING,
)


class RecordingDispatch:
    def __init__(self) -> None:
        self.calls: list[tuple[str, list[str]]] = []

    async def __call__(self, trigger: str, policy_ids: list[str]) -> list[str]:
        self.calls.append((trigger, policy_ids))
        return [f"job-{trigger}-{len(self.calls)}"]

    @property
    def triggers(self) -> list[str]:
        return [trigger for trigger, _ in self.calls]


@pytest.fixture
def dispatch() -> RecordingDispatch:
    return RecordingDispatch()


@pytest.fixture
def monitor(signal_source, config_store, dispatch, settings) -> EventTriggerMonitor:
    return EventTriggerMonitor(signal_source, config_store, dispatch, settings=settings)


@pytest.fixture
def wired(policy_engine, config_store):
    """One policy per trigger, referenced from the automation config."""
    for policy_id in ("emergency", "warn", "perf", "volume"):
        policy_engine.create_policy(
            {"id": policy_id, "name": policy_id, "criteria": {"spam_score_min": 0.9}}
        )
    config_store.update(
        {
            "event_triggers": {
                "storage_threshold": {
                    "warning_threshold_percent": 80,
                    "critical_threshold_percent": 95,
                    "warning_policies": ["warn"],
                    "emergency_policies": ["emergency"],
                },
                "performance_threshold": {
                    "query_time_threshold_ms": 1000,
                    "cache_hit_rate_threshold": 0.7,
                    "cleanup_policies": ["perf"],
                },
                "email_volume_threshold": {
                    "daily_email_threshold": 500,
                    "immediate_cleanup_policies": ["volume"],
                },
            }
        }
    )
    return config_store


class TestStorageThresholds:
    """Test suite for storage triggers."""

    @pytest.mark.asyncio
    async def test_sustained_critical_fires_once(
        self, monitor, wired, signal_source, dispatch
    ) -> None:
        """Test that three critical samples in a row yield a single dispatch."""
        signal_source.storage_usage_percent = 97.0

        first = await monitor.check()
        second = await monitor.check()
        third = await monitor.check()

        assert dispatch.calls == [(STORAGE_CRITICAL, ["emergency"])]
        assert len(first) == 1
        assert second == [] and third == []
        # Warning is latched too, so it does not fire on the way down.
        assert monitor.breached()[STORAGE_WARNING] is True

    @pytest.mark.asyncio
    async def test_rearms_after_recovery(self, monitor, wired, signal_source, dispatch) -> None:
        """Test that a threshold fires again after the signal drops below it."""
        signal_source.storage_usage_percent = 96.0
        await monitor.check()
        signal_source.storage_usage_percent = 50.0
        await monitor.check()
        signal_source.storage_usage_percent = 96.0
        await monitor.check()

        assert dispatch.triggers == [STORAGE_CRITICAL, STORAGE_CRITICAL]
        assert monitor.breached()[STORAGE_CRITICAL] is True

    @pytest.mark.asyncio
    async def test_warning_then_critical(self, monitor, wired, signal_source, dispatch) -> None:
        """Test climbing through warning into critical."""
        signal_source.storage_usage_percent = 85.0
        await monitor.check()
        signal_source.storage_usage_percent = 96.0
        await monitor.check()
        signal_source.storage_usage_percent = 90.0
        await monitor.check()

        assert dispatch.calls == [
            (STORAGE_WARNING, ["warn"]),
            (STORAGE_CRITICAL, ["emergency"]),
        ]
        assert monitor.breached()[STORAGE_CRITICAL] is False
        assert monitor.breached()[STORAGE_WARNING] is True

    @pytest.mark.asyncio
    async def test_disabled_block_never_fires(
        self, monitor, wired, signal_source, dispatch
    ) -> None:
        """Test that a disabled threshold block is ignored."""
        wired.update({"event_triggers": {"storage_threshold": {"enabled": False}}})
        signal_source.storage_usage_percent = 99.0

        assert await monitor.check() == []
        assert dispatch.calls == []
        assert monitor.breached()[STORAGE_CRITICAL] is False

    @pytest.mark.asyncio
    async def test_breach_without_policies_dispatches_nothing(
        self, monitor, config_store, signal_source, dispatch
    ) -> None:
        """Test that a crossing with an empty policy list is latched but silent."""
        signal_source.storage_usage_percent = 99.0

        assert await monitor.check() == []
        assert dispatch.calls == []
        assert monitor.breached()[STORAGE_CRITICAL] is True


class TestOtherThresholds:
    """Test suite for performance and volume triggers."""

    @pytest.mark.asyncio
    async def test_slow_queries_fire_performance(
        self, monitor, wired, signal_source, dispatch
    ) -> None:
        """Test the query-time half of the performance trigger."""
        signal_source.average_query_time_ms = 2500.0

        await monitor.check()

        assert dispatch.calls == [(PERFORMANCE, ["perf"])]

    @pytest.mark.asyncio
    async def test_cache_hit_rate(self, monitor, wired, signal_source, dispatch) -> None:
        """Test that a low hit rate fires, and no cache traffic does not."""
        signal_source.cache_hit_rate = None
        await monitor.check()
        assert dispatch.calls == []

        signal_source.cache_hit_rate = 0.4
        await monitor.check()
        assert dispatch.triggers == [PERFORMANCE]

    @pytest.mark.asyncio
    async def test_email_volume(self, monitor, wired, signal_source, dispatch) -> None:
        """Test the daily volume trigger."""
        signal_source.daily_email_volume = 499
        await monitor.check()
        signal_source.daily_email_volume = 500
        await monitor.check()

        assert dispatch.calls == [(EMAIL_VOLUME, ["volume"])]
        assert monitor.last_signals is not None
        assert monitor.last_signals.daily_email_volume == 500

    @pytest.mark.asyncio
    async def test_run_checks_until_stopped(
        self, signal_source, wired, dispatch, settings
    ) -> None:
        """Test the background loop."""
        monitor = EventTriggerMonitor(
            signal_source,
            wired,
            dispatch,
            settings=settings.model_copy(update={"monitor_interval_seconds": 0.01}),
        )
        signal_source.storage_usage_percent = 99.0
        stop = asyncio.Event()

        task = asyncio.create_task(monitor.run(stop))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert signal_source.samples > 1
        assert dispatch.triggers == [STORAGE_CRITICAL]
