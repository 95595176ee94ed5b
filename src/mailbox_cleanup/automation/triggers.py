"""Edge-triggered event cleanups.

The monitor samples a :class:`SignalSource` and compares it with the
threshold blocks of the current automation config. A threshold fires its
policies once when the signal crosses it and re-arms only after the signal
falls back below; a sustained breach never enqueues duplicate jobs.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from mailbox_cleanup.automation.config_store import AutomationConfigStore
from mailbox_cleanup.automation.health import SignalSource, SystemSignals
from mailbox_cleanup.config import Settings, get_settings

logger = structlog.get_logger()

STORAGE_WARNING = "storage_warning"
STORAGE_CRITICAL = "storage_critical"
PERFORMANCE = "performance"
EMAIL_VOLUME = "email_volume"

TRIGGER_KEYS = (STORAGE_CRITICAL, STORAGE_WARNING, PERFORMANCE, EMAIL_VOLUME)

EventDispatcher = Callable[[str, list[str]], Awaitable[list[str]]]


class EventTriggerMonitor:
    """Turns threshold crossings into event cleanup jobs."""

    def __init__(
        self,
        source: SignalSource,
        config_store: AutomationConfigStore,
        dispatch: EventDispatcher,
        *,
        settings: Settings | None = None,
    ) -> None:
        self._source = source
        self._config = config_store
        self._dispatch = dispatch
        self._settings = settings or get_settings()
        self._breached: dict[str, bool] = {key: False for key in TRIGGER_KEYS}
        self._last_signals: SystemSignals | None = None

    @property
    def last_signals(self) -> SystemSignals | None:
        return self._last_signals

    def breached(self) -> dict[str, bool]:
        return dict(self._breached)

    async def check(self) -> list[str]:
        """Sample once and dispatch newly crossed thresholds. Returns the job ids enqueued."""

        signals = await asyncio.to_thread(self._source.sample)
        self._last_signals = signals
        triggers = self._config.current().event_triggers

        storage = triggers.storage_threshold
        performance = triggers.performance_threshold
        volume = triggers.email_volume_threshold

        slow_queries = signals.average_query_time_ms > performance.query_time_threshold_ms
        cold_cache = (
            signals.cache_hit_rate is not None
            and signals.cache_hit_rate < performance.cache_hit_rate_threshold
        )

        conditions = {
            STORAGE_CRITICAL: (
                storage.enabled,
                signals.storage_usage_percent >= storage.critical_threshold_percent,
                storage.emergency_policies,
            ),
            STORAGE_WARNING: (
                storage.enabled,
                signals.storage_usage_percent >= storage.warning_threshold_percent,
                storage.warning_policies,
            ),
            PERFORMANCE: (
                performance.enabled,
                slow_queries or cold_cache,
                performance.cleanup_policies,
            ),
            EMAIL_VOLUME: (
                volume.enabled,
                signals.daily_email_volume >= volume.daily_email_threshold,
                volume.immediate_cleanup_policies,
            ),
        }

        job_ids: list[str] = []
        critical_fired = False
        for key in TRIGGER_KEYS:
            enabled, breached, policy_ids = conditions[key]
            if not enabled or not breached:
                self._breached[key] = False
                continue
            if self._breached[key]:
                continue

            self._breached[key] = True
            if key == STORAGE_CRITICAL:
                critical_fired = True
            elif key == STORAGE_WARNING and critical_fired:
                # Jumped straight past critical: the emergency set already ran.
                continue

            logger.warning(
                "event_threshold_crossed",
                trigger=key,
                storage_usage_percent=round(signals.storage_usage_percent, 2),
                average_query_time_ms=round(signals.average_query_time_ms, 2),
                cache_hit_rate=signals.cache_hit_rate,
                daily_email_volume=signals.daily_email_volume,
                policies=list(policy_ids),
            )
            if policy_ids:
                job_ids.extend(await self._dispatch(key, list(policy_ids)))

        return job_ids

    async def run(self, stop_event: asyncio.Event) -> None:
        """Check every ``monitor_interval_seconds`` until ``stop_event`` is set."""

        interval = self._settings.monitor_interval_seconds
        logger.info("event_trigger_monitor_started", interval_seconds=interval)

        while not stop_event.is_set():
            try:
                await self.check()
            except Exception as exc:  # noqa: BLE001
                logger.exception("event_trigger_check_failed", error=str(exc))

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("event_trigger_monitor_stopped")
