"""Continuous cleanup scheduler.

Each tick reads the current automation config and, when continuous cleanup
is enabled and outside peak hours, hands at most one rate-limited job to the
pipeline. All scheduler state (in-flight jobs, records processed in the last
minute) is derived from the job queue, so a restart never leaks concurrency
slots.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from mailbox_cleanup.automation.config_store import AutomationConfigStore
from mailbox_cleanup.clock import Clock, SystemClock
from mailbox_cleanup.config import Settings, get_settings
from mailbox_cleanup.exceptions import ConfigurationError, MailboxCleanupError
from mailbox_cleanup.jobs.queue import JobQueue
from mailbox_cleanup.models import CleanupRequest, Job, JobType
from mailbox_cleanup.policies.engine import PolicyEngine

logger = structlog.get_logger()

RATE_WINDOW = timedelta(seconds=60)

JobDispatcher = Callable[[str], object]


class AutomationScheduler:
    """Rate-limited, peak-hour-aware background trigger for cleanup jobs."""

    def __init__(
        self,
        engine: PolicyEngine,
        queue: JobQueue,
        config_store: AutomationConfigStore,
        dispatch: JobDispatcher,
        *,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._engine = engine
        self._queue = queue
        self._config = config_store
        self._dispatch = dispatch
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._tz: ZoneInfo | None = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Resolve the peak-hours timezone and log the state recovered from the queue.

        Idempotent.
        """

        if self._initialized:
            return

        try:
            self._tz = ZoneInfo(self._settings.peak_hours_timezone)
        except ZoneInfoNotFoundError as exc:
            raise ConfigurationError(
                f"Unknown peak_hours_timezone: {self._settings.peak_hours_timezone}"
            ) from exc

        in_flight = await asyncio.to_thread(self._queue.active_jobs, JobType.SCHEDULED_CLEANUP)
        processed = await self._processed_in_window()
        self._initialized = True
        logger.info(
            "automation_scheduler_initialized",
            in_flight_jobs=len(in_flight),
            processed_last_minute=processed,
            timezone=self._settings.peak_hours_timezone,
        )

    def in_peak_hours(self) -> bool:
        config = self._config.current().continuous_cleanup
        local = self._clock.now().astimezone(self._tz or ZoneInfo("UTC"))
        return config.peak_hours.contains(local.time())

    async def allowance(self, in_flight: list[Job]) -> int:
        """Records the scheduler may still hand out in the current minute."""

        target = self._config.current().continuous_cleanup.target_emails_per_minute
        reserved = sum(
            job.request_params.max_emails or 0
            for job in in_flight
            if not job.request_params.dry_run
        )
        return target - await self._processed_in_window() - reserved

    async def tick(self) -> str | None:
        """Run one scheduling decision. Returns the enqueued job id, if any."""

        if not self._initialized:
            await self.initialize()

        config = self._config.current().continuous_cleanup
        if not config.enabled:
            return None
        if config.pause_during_peak_hours and self.in_peak_hours():
            logger.debug("automation_tick_skipped", reason="peak_hours")
            return None

        in_flight = await asyncio.to_thread(self._queue.active_jobs, JobType.SCHEDULED_CLEANUP)
        if len(in_flight) >= config.max_concurrent_operations:
            logger.debug(
                "automation_tick_skipped",
                reason="max_concurrent_operations",
                in_flight=len(in_flight),
            )
            return None

        budget = await self.allowance(in_flight)
        if budget <= 0:
            logger.debug("automation_tick_skipped", reason="rate_limit", allowance=budget)
            return None

        busy = {job.policy_id for job in in_flight}
        policies = await asyncio.to_thread(self._engine.get_active_policies)

        for policy in policies:
            # Unattended runs can never supply a confirmation.
            if policy.safety.require_confirmation or policy.id in busy:
                continue

            try:
                needs_dry_run = policy.safety.dry_run_first and not await asyncio.to_thread(
                    self._queue.has_completed_dry_run, policy.id, policy.updated_at
                )
                candidates = await self._engine.evaluate(policy.id, max_emails=budget)
            except MailboxCleanupError as exc:
                logger.warning("automation_policy_skipped", policy_id=policy.id, error=str(exc))
                continue

            if not len(candidates):
                continue

            request = CleanupRequest(
                policy_id=policy.id,
                triggered_by="continuous_cleanup",
                dry_run=needs_dry_run,
                max_emails=budget,
            )
            job_id = await asyncio.to_thread(
                self._queue.enqueue, JobType.SCHEDULED_CLEANUP, request
            )
            logger.info(
                "automation_job_scheduled",
                job_id=job_id,
                policy_id=policy.id,
                allowance=budget,
                candidates=len(candidates),
                dry_run=needs_dry_run,
            )
            self._dispatch(job_id)
            return job_id

        return None

    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick until ``stop_event`` is set. Tick errors are logged, never fatal."""

        await self.initialize()
        logger.info(
            "automation_scheduler_started", tick_seconds=self._settings.scheduler_tick_seconds
        )

        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception as exc:  # noqa: BLE001
                logger.exception("automation_tick_failed", error=str(exc))

            try:
                await asyncio.wait_for(
                    stop_event.wait(), timeout=self._settings.scheduler_tick_seconds
                )
            except asyncio.TimeoutError:
                pass

        logger.info("automation_scheduler_stopped")

    async def _processed_in_window(self) -> int:
        since = self._clock.now() - RATE_WINDOW
        recent = await asyncio.to_thread(
            self._queue.completed_since, since, job_type=JobType.SCHEDULED_CLEANUP
        )
        return sum(
            job.results.emails_processed
            for job in recent
            if job.results is not None and not job.results.dry_run
        )
