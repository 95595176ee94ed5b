"""Automation engine: the process-level entry point of the cleanup core.

Wires the repositories, policy engine, job processor, scheduler and event
monitor together, and exposes the operations callers use: manual triggers,
job inspection, configuration and lifecycle.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from mailbox_cleanup.actions import (
    ActionRegistry,
    GmailActionBackend,
    LocalIndexBackend,
)
from mailbox_cleanup.automation.config_store import AutomationConfigStore
from mailbox_cleanup.automation.health import HealthMonitor, SignalSource
from mailbox_cleanup.automation.scheduler import AutomationScheduler
from mailbox_cleanup.automation.triggers import EventTriggerMonitor
from mailbox_cleanup.clock import Clock, SystemClock
from mailbox_cleanup.config import Settings, get_settings
from mailbox_cleanup.exceptions import (
    ConfigurationError,
    DryRunRequiredError,
    MailboxCleanupError,
    ValidationError,
)
from mailbox_cleanup.index.repository import EmailIndexRepository
from mailbox_cleanup.jobs.processor import JobProcessor, check_safety_gate
from mailbox_cleanup.jobs.queue import JobQueue
from mailbox_cleanup.models import (
    AutomationConfig,
    CleanupRequest,
    Job,
    JobResult,
    JobStatus,
    JobType,
    Policy,
    ProtectionConfig,
)
from mailbox_cleanup.policies.engine import PolicyEngine
from mailbox_cleanup.policies.store import PolicyStore

logger = structlog.get_logger()


def build_action_registry(settings: Settings, index: EmailIndexRepository) -> ActionRegistry:
    """Registry for the backend named by ``settings.action_backend``."""

    if settings.action_backend == "index":
        return ActionRegistry.with_backend(LocalIndexBackend(index))
    if settings.action_backend == "gmail":
        from mailbox_cleanup.gmail.client import GmailClient

        return ActionRegistry.with_backend(GmailActionBackend(GmailClient(settings), index))
    raise ConfigurationError(f"Unknown action_backend: {settings.action_backend}")


class AutomationEngine:
    """Facade over the cleanup automation pipeline."""

    def __init__(
        self,
        *,
        settings: Settings,
        index: EmailIndexRepository,
        policy_store: PolicyStore,
        queue: JobQueue,
        config_store: AutomationConfigStore,
        registry: ActionRegistry,
        clock: Clock | None = None,
        signal_source: SignalSource | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._clock = clock or SystemClock()
        self._index = index
        self._policy_store = policy_store
        self._queue = queue
        self._config_store = config_store
        self._registry = registry

        self._health = HealthMonitor(
            index, storage_quota_bytes=settings.storage_quota_bytes, clock=self._clock
        )
        self._policies = PolicyEngine(
            policy_store,
            index,
            clock=self._clock,
            page_size=settings.evaluation_page_size,
            query_observer=self._health.record_query_time,
            protection=self._protection_rules,
        )
        self._processor = JobProcessor(
            queue,
            self._policies,
            registry,
            settings=settings,
            clock=self._clock,
            sleep=sleep,
            protection=self._protection_rules,
        )
        self._scheduler = AutomationScheduler(
            self._policies,
            queue,
            config_store,
            self._spawn,
            settings=settings,
            clock=self._clock,
        )
        self._monitor = EventTriggerMonitor(
            signal_source or self._health,
            config_store,
            self._dispatch_event,
            settings=settings,
        )

        self._tasks: set[asyncio.Task] = set()
        self._loops: list[asyncio.Task] = []
        self._stop_event: asyncio.Event | None = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        registry: ActionRegistry | None = None,
        clock: Clock | None = None,
        signal_source: SignalSource | None = None,
    ) -> AutomationEngine:
        settings = settings or get_settings()
        db_path = settings.db_path
        index = EmailIndexRepository(db_path)
        policy_store = PolicyStore(db_path)
        return cls(
            settings=settings,
            index=index,
            policy_store=policy_store,
            queue=JobQueue(db_path, clock=clock),
            config_store=AutomationConfigStore(db_path, policy_exists=policy_store.exists),
            registry=registry or build_action_registry(settings, index),
            clock=clock,
            signal_source=signal_source,
        )

    @property
    def policies(self) -> PolicyEngine:
        return self._policies

    @property
    def queue(self) -> JobQueue:
        return self._queue

    @property
    def index(self) -> EmailIndexRepository:
        return self._index

    @property
    def health(self) -> HealthMonitor:
        return self._health

    @property
    def scheduler(self) -> AutomationScheduler:
        return self._scheduler

    @property
    def monitor(self) -> EventTriggerMonitor:
        return self._monitor

    @property
    def running(self) -> bool:
        return bool(self._loops) and not all(t.done() for t in self._loops)

    # Lifecycle

    async def initialize(self, *, start_loops: bool = True, reconcile: bool = True) -> None:
        """Prepare storage, recover from a previous run and start background loops.

        Idempotent, and allowed again after ``shutdown()``. Jobs found IN_PROGRESS
        are failed as interrupted; with ``settings.requeue_interrupted`` a fresh
        copy of each is queued and run.
        Pass ``reconcile=False`` for short-lived tools that run next to a live
        engine, which would otherwise fail that engine's running jobs.
        """

        async with self._init_lock:
            if self._initialized:
                return

            for repo in (self._index, self._policy_store, self._queue, self._config_store):
                await asyncio.to_thread(repo.initialize)
            self._queue.reopen()
            self._processor.resume()

            reconciled: list[tuple[str, str | None]] = []
            if reconcile:
                reconciled = await asyncio.to_thread(
                    self._queue.reconcile_interrupted,
                    requeue=self._settings.requeue_interrupted,
                )
            await self._scheduler.initialize()

            self._initialized = True
            logger.info(
                "automation_engine_initialized",
                db_path=str(self._settings.db_path),
                interrupted_jobs=len(reconciled),
                config_version=self._config_store.version,
            )

            for _, requeued_id in reconciled:
                if requeued_id is not None:
                    self._spawn(requeued_id)

            if start_loops:
                self._stop_event = asyncio.Event()
                self._loops = [
                    asyncio.create_task(self._scheduler.run(self._stop_event)),
                    asyncio.create_task(self._monitor.run(self._stop_event)),
                ]

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop tick sources, wait (bounded) for running jobs, then close the queue.

        Running jobs are asked to stop after their current batch. Jobs still
        running when the timeout expires are cancelled and left IN_PROGRESS
        for reconciliation on the next start.
        """

        timeout = self._settings.shutdown_timeout_seconds if timeout is None else timeout

        self._processor.request_stop()
        if self._stop_event is not None:
            self._stop_event.set()
        if self._loops:
            await asyncio.gather(*self._loops, return_exceptions=True)
            self._loops = []

        pending = set(self._tasks)
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
                logger.warning("automation_jobs_cancelled", count=len(still_running))

        self._queue.close()
        self._stop_event = None
        self._initialized = False
        logger.info("automation_engine_shutdown")

    async def wait_for_jobs(self) -> None:
        """Wait until every job task spawned so far has finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Manual pipeline

    async def trigger_manual_cleanup(
        self,
        policy_id: str,
        *,
        dry_run: bool = False,
        max_emails: int | None = None,
        batch_size: int | None = None,
        confirmed: bool = False,
        triggered_by: str = "user_request",
        process: bool = True,
    ) -> str:
        """Validate, enqueue and (by default) start a cleanup job.

        Raises:
            NotFoundError: Unknown policy.
            PolicyDisabledError: Disabled policy and not a dry run.
            ConfirmationRequiredError: Confirmation required and not supplied.
            DryRunRequiredError: The policy must complete a dry run first.
            DeletionLimitError: A delete policy hit its hourly or daily ceiling.
            UnsupportedActionError: No backend handles the policy's action.
            ValidationError: Malformed run parameters.
        """

        policy = await asyncio.to_thread(self._policies.get_policy, policy_id)
        request = self._build_request(
            policy_id=policy_id,
            triggered_by=triggered_by,
            dry_run=dry_run,
            max_emails=max_emails,
            batch_size=batch_size,
            confirmed=confirmed,
        )
        await asyncio.to_thread(
            check_safety_gate, policy, request, self._queue.has_completed_dry_run
        )
        await asyncio.to_thread(self._processor.deletion_allowance, policy, request)
        if not dry_run:
            self._registry.get(policy.action.type)

        job_id = await asyncio.to_thread(self._queue.enqueue, JobType.MANUAL_CLEANUP, request)
        if process:
            self._spawn(job_id)
        return job_id

    async def process_cleanup_job(self, job_id: str) -> JobResult:
        return await self._processor.process(job_id)

    def get_job(self, job_id: str) -> Job:
        return self._queue.get(job_id)

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        policy_id: str | None = None,
        limit: int | None = 50,
    ) -> list[Job]:
        return self._queue.list_jobs(
            status=status, job_type=job_type, policy_id=policy_id, limit=limit
        )

    # Configuration

    def get_configuration(self) -> AutomationConfig:
        return self._config_store.current()

    def update_configuration(self, updates: Mapping[str, Any]) -> AutomationConfig:
        return self._config_store.update(updates)

    def get_status(self) -> dict[str, Any]:
        """Snapshot of automation state for operators."""

        config = self._config_store.current()
        active = self._queue.active_jobs()
        signals = self._monitor.last_signals

        return {
            "initialized": self._initialized,
            "running": self.running,
            "config_version": self._config_store.version,
            "continuous_cleanup_enabled": config.continuous_cleanup.enabled,
            "in_peak_hours": self._scheduler.in_peak_hours(),
            "active_jobs": {
                job_type.value: sum(1 for j in active if j.job_type is job_type)
                for job_type in JobType
            },
            "running_tasks": len(self._tasks),
            "thresholds_breached": self._monitor.breached(),
            "last_signals": (
                None
                if signals is None
                else {
                    "storage_usage_percent": signals.storage_usage_percent,
                    "average_query_time_ms": signals.average_query_time_ms,
                    "cache_hit_rate": signals.cache_hit_rate,
                    "daily_email_volume": signals.daily_email_volume,
                    "sampled_at": signals.sampled_at.isoformat(),
                }
            ),
        }

    # Internals

    async def _dispatch_event(self, trigger: str, policy_ids: list[str]) -> list[str]:
        """Queue event cleanups for ``policy_ids`` in precedence order.

        Records claimed by an earlier policy are excluded from later ones.
        Policies the gate would reject are skipped; ``dry_run_first``
        policies without a dry run get one instead.
        """

        policies: list[Policy] = []
        for policy_id in dict.fromkeys(policy_ids):
            try:
                policies.append(await asyncio.to_thread(self._policies.get_policy, policy_id))
            except MailboxCleanupError as exc:
                logger.warning(
                    "event_policy_skipped", trigger=trigger, policy_id=policy_id, error=str(exc)
                )
        policies.sort(key=lambda p: (p.priority, p.created_at or self._clock.now(), p.id))

        claimed: list[str] = []
        job_ids: list[str] = []
        for policy in policies:
            request = self._build_request(
                policy_id=policy.id,
                triggered_by=f"event:{trigger}",
                max_emails=self._settings.event_max_emails,
                excluded_ids=list(claimed),
            )
            try:
                try:
                    await asyncio.to_thread(
                        check_safety_gate, policy, request, self._queue.has_completed_dry_run
                    )
                except DryRunRequiredError:
                    request = request.model_copy(update={"dry_run": True})
                allowance = await asyncio.to_thread(
                    self._processor.deletion_allowance, policy, request
                )
                if not request.dry_run:
                    self._registry.get(policy.action.type)
                max_emails = request.max_emails
                if allowance is not None:
                    max_emails = min(max_emails or allowance, allowance)
                candidates = await self._policies.evaluate(
                    policy.id, max_emails=max_emails, exclude_ids=claimed
                )
            except MailboxCleanupError as exc:
                logger.warning(
                    "event_policy_skipped", trigger=trigger, policy_id=policy.id, error=str(exc)
                )
                continue

            if not request.dry_run:
                claimed.extend(candidates.record_ids)
            job_id = await asyncio.to_thread(self._queue.enqueue, JobType.EVENT_CLEANUP, request)
            self._spawn(job_id)
            job_ids.append(job_id)

        logger.info("event_cleanup_dispatched", trigger=trigger, jobs=job_ids)
        return job_ids

    def _protection_rules(self) -> ProtectionConfig:
        return self._config_store.current().protection

    def _build_request(self, **params: Any) -> CleanupRequest:
        try:
            return CleanupRequest(**params)
        except PydanticValidationError as exc:
            messages = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            ]
            raise ValidationError(
                f"Invalid cleanup request: {', '.join(messages)}", messages
            ) from exc

    def _spawn(self, job_id: str) -> asyncio.Task:
        task = asyncio.create_task(self._run_job(job_id), name=f"cleanup-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_job(self, job_id: str) -> JobResult | None:
        try:
            return await self._processor.process(job_id)
        except MailboxCleanupError as exc:
            logger.warning("cleanup_job_not_completed", job_id=job_id, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("cleanup_job_crashed", job_id=job_id, error=str(exc))
        return None
