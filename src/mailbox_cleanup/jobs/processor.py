"""Cleanup job execution.

A processor owns a job from claim to terminal state:

1. claim (PENDING -> IN_PROGRESS; losing claimants get ``JobAlreadyClaimedError``)
2. safety gate (enabled, confirmation, dry-run-first, deletion ceilings)
3. re-evaluate the policy's candidates against the current index
4. dry run: report only; otherwise hand batches to the action backend
5. COMPLETED with a result, or FAILED with error details (plus the partial
   result when some batches already ran)

A stop request is honoured between batches: the job completes with what the
finished batches did. If the task is cancelled mid-batch instead, the job
stays IN_PROGRESS and is picked up by restart reconciliation.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog

from mailbox_cleanup.actions.base import ActionBackend, ActionOutcome, ActionRegistry
from mailbox_cleanup.clock import Clock, SystemClock
from mailbox_cleanup.config import Settings, get_settings
from mailbox_cleanup.exceptions import (
    BackendError,
    ConfirmationRequiredError,
    DeletionLimitError,
    DryRunRequiredError,
    PartialBatchFailure,
    PolicyDisabledError,
)
from mailbox_cleanup.jobs.queue import JobQueue
from mailbox_cleanup.models import (
    CleanupRequest,
    JobProgress,
    JobResult,
    JobStatus,
    Policy,
    ProtectionConfig,
)
from mailbox_cleanup.policies.engine import CandidateSet, PolicyEngine, ProtectionProvider
from mailbox_cleanup.utils import chunked, retry_on_failure

logger = structlog.get_logger()


def check_safety_gate(
    policy: Policy,
    request: CleanupRequest,
    has_completed_dry_run: Callable[[str, datetime | None], bool],
) -> None:
    """Raise if ``request`` may not run ``policy`` right now.

    Dry runs are exempt from the confirmation and dry-run-first checks and
    may evaluate disabled policies.
    """

    if request.dry_run:
        return
    if not policy.enabled:
        raise PolicyDisabledError(policy.id)
    if policy.safety.require_confirmation and not request.confirmed:
        raise ConfirmationRequiredError(policy.id)
    if policy.safety.dry_run_first and not has_completed_dry_run(policy.id, policy.updated_at):
        raise DryRunRequiredError(policy.id)


def check_deletion_limits(
    policy: Policy,
    request: CleanupRequest,
    rules: ProtectionConfig | None,
    deletions_since: Callable[[datetime], int],
    now: datetime,
) -> int | None:
    """Deletions still allowed for this run, or ``None`` when no ceiling applies.

    Only non-dry-run delete actions are limited.

    Raises:
        DeletionLimitError: The hourly or daily ceiling is already reached.
    """

    if request.dry_run or rules is None or policy.action.type != "delete":
        return None

    remaining: int | None = None
    windows = (
        ("hour", timedelta(hours=1), rules.max_deletions_per_hour),
        ("day", timedelta(days=1), rules.max_deletions_per_day),
    )
    for window, span, limit in windows:
        if limit is None:
            continue
        used = deletions_since(now - span)
        if used >= limit:
            raise DeletionLimitError(window, used, limit)
        left = limit - used
        remaining = left if remaining is None else min(remaining, left)
    return remaining


@dataclass
class _Tally:
    processed: int = 0
    cleaned: int = 0
    storage_freed: int = 0
    batches_failed: int = 0
    errors: list[str] = field(default_factory=list)
    progress: JobProgress | None = None


class JobProcessor:
    """Runs claimed cleanup jobs through the policy engine and action backends."""

    def __init__(
        self,
        queue: JobQueue,
        engine: PolicyEngine,
        registry: ActionRegistry,
        *,
        settings: Settings | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        protection: ProtectionProvider | None = None,
    ) -> None:
        self._queue = queue
        self._engine = engine
        self._registry = registry
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self._protection = protection
        self._stopping = False

    @property
    def stopping(self) -> bool:
        return self._stopping

    def request_stop(self) -> None:
        """Finish running jobs after their current batch instead of starting the next."""

        self._stopping = True
        logger.info("job_processor_stop_requested")

    def resume(self) -> None:
        self._stopping = False

    def deletion_allowance(self, policy: Policy, request: CleanupRequest) -> int | None:
        rules = self._protection() if self._protection is not None else None
        return check_deletion_limits(
            policy, request, rules, self._queue.deletions_since, self._clock.now()
        )

    async def process(self, job_id: str) -> JobResult:
        """Execute a PENDING job to completion.

        Raises:
            NotFoundError: Unknown job id, or the job's policy no longer exists.
            JobAlreadyClaimedError: Another processor owns or finished the job.
            PolicyDisabledError, ConfirmationRequiredError, DryRunRequiredError,
            DeletionLimitError, UnsupportedActionError: The job was marked FAILED
            and the cause re-raised.
        """

        job = await asyncio.to_thread(self._queue.claim, job_id)
        request = job.request_params
        started_at = self._clock.now()

        logger.info(
            "cleanup_job_started",
            job_id=job_id,
            job_type=job.job_type.value,
            policy_id=request.policy_id,
            dry_run=request.dry_run,
        )

        try:
            policy = await asyncio.to_thread(self._engine.get_policy, request.policy_id)
            await asyncio.to_thread(
                check_safety_gate, policy, request, self._queue.has_completed_dry_run
            )
            allowance = await asyncio.to_thread(self.deletion_allowance, policy, request)
            backend = None if request.dry_run else self._registry.get(policy.action.type)

            max_emails = request.max_emails
            if allowance is not None:
                max_emails = allowance if max_emails is None else min(max_emails, allowance)

            candidates = await self._engine.evaluate(
                policy.id,
                max_emails=max_emails,
                exclude_ids=request.excluded_ids,
                allow_disabled=request.dry_run,
            )
        except Exception as exc:
            await self._fail(job_id, str(exc))
            raise

        if request.dry_run or backend is None:
            result = self._dry_run_result(job_id, candidates, started_at)
            progress = JobProgress(emails_analyzed=len(candidates), percent=100.0)
            await asyncio.to_thread(self._queue.complete, job_id, result, progress)
            logger.info(
                "cleanup_dry_run_completed",
                job_id=job_id,
                policy_id=policy.id,
                candidates=len(candidates),
                truncated=candidates.truncated,
            )
            return result

        try:
            return await self._run_batches(
                job_id, policy, request, backend, candidates, started_at
            )
        except Exception as exc:
            current = await asyncio.to_thread(self._queue.get, job_id)
            if current.status is JobStatus.IN_PROGRESS:
                await self._fail(job_id, str(exc))
            raise

    async def _run_batches(
        self,
        job_id: str,
        policy: Policy,
        request: CleanupRequest,
        backend: ActionBackend,
        candidates: CandidateSet,
        started_at: datetime,
    ) -> JobResult:
        action_type = policy.action.type
        options = policy.action.model_dump(exclude={"type"})
        sizes = {c.record_id: c.size_bytes for c in candidates.candidates}
        batches = chunked(candidates.record_ids, request.batch_size or self._settings.batch_size)
        tally = _Tally()
        stopped = False

        try:
            tally.progress = JobProgress(
                emails_analyzed=len(candidates), total_batches=len(batches)
            )
            await asyncio.to_thread(self._queue.update_progress, job_id, tally.progress)

            for index, batch in enumerate(batches, start=1):
                if self._stopping:
                    stopped = True
                    tally.errors.append(
                        f"stopped before batch {index}/{len(batches)}: shutdown requested"
                    )
                    logger.warning(
                        "cleanup_job_stopped", job_id=job_id, batch=index, total=len(batches)
                    )
                    break

                failed_ids = await self._run_one_batch(
                    job_id, backend, action_type, batch, options, index, len(batches), tally
                )
                succeeded = [record_id for record_id in batch if record_id not in failed_ids]
                tally.processed += len(batch)
                tally.cleaned += len(succeeded)
                tally.storage_freed += sum(sizes.get(record_id, 0) for record_id in succeeded)

                tally.progress = JobProgress(
                    emails_analyzed=len(candidates),
                    emails_cleaned=tally.cleaned,
                    current_batch=index,
                    total_batches=len(batches),
                    percent=round(index / len(batches) * 100.0, 1),
                )
                await asyncio.to_thread(self._queue.update_progress, job_id, tally.progress)

                if index < len(batches) and self._settings.batch_delay_seconds > 0:
                    await self._sleep(self._settings.batch_delay_seconds)
        except Exception as exc:
            tally.errors.append(f"aborted after {tally.processed} email(s): {exc}")
            partial = self._batch_result(
                job_id, policy, candidates, len(batches), tally, started_at, truncated=True
            )
            current = await asyncio.to_thread(self._queue.get, job_id)
            if current.status is JobStatus.IN_PROGRESS:
                await self._fail(job_id, str(exc), tally.progress, partial)
            raise

        if batches and tally.batches_failed == len(batches):
            error = f"All {len(batches)} batch(es) failed: {tally.errors[-1]}"
            failed = self._batch_result(
                job_id, policy, candidates, len(batches), tally, started_at
            )
            await self._fail(job_id, error, tally.progress, failed)
            raise BackendError(error)

        result = self._batch_result(
            job_id,
            policy,
            candidates,
            len(batches),
            tally,
            started_at,
            truncated=candidates.truncated or stopped,
        )
        await asyncio.to_thread(self._queue.complete, job_id, result, tally.progress)

        logger.info(
            "cleanup_job_completed",
            job_id=job_id,
            policy_id=policy.id,
            action=action_type,
            emails_processed=tally.processed,
            emails_cleaned=tally.cleaned,
            storage_freed=tally.storage_freed,
            errors=len(tally.errors),
            stopped=stopped,
        )
        return result

    async def _run_one_batch(
        self,
        job_id: str,
        backend: ActionBackend,
        action_type: str,
        batch: list[str],
        options: dict,
        index: int,
        total: int,
        tally: _Tally,
    ) -> set[str]:
        """Execute one batch and return the ids that were not cleaned.

        Any backend failure, expected or not, fails only this batch.
        """

        try:
            outcome = await self._execute_batch(backend, action_type, batch, options)
        except PartialBatchFailure as exc:
            tally.errors.extend(exc.errors)
            return set(exc.failed_ids)
        except Exception as exc:
            tally.batches_failed += 1
            tally.errors.append(f"batch {index}/{total}: {exc}")
            log = logger.error if isinstance(exc, BackendError) else logger.exception
            log(
                "cleanup_batch_failed",
                job_id=job_id,
                batch=index,
                total_batches=total,
                error=str(exc),
            )
            return set(batch)

        tally.errors.extend(outcome.errors)
        failed_ids = set(outcome.failed_ids)
        if not outcome.success and not failed_ids:
            failed_ids = set(batch)
        return failed_ids

    async def _execute_batch(
        self, backend: ActionBackend, action_type: str, batch: list[str], options: dict
    ) -> ActionOutcome:
        @retry_on_failure(
            max_retries=self._settings.backend_max_retries,
            delay=self._settings.backend_retry_delay_seconds,
            retry_on=(BackendError,),
        )
        async def _attempt() -> ActionOutcome:
            return await backend.execute(action_type, batch, options)

        return await _attempt()

    def _batch_result(
        self,
        job_id: str,
        policy: Policy,
        candidates: CandidateSet,
        batches_total: int,
        tally: _Tally,
        started_at: datetime,
        *,
        truncated: bool = False,
    ) -> JobResult:
        action_type = policy.action.type
        return JobResult(
            execution_id=job_id,
            policy_id=policy.id,
            success=not tally.errors,
            dry_run=False,
            emails_processed=tally.processed,
            emails_deleted=tally.cleaned if action_type == "delete" else 0,
            emails_archived=tally.cleaned if action_type == "archive" else 0,
            storage_freed=tally.storage_freed,
            errors=list(tally.errors),
            truncated=truncated or candidates.truncated,
            batches_total=batches_total,
            batches_failed=tally.batches_failed,
            started_at=started_at,
            completed_at=self._clock.now(),
        )

    def _dry_run_result(
        self, job_id: str, candidates: CandidateSet, started_at: datetime
    ) -> JobResult:
        return JobResult(
            execution_id=job_id,
            policy_id=candidates.policy_id,
            success=True,
            dry_run=True,
            emails_processed=len(candidates),
            storage_freed=candidates.total_size_bytes,
            truncated=candidates.truncated,
            started_at=started_at,
            completed_at=self._clock.now(),
        )

    async def _fail(
        self,
        job_id: str,
        error: str,
        progress: JobProgress | None = None,
        results: JobResult | None = None,
    ) -> None:
        logger.error("cleanup_job_failed", job_id=job_id, error=error)
        await asyncio.to_thread(self._queue.fail, job_id, error, progress, results)
