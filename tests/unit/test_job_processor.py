"""Unit tests for cleanup job execution."""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

import pytest

from mailbox_cleanup.actions import ActionOutcome, ActionRegistry, LocalIndexBackend
from mailbox_cleanup.exceptions import (
    BackendError,
    ConfirmationRequiredError,
    DeletionLimitError,
    DryRunRequiredError,
    JobAlreadyClaimedError,
    NotFoundError,
    PolicyDisabledError,
    UnsupportedActionError,
)
from mailbox_cleanup.index import SearchCriteria
from mailbox_cleanup.jobs import JobProcessor, check_deletion_limits, check_safety_gate
from mailbox_cleanup.models import (
    CleanupRequest,
    JobResult,
    JobStatus,
    JobType,
    Policy,
    ProtectionConfig,
)

SPAM_POLICY = {
    "id": "old-spam",
    "name": "Trash old spam",
    "criteria": {"age_days_min": 30, "spam_score_min": 0.9},
    "action": {"type": "delete"},
}


@pytest.fixture
def processor(queue, policy_engine, fake_backend, settings, clock) -> JobProcessor:
    return JobProcessor(
        queue,
        policy_engine,
        ActionRegistry.with_backend(fake_backend),
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def spam_index(index, make_record):
    """Five old spam records of 1000 bytes each, plus one young one."""
    index.upsert_many(
        [make_record(f"s{i}", age_days=40 + i, spam_score=0.99) for i in range(5)]
        + [make_record("young", age_days=1, spam_score=0.99)]
    )
    return index


def _enqueue(queue, policy_id: str = "old-spam", **params) -> str:
    return queue.enqueue(JobType.MANUAL_CLEANUP, CleanupRequest(policy_id=policy_id, **params))


class CrashingBackend:
    """Backend whose second call raises an unexpected error."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    async def execute(
        self, action_type: str, record_ids: list[str], options: Mapping[str, Any]
    ) -> ActionOutcome:
        self.calls.append(list(record_ids))
        if len(self.calls) == 2:
            raise RuntimeError("connection reset by peer")
        return ActionOutcome(success=True, affected_count=len(record_ids))


class TestSafetyGate:
    """Test suite for the pre-execution safety gate."""

    def _policy(self, **safety) -> Policy:
        return Policy.model_validate({**SPAM_POLICY, "safety": safety})

    def test_disabled_policy_blocked(self) -> None:
        """Test that disabled policies cannot run destructively."""
        policy = Policy.model_validate({**SPAM_POLICY, "enabled": False})

        with pytest.raises(PolicyDisabledError):
            check_safety_gate(policy, CleanupRequest(policy_id=policy.id), lambda *_: True)

    def test_confirmation_required(self) -> None:
        """Test that confirmation is required when the policy asks for it."""
        policy = self._policy(require_confirmation=True)

        with pytest.raises(ConfirmationRequiredError):
            check_safety_gate(policy, CleanupRequest(policy_id=policy.id), lambda *_: True)
        check_safety_gate(
            policy, CleanupRequest(policy_id=policy.id, confirmed=True), lambda *_: True
        )

    def test_dry_run_first(self) -> None:
        """Test that a completed dry run is required when the policy asks for it."""
        policy = self._policy(dry_run_first=True)

        with pytest.raises(DryRunRequiredError):
            check_safety_gate(policy, CleanupRequest(policy_id=policy.id), lambda *_: False)
        check_safety_gate(policy, CleanupRequest(policy_id=policy.id), lambda *_: True)

    def test_dry_runs_are_exempt(self) -> None:
        """Test that dry runs pass the gate whatever the policy says."""
        policy = Policy.model_validate(
            {
                **SPAM_POLICY,
                "enabled": False,
                "safety": {"require_confirmation": True, "dry_run_first": True},
            }
        )

        request = CleanupRequest(policy_id=policy.id, dry_run=True)
        check_safety_gate(policy, request, lambda *_: False)


    def test_deletion_limits(self, clock) -> None:
        """Test hourly and daily deletion ceilings for delete policies."""
        policy = self._policy()
        request = CleanupRequest(policy_id=policy.id)
        rules = ProtectionConfig(max_deletions_per_hour=10, max_deletions_per_day=50)
        windows: list[timedelta] = []

        def used(count_hour: int, count_day: int):
            def deletions_since(since):
                windows.append(clock.now() - since)
                return count_hour if clock.now() - since <= timedelta(hours=1) else count_day

            return deletions_since

        now = clock.now()
        assert check_deletion_limits(policy, request, rules, used(4, 4), now) == 6
        assert check_deletion_limits(policy, request, rules, used(4, 47), now) == 3
        assert set(windows) == {timedelta(hours=1), timedelta(days=1)}
        with pytest.raises(DeletionLimitError) as exc_info:
            check_deletion_limits(policy, request, rules, used(10, 10), now)
        assert exc_info.value.window == "hour"
        with pytest.raises(DeletionLimitError) as exc_info:
            check_deletion_limits(policy, request, rules, used(0, 50), now)
        assert exc_info.value.window == "day"

    def test_deletion_limits_skip_archives_and_dry_runs(self, clock) -> None:
        """Test that only destructive delete runs are limited."""
        rules = ProtectionConfig(max_deletions_per_hour=1, max_deletions_per_day=1)
        archive = Policy.model_validate({**SPAM_POLICY, "action": {"type": "archive"}})
        delete = self._policy()

        def exhausted(since) -> int:
            return 99

        assert (
            check_deletion_limits(
                archive, CleanupRequest(policy_id=archive.id), rules, exhausted, clock.now()
            )
            is None
        )
        assert (
            check_deletion_limits(
                delete,
                CleanupRequest(policy_id=delete.id, dry_run=True),
                rules,
                exhausted,
                clock.now(),
            )
            is None
        )
        unlimited = ProtectionConfig(max_deletions_per_hour=None, max_deletions_per_day=None)
        assert (
            check_deletion_limits(
                delete, CleanupRequest(policy_id=delete.id), unlimited, exhausted, clock.now()
            )
            is None
        )


class TestJobProcessor:
    """Test suite for JobProcessor."""

    @pytest.mark.asyncio
    async def test_delete_run_completes(
        self, processor, queue, policy_engine, spam_index, fake_backend
    ) -> None:
        """Test a destructive run over all candidates."""
        policy_engine.create_policy(SPAM_POLICY)
        job_id = _enqueue(queue)

        result = await processor.process(job_id)

        assert result.success is True
        assert result.emails_processed == 5
        assert result.emails_deleted == 5
        assert result.emails_archived == 0
        assert result.storage_freed == 5000
        assert fake_backend.processed_ids == ["s4", "s3", "s2", "s1", "s0"]
        assert fake_backend.calls[0][2] == {"permanent": False}

        job = queue.get(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.results == result
        assert job.progress is not None and job.progress.percent == 100.0

    @pytest.mark.asyncio
    async def test_batches_respect_batch_size(
        self, processor, queue, policy_engine, spam_index, fake_backend
    ) -> None:
        """Test that candidates are handed to the backend in batches."""
        policy_engine.create_policy(SPAM_POLICY)
        job_id = _enqueue(queue, batch_size=2)

        result = await processor.process(job_id)

        assert [len(ids) for _, ids, _ in fake_backend.calls] == [2, 2, 1]
        assert result.batches_total == 3
        progress = queue.get(job_id).progress
        assert progress.current_batch == 3
        assert progress.emails_cleaned == 5

    @pytest.mark.asyncio
    async def test_max_emails_limits_the_run(
        self, processor, queue, policy_engine, spam_index, fake_backend
    ) -> None:
        """Test that the request's max_emails caps the records touched."""
        policy_engine.create_policy(SPAM_POLICY)

        result = await processor.process(_enqueue(queue, max_emails=2))

        assert fake_backend.processed_ids == ["s4", "s3"]
        assert result.truncated is True

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(
        self, processor, queue, policy_engine, spam_index, fake_backend
    ) -> None:
        """Test that a dry run reports candidates without calling the backend."""
        policy_engine.create_policy(SPAM_POLICY)

        first = await processor.process(_enqueue(queue, dry_run=True))
        second = await processor.process(_enqueue(queue, dry_run=True))

        assert fake_backend.calls == []
        assert first.dry_run is True
        assert first.emails_processed == 5
        assert first.storage_freed == 5000
        assert first.emails_deleted == 0
        assert second.emails_processed == first.emails_processed
        assert spam_index.count(SearchCriteria()) == 6

    @pytest.mark.asyncio
    async def test_dry_run_allowed_on_disabled_policy(
        self, processor, queue, policy_engine, spam_index
    ) -> None:
        """Test that disabled policies can still be previewed."""
        policy_engine.create_policy({**SPAM_POLICY, "enabled": False})

        result = await processor.process(_enqueue(queue, dry_run=True))

        assert result.success is True
        assert result.emails_processed == 5

    @pytest.mark.asyncio
    async def test_dry_run_first_unlocks_after_dry_run(
        self, processor, queue, policy_engine, spam_index, fake_backend, clock
    ) -> None:
        """Test the dry-run-first gate end to end."""
        policy_engine.create_policy({**SPAM_POLICY, "safety": {"dry_run_first": True}})

        blocked = _enqueue(queue)
        with pytest.raises(DryRunRequiredError):
            await processor.process(blocked)
        assert queue.get(blocked).status is JobStatus.FAILED

        clock.advance(seconds=1)
        await processor.process(_enqueue(queue, dry_run=True))
        result = await processor.process(_enqueue(queue))

        assert result.emails_deleted == 5

    @pytest.mark.asyncio
    async def test_policy_update_requires_a_new_dry_run(
        self, processor, queue, policy_engine, spam_index, clock
    ) -> None:
        """Test that a dry run only counts for the policy version it ran against."""
        policy_engine.create_policy({**SPAM_POLICY, "safety": {"dry_run_first": True}})
        await processor.process(_enqueue(queue, dry_run=True))

        clock.advance(minutes=1)
        policy_engine.update_policy("old-spam", {"criteria": {"spam_score_min": 0.5}})

        with pytest.raises(DryRunRequiredError):
            await processor.process(_enqueue(queue))

    @pytest.mark.asyncio
    async def test_gate_failures_fail_the_job(
        self, processor, queue, policy_engine, spam_index, fake_backend
    ) -> None:
        """Test that gate failures are recorded on the job and nothing is touched."""
        policy_engine.create_policy({**SPAM_POLICY, "enabled": False})
        disabled = _enqueue(queue)
        with pytest.raises(PolicyDisabledError):
            await processor.process(disabled)

        policy_engine.create_policy(
            {**SPAM_POLICY, "id": "confirm", "safety": {"require_confirmation": True}}
        )
        unconfirmed = _enqueue(queue, "confirm")
        with pytest.raises(ConfirmationRequiredError):
            await processor.process(unconfirmed)

        assert queue.get(disabled).status is JobStatus.FAILED
        assert "disabled" in queue.get(disabled).error_details
        assert queue.get(unconfirmed).status is JobStatus.FAILED
        assert fake_backend.calls == []

    @pytest.mark.asyncio
    async def test_confirmed_request_runs(
        self, processor, queue, policy_engine, spam_index
    ) -> None:
        """Test that a confirmed request passes the confirmation gate."""
        policy_engine.create_policy({**SPAM_POLICY, "safety": {"require_confirmation": True}})

        result = await processor.process(_enqueue(queue, confirmed=True))

        assert result.emails_deleted == 5

    @pytest.mark.asyncio
    async def test_deleted_policy_fails_job(self, processor, queue, policy_engine) -> None:
        """Test a job whose policy was removed after it was queued."""
        policy_engine.create_policy(SPAM_POLICY)
        job_id = _enqueue(queue)
        policy_engine.delete_policy("old-spam")

        with pytest.raises(NotFoundError):
            await processor.process(job_id)
        assert queue.get(job_id).status is JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_unsupported_action_fails_job(
        self, queue, policy_engine, spam_index, fake_backend, settings, clock
    ) -> None:
        """Test a policy action with no registered backend."""
        registry = ActionRegistry()
        registry.register("delete", fake_backend)
        processor = JobProcessor(queue, policy_engine, registry, settings=settings, clock=clock)
        policy_engine.create_policy({**SPAM_POLICY, "action": {"type": "archive"}})
        job_id = _enqueue(queue)

        with pytest.raises(UnsupportedActionError):
            await processor.process(job_id)
        assert queue.get(job_id).status is JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_job_processed_at_most_once(
        self, processor, queue, policy_engine, spam_index, fake_backend
    ) -> None:
        """Test that a finished job cannot be run again."""
        policy_engine.create_policy(SPAM_POLICY)
        job_id = _enqueue(queue)
        await processor.process(job_id)

        with pytest.raises(JobAlreadyClaimedError):
            await processor.process(job_id)
        assert len(fake_backend.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_processing_runs_once(
        self, processor, queue, policy_engine, spam_index, fake_backend
    ) -> None:
        """Test that two processors racing for one job produce one run and one loser."""
        policy_engine.create_policy(SPAM_POLICY)
        job_id = _enqueue(queue)

        outcomes = await asyncio.gather(
            processor.process(job_id), processor.process(job_id), return_exceptions=True
        )

        results = [o for o in outcomes if isinstance(o, JobResult)]
        losers = [o for o in outcomes if isinstance(o, JobAlreadyClaimedError)]
        assert len(results) == 1
        assert len(losers) == 1
        assert len(fake_backend.calls) == 1
        assert queue.get(job_id).status is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_transient_backend_error_is_retried(
        self, processor, queue, policy_engine, spam_index, fake_backend
    ) -> None:
        """Test that a batch succeeds after a retry."""
        policy_engine.create_policy(SPAM_POLICY)
        fake_backend.failures_remaining = 1

        result = await processor.process(_enqueue(queue))

        assert len(fake_backend.calls) == 2
        assert result.success is True
        assert result.emails_deleted == 5

    @pytest.mark.asyncio
    async def test_one_failed_batch_completes_with_errors(
        self, processor, queue, policy_engine, spam_index, fake_backend, settings
    ) -> None:
        """Test that a batch failing every retry is reported but does not fail the job."""
        policy_engine.create_policy(SPAM_POLICY)
        # First batch fails both attempts, the rest succeed.
        fake_backend.failures_remaining = settings.backend_max_retries + 1
        job_id = _enqueue(queue, batch_size=3)

        result = await processor.process(job_id)

        assert queue.get(job_id).status is JobStatus.COMPLETED
        assert result.success is False
        assert result.batches_failed == 1
        assert result.emails_processed == 5
        assert result.emails_deleted == 2
        assert result.storage_freed == 2000
        assert len(result.errors) == 1

    @pytest.mark.asyncio
    async def test_all_batches_failing_fails_job(
        self, processor, queue, policy_engine, spam_index, fake_backend
    ) -> None:
        """Test that a job whose every batch failed is FAILED."""
        policy_engine.create_policy(SPAM_POLICY)
        fake_backend.always_fail = True
        job_id = _enqueue(queue, batch_size=2)

        with pytest.raises(BackendError):
            await processor.process(job_id)

        job = queue.get(job_id)
        assert job.status is JobStatus.FAILED
        assert "backend unavailable" in job.error_details

    @pytest.mark.asyncio
    async def test_unexpected_batch_error_fails_only_that_batch(
        self, queue, policy_engine, spam_index, settings, clock
    ) -> None:
        """Test that an unexpected error in a later batch keeps the earlier batches' counts."""
        backend = CrashingBackend()
        registry = ActionRegistry.with_backend(backend)
        processor = JobProcessor(queue, policy_engine, registry, settings=settings, clock=clock)
        policy_engine.create_policy(SPAM_POLICY)
        job_id = _enqueue(queue, batch_size=2)

        result = await processor.process(job_id)

        assert backend.calls == [["s4", "s3"], ["s2", "s1"], ["s0"]]
        job = queue.get(job_id)
        assert job.status is JobStatus.COMPLETED
        assert result.success is False
        assert result.batches_total == 3
        assert result.batches_failed == 1
        assert result.emails_processed == 5
        assert result.emails_deleted == 3
        assert result.storage_freed == 3000
        assert result.errors == ["batch 2/3: connection reset by peer"]

    @pytest.mark.asyncio
    async def test_aborted_run_keeps_partial_results(
        self, processor, queue, policy_engine, spam_index, fake_backend, monkeypatch
    ) -> None:
        """Test that a run cut short after some batches records what it already did."""
        policy_engine.create_policy(SPAM_POLICY)
        job_id = _enqueue(queue, batch_size=2)
        update_progress = queue.update_progress
        progress_calls = []

        def flaky_update_progress(job_id, progress):
            progress_calls.append(progress)
            if len(progress_calls) == 3:
                raise sqlite3.OperationalError("disk I/O error")
            update_progress(job_id, progress)

        monkeypatch.setattr(queue, "update_progress", flaky_update_progress)

        with pytest.raises(sqlite3.OperationalError):
            await processor.process(job_id)

        job = queue.get(job_id)
        assert job.status is JobStatus.FAILED
        assert job.error_details == "disk I/O error"
        assert job.results is not None
        assert job.results.success is False
        assert job.results.emails_processed == 4
        assert job.results.emails_deleted == 4
        assert job.results.truncated is True
        assert job.progress.current_batch == 2
        assert len(fake_backend.calls) == 2

    @pytest.mark.asyncio
    async def test_stop_request_skips_remaining_batches(
        self, processor, queue, policy_engine, spam_index, fake_backend
    ) -> None:
        """Test that a stopped processor completes the job without starting new batches."""
        policy_engine.create_policy(SPAM_POLICY)
        processor.request_stop()

        result = await processor.process(_enqueue(queue, batch_size=2))

        assert fake_backend.calls == []
        assert result.emails_processed == 0
        assert result.truncated is True
        assert result.errors == ["stopped before batch 1/3: shutdown requested"]

        processor.resume()
        resumed = await processor.process(_enqueue(queue, batch_size=2))
        assert resumed.emails_deleted == 5

    @pytest.mark.asyncio
    async def test_deletion_ceiling_caps_runs(
        self, queue, policy_engine, spam_index, fake_backend, settings, clock
    ) -> None:
        """Test that delete runs shrink to the remaining allowance and then fail."""
        rules = ProtectionConfig(max_deletions_per_hour=3, max_deletions_per_day=3)
        processor = JobProcessor(
            queue,
            policy_engine,
            ActionRegistry.with_backend(fake_backend),
            settings=settings,
            clock=clock,
            protection=lambda: rules,
        )
        policy_engine.create_policy(SPAM_POLICY)

        first = await processor.process(_enqueue(queue))
        assert first.emails_deleted == 3
        assert first.truncated is True

        blocked = _enqueue(queue)
        with pytest.raises(DeletionLimitError):
            await processor.process(blocked)
        assert queue.get(blocked).status is JobStatus.FAILED
        assert "Deletion limit reached: 3/3" in queue.get(blocked).error_details

        preview = await processor.process(_enqueue(queue, dry_run=True))
        assert preview.emails_processed == 5
        assert fake_backend.processed_ids == ["s4", "s3", "s2"]

    @pytest.mark.asyncio
    async def test_per_record_failures_are_reported(
        self, processor, queue, policy_engine, spam_index, fake_backend
    ) -> None:
        """Test that records rejected by the backend are counted as errors."""
        policy_engine.create_policy(SPAM_POLICY)
        fake_backend.failed_ids = {"s3"}

        result = await processor.process(_enqueue(queue))

        assert result.success is False
        assert result.emails_processed == 5
        assert result.emails_deleted == 4
        assert result.errors == ["s3: rejected"]

    @pytest.mark.asyncio
    async def test_excluded_ids_are_skipped(
        self, processor, queue, policy_engine, spam_index, fake_backend
    ) -> None:
        """Test that records claimed elsewhere are not handed to the backend."""
        policy_engine.create_policy(SPAM_POLICY)

        await processor.process(_enqueue(queue, excluded_ids=["s4", "s0"]))

        assert fake_backend.processed_ids == ["s3", "s2", "s1"]

    @pytest.mark.asyncio
    async def test_local_backend_run_is_idempotent(
        self, queue, policy_engine, spam_index, settings, clock
    ) -> None:
        """Test that a second run finds nothing once the first has cleaned up."""
        registry = ActionRegistry.with_backend(LocalIndexBackend(spam_index))
        processor = JobProcessor(queue, policy_engine, registry, settings=settings, clock=clock)
        policy_engine.create_policy(SPAM_POLICY)

        first = await processor.process(_enqueue(queue))
        second = await processor.process(_enqueue(queue))

        assert first.emails_deleted == 5
        assert second.emails_processed == 0
        assert second.success is True
        assert [r.gmail_id for r in spam_index.search(SearchCriteria())] == ["young"]
