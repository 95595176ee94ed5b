"""Durable cleanup job queue.

Jobs are rows in the shared SQLite database. Every status change is a single
compare-and-set ``UPDATE ... WHERE status = <expected>``, so two processors
racing for the same job cannot both win, and a terminal job is never
rewritten.

State machine::

    PENDING -> IN_PROGRESS -> COMPLETED
                           -> FAILED
"""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Mapping
from datetime import datetime
from typing import Any

import structlog

from mailbox_cleanup.clock import Clock, SystemClock, to_epoch_ms
from mailbox_cleanup.db import SqliteRepository
from mailbox_cleanup.exceptions import (
    InvalidTransitionError,
    JobAlreadyClaimedError,
    NotFoundError,
    QueueClosedError,
    ValidationError,
)
from mailbox_cleanup.models import (
    CleanupRequest,
    Job,
    JobProgress,
    JobResult,
    JobStatus,
    JobType,
)

logger = structlog.get_logger()

_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.IN_PROGRESS}),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

_PATCH_KEYS = frozenset({"progress", "results", "error_details"})

_JOB_PREFIXES = {
    JobType.MANUAL_CLEANUP: "manual",
    JobType.SCHEDULED_CLEANUP: "scheduled",
    JobType.EVENT_CLEANUP: "event",
}

INTERRUPTED_PREFIX = "interrupted"

_SELECT = """
    SELECT
        job_id,
        job_type,
        status,
        request_json,
        progress_json,
        results_json,
        error_details,
        created_at_iso,
        started_at_iso,
        completed_at_iso
    FROM cleanup_jobs
"""


def is_legal_transition(current: JobStatus, requested: JobStatus) -> bool:
    return requested in _ALLOWED_TRANSITIONS[current]


class JobQueue(SqliteRepository):
    """Persisted job records and their state machine."""

    schema_key = "job_queue_schema_version"
    schema_version = 1

    def __init__(self, db_path, *, clock: Clock | None = None) -> None:
        super().__init__(db_path)
        self._clock = clock or SystemClock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop accepting new jobs. Existing rows stay readable and transitionable."""

        self._closed = True
        logger.info("job_queue_closed")

    def reopen(self) -> None:
        """Accept new jobs again after ``close()``."""

        if self._closed:
            self._closed = False
            logger.info("job_queue_reopened")

    def _make_job_id(self, job_type: JobType) -> str:
        stamp = self._clock.now().strftime("%Y%m%d-%H%M%S")
        return f"job-{stamp}-{_JOB_PREFIXES[job_type]}-{uuid.uuid4().hex[:6]}"

    def enqueue(self, job_type: JobType, request_params: CleanupRequest) -> str:
        """Persist a new PENDING job and return its id.

        Raises:
            QueueClosedError: If the queue has been closed.
        """

        if self._closed:
            raise QueueClosedError("Job queue is closed")

        job_type = JobType(job_type)
        now = self._clock.now()
        job_id = self._make_job_id(job_type)

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO cleanup_jobs (
                    job_id,
                    job_type,
                    status,
                    policy_id,
                    dry_run,
                    request_json,
                    created_at_iso,
                    created_at_ms
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    job_type.value,
                    JobStatus.PENDING.value,
                    request_params.policy_id,
                    1 if request_params.dry_run else 0,
                    request_params.model_dump_json(),
                    now.isoformat(),
                    to_epoch_ms(now),
                ),
            )
            conn.commit()

        logger.info(
            "cleanup_job_enqueued",
            job_id=job_id,
            job_type=job_type.value,
            policy_id=request_params.policy_id,
            dry_run=request_params.dry_run,
            triggered_by=request_params.triggered_by,
        )
        return job_id

    def get(self, job_id: str) -> Job:
        with self._connect() as conn:
            row = conn.execute(f"{_SELECT} WHERE job_id = ?", (job_id,)).fetchone()
        if row is None:
            raise NotFoundError("Job", job_id)
        return self._row_to_job(row)

    def exists(self, job_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 FROM cleanup_jobs WHERE job_id = ?", (job_id,)).fetchone()
        return row is not None

    def transition(
        self,
        job_id: str,
        next_status: JobStatus,
        patch: Mapping[str, Any] | None = None,
    ) -> Job:
        """Move a job to ``next_status`` and apply ``patch`` atomically.

        ``patch`` may carry ``progress``, ``results`` and ``error_details``.
        Entering COMPLETED requires ``results`` and rejects ``error_details``.
        Entering FAILED requires ``error_details`` and may keep partial ``results``
        from the batches that ran before the failure.

        Raises:
            NotFoundError: Unknown job id.
            InvalidTransitionError: The transition is not in the legal set.
            ValidationError: The patch is malformed.
        """

        next_status = JobStatus(next_status)
        patch = dict(patch or {})
        unknown = set(patch) - _PATCH_KEYS
        if unknown:
            raise ValidationError(f"Unknown job patch fields: {sorted(unknown)}")

        results = patch.get("results")
        error_details = patch.get("error_details")
        progress = patch.get("progress")
        if next_status is JobStatus.COMPLETED and results is None:
            raise ValidationError("A completed job requires results")
        if next_status is JobStatus.FAILED and not error_details:
            raise ValidationError("A failed job requires error_details")
        if next_status is not JobStatus.FAILED and error_details:
            raise ValidationError("Only a failed job carries error_details")

        current = self.get(job_id).status
        if not is_legal_transition(current, next_status):
            raise InvalidTransitionError(job_id, current.value, next_status.value)

        now = self._clock.now()
        assignments = ["status = :next_status"]
        params: dict[str, object] = {
            "job_id": job_id,
            "expected": current.value,
            "next_status": next_status.value,
        }

        if next_status is JobStatus.IN_PROGRESS:
            assignments.append("started_at_iso = :now_iso")
            params["now_iso"] = now.isoformat()
        if next_status.is_terminal:
            assignments.append("completed_at_iso = :now_iso")
            assignments.append("completed_at_ms = :now_ms")
            params["now_iso"] = now.isoformat()
            params["now_ms"] = to_epoch_ms(now)
        if progress is not None:
            assignments.append("progress_json = :progress_json")
            params["progress_json"] = JobProgress.model_validate(progress).model_dump_json()
        if results is not None:
            assignments.append("results_json = :results_json")
            params["results_json"] = JobResult.model_validate(results).model_dump_json()
        if error_details:
            assignments.append("error_details = :error_details")
            params["error_details"] = str(error_details)

        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE cleanup_jobs
                SET {", ".join(assignments)}
                WHERE job_id = :job_id AND status = :expected
                """,
                params,
            )
            conn.commit()

        if cur.rowcount == 0:
            # Lost a race: someone else moved the job between our read and write.
            observed = self.get(job_id).status
            if next_status is JobStatus.IN_PROGRESS:
                raise JobAlreadyClaimedError(job_id, observed.value, next_status.value)
            raise InvalidTransitionError(job_id, observed.value, next_status.value)

        logger.debug(
            "cleanup_job_transitioned",
            job_id=job_id,
            from_status=current.value,
            to_status=next_status.value,
        )
        return self.get(job_id)

    def claim(self, job_id: str) -> Job:
        """Take exclusive ownership of a PENDING job.

        Raises:
            JobAlreadyClaimedError: The job is not PENDING (claimed or finished).
        """

        try:
            return self.transition(job_id, JobStatus.IN_PROGRESS)
        except JobAlreadyClaimedError:
            raise
        except InvalidTransitionError as exc:
            raise JobAlreadyClaimedError(job_id, exc.current, exc.requested) from exc

    def complete(self, job_id: str, result: JobResult, progress: JobProgress | None = None) -> Job:
        patch: dict[str, Any] = {"results": result}
        if progress is not None:
            patch["progress"] = progress
        return self.transition(job_id, JobStatus.COMPLETED, patch)

    def fail(
        self,
        job_id: str,
        error: str,
        progress: JobProgress | None = None,
        results: JobResult | None = None,
    ) -> Job:
        patch: dict[str, Any] = {"error_details": error}
        if progress is not None:
            patch["progress"] = progress
        if results is not None:
            patch["results"] = results
        return self.transition(job_id, JobStatus.FAILED, patch)

    def update_progress(self, job_id: str, progress: JobProgress) -> None:
        """Record progress on an IN_PROGRESS job."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE cleanup_jobs
                SET progress_json = ?
                WHERE job_id = ? AND status = ?
                """,
                (progress.model_dump_json(), job_id, JobStatus.IN_PROGRESS.value),
            )
            conn.commit()

        if cur.rowcount == 0:
            current = self.get(job_id).status
            raise InvalidTransitionError(job_id, current.value, "progress")

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        policy_id: str | None = None,
        limit: int | None = 50,
    ) -> list[Job]:
        """Jobs newest first, optionally filtered."""

        clauses: list[str] = []
        params: dict[str, object] = {}
        if status is not None:
            clauses.append("status = :status")
            params["status"] = JobStatus(status).value
        if job_type is not None:
            clauses.append("job_type = :job_type")
            params["job_type"] = JobType(job_type).value
        if policy_id is not None:
            clauses.append("policy_id = :policy_id")
            params["policy_id"] = policy_id

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        lim = ""
        if limit is not None:
            lim = "LIMIT :limit"
            params["limit"] = int(limit)

        with self._connect() as conn:
            rows = conn.execute(
                f"{_SELECT} {where} ORDER BY created_at_ms DESC, job_id DESC {lim}",
                params,
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def active_jobs(self, job_type: JobType | None = None) -> list[Job]:
        """PENDING and IN_PROGRESS jobs, oldest first."""

        params: list[object] = [JobStatus.PENDING.value, JobStatus.IN_PROGRESS.value]
        type_clause = ""
        if job_type is not None:
            type_clause = "AND job_type = ?"
            params.append(JobType(job_type).value)

        with self._connect() as conn:
            rows = conn.execute(
                f"""
                {_SELECT}
                WHERE status IN (?, ?) {type_clause}
                ORDER BY created_at_ms ASC, job_id ASC
                """,
                params,
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def completed_since(self, since: datetime, *, job_type: JobType | None = None) -> list[Job]:
        """COMPLETED jobs whose completion time is at or after ``since``."""

        params: list[object] = [JobStatus.COMPLETED.value, to_epoch_ms(since)]
        type_clause = ""
        if job_type is not None:
            type_clause = "AND job_type = ?"
            params.append(JobType(job_type).value)

        with self._connect() as conn:
            rows = conn.execute(
                f"""
                {_SELECT}
                WHERE status = ? AND completed_at_ms >= ? {type_clause}
                ORDER BY completed_at_ms ASC
                """,
                params,
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def has_completed_dry_run(self, policy_id: str, since: datetime | None = None) -> bool:
        """Whether a dry run of ``policy_id`` completed (at or after ``since``)."""

        sql = """
            SELECT 1 FROM cleanup_jobs
            WHERE policy_id = ? AND dry_run = 1 AND status = ?
        """
        params: list[object] = [policy_id, JobStatus.COMPLETED.value]
        if since is not None:
            sql += " AND completed_at_ms >= ?"
            params.append(to_epoch_ms(since))

        with self._connect() as conn:
            row = conn.execute(sql + " LIMIT 1", params).fetchone()
        return row is not None

    def deletions_since(self, since: datetime) -> int:
        """Records deleted by finished non-dry-run jobs completed at or after ``since``.

        Failed jobs count too: their partial results record what was deleted
        before the failure.
        """

        with self._connect() as conn:
            (total,) = conn.execute(
                """
                SELECT SUM(json_extract(results_json, '$.emails_deleted'))
                FROM cleanup_jobs
                WHERE dry_run = 0
                  AND status IN (?, ?)
                  AND results_json IS NOT NULL
                  AND completed_at_ms >= ?
                """,
                (JobStatus.COMPLETED.value, JobStatus.FAILED.value, to_epoch_ms(since)),
            ).fetchone()
        return int(total or 0)

    def reconcile_interrupted(self, *, requeue: bool = False) -> list[tuple[str, str | None]]:
        """Fail jobs left IN_PROGRESS by a previous process.

        Args:
            requeue: Also enqueue a fresh PENDING copy of each interrupted job.

        Returns:
            ``(interrupted_job_id, requeued_job_id_or_None)`` pairs.
        """

        reconciled: list[tuple[str, str | None]] = []
        for job in self.list_jobs(status=JobStatus.IN_PROGRESS, limit=None):
            try:
                self.fail(
                    job.job_id,
                    f"{INTERRUPTED_PREFIX}: process stopped while the job was in progress",
                )
            except InvalidTransitionError:
                continue

            new_id: str | None = None
            if requeue and not self._closed:
                request = job.request_params.model_copy(update={"requeued_from": job.job_id})
                new_id = self.enqueue(job.job_type, request)

            logger.warning(
                "cleanup_job_interrupted",
                job_id=job.job_id,
                policy_id=job.policy_id,
                requeued_as=new_id,
            )
            reconciled.append((job.job_id, new_id))

        return reconciled

    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete terminal jobs completed before ``cutoff``. Returns the number removed."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM cleanup_jobs
                WHERE status IN (?, ?) AND completed_at_ms < ?
                """,
                (JobStatus.COMPLETED.value, JobStatus.FAILED.value, to_epoch_ms(cutoff)),
            )
            conn.commit()

        removed = int(cur.rowcount or 0)
        if removed:
            logger.info("cleanup_jobs_pruned", removed=removed, cutoff=cutoff.isoformat())
        return removed

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS cleanup_jobs (
                job_id TEXT PRIMARY KEY,
                job_type TEXT NOT NULL,
                status TEXT NOT NULL,
                policy_id TEXT NOT NULL,
                dry_run INTEGER NOT NULL DEFAULT 0,
                request_json TEXT NOT NULL,
                progress_json TEXT,
                results_json TEXT,
                error_details TEXT,
                created_at_iso TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL,
                started_at_iso TEXT,
                completed_at_iso TEXT,
                completed_at_ms INTEGER
            );

            CREATE INDEX IF NOT EXISTS idx_cleanup_jobs_status
                ON cleanup_jobs(status, job_type, created_at_ms);

            CREATE INDEX IF NOT EXISTS idx_cleanup_jobs_policy
                ON cleanup_jobs(policy_id, dry_run, status, completed_at_ms);
            """
        )

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        return Job(
            job_id=row["job_id"],
            job_type=JobType(row["job_type"]),
            status=JobStatus(row["status"]),
            request_params=CleanupRequest.model_validate_json(row["request_json"]),
            progress=(
                JobProgress.model_validate_json(row["progress_json"])
                if row["progress_json"]
                else None
            ),
            results=(
                JobResult.model_validate_json(row["results_json"]) if row["results_json"] else None
            ),
            error_details=row["error_details"],
            created_at=datetime.fromisoformat(row["created_at_iso"]),
            started_at=(
                datetime.fromisoformat(row["started_at_iso"]) if row["started_at_iso"] else None
            ),
            completed_at=(
                datetime.fromisoformat(row["completed_at_iso"])
                if row["completed_at_iso"]
                else None
            ),
        )
