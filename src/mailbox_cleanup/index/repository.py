"""SQLite-backed email index.

The index is designed to store large numbers of email records (tens of
thousands+) without storing bodies. It is the record store cleanup policies
are evaluated against; action backends write their effects back into it.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from mailbox_cleanup.db import SqliteRepository
from mailbox_cleanup.clock import from_epoch_ms
from mailbox_cleanup.index.criteria import SearchCriteria
from mailbox_cleanup.models import EmailRecord, ImportanceLevel

logger = structlog.get_logger()


@dataclass(frozen=True)
class EmailIndexStats:
    """High-level summary stats for the index."""

    total_messages: int
    active_messages: int
    unread_messages: int
    unique_senders: int
    active_size_bytes: int
    min_date: datetime | None
    max_date: datetime | None


@dataclass(frozen=True)
class SenderStats:
    """Aggregate stats for a single sender."""

    from_email: str
    total_messages: int
    total_size_bytes: int


_COLUMNS = """
    gmail_id,
    thread_id,
    internal_date_ms,
    subject,
    from_raw,
    from_email,
    size_bytes,
    label_ids_json,
    importance_level,
    spam_score,
    promotional_score,
    is_unread,
    is_deleted,
    is_archived
"""


def _build_where(criteria: SearchCriteria) -> tuple[str, dict[str, object]]:
    clauses: list[str] = []
    params: dict[str, object] = {}

    if not criteria.include_deleted:
        clauses.append("is_deleted = 0")
    if not criteria.include_archived:
        clauses.append("is_archived = 0")
    if criteria.received_before_ms is not None:
        clauses.append("internal_date_ms IS NOT NULL AND internal_date_ms <= :received_before_ms")
        params["received_before_ms"] = int(criteria.received_before_ms)
    if criteria.received_since_ms is not None:
        clauses.append("internal_date_ms >= :received_since_ms")
        params["received_since_ms"] = int(criteria.received_since_ms)
    if criteria.importance_levels is not None:
        clauses.append("importance_level IN (SELECT value FROM json_each(:importance_levels))")
        params["importance_levels"] = json.dumps([lvl.value for lvl in criteria.importance_levels])
    if criteria.spam_score_min is not None:
        clauses.append("spam_score IS NOT NULL AND spam_score >= :spam_score_min")
        params["spam_score_min"] = float(criteria.spam_score_min)
    if criteria.promotional_score_min is not None:
        clauses.append(
            "promotional_score IS NOT NULL AND promotional_score >= :promotional_score_min"
        )
        params["promotional_score_min"] = float(criteria.promotional_score_min)
    if criteria.size_min is not None:
        clauses.append("size_bytes >= :size_min")
        params["size_min"] = int(criteria.size_min)
    if criteria.from_email is not None:
        clauses.append("from_email = :from_email")
        params["from_email"] = criteria.from_email
    if criteria.exclude_ids:
        clauses.append("gmail_id NOT IN (SELECT value FROM json_each(:exclude_ids))")
        params["exclude_ids"] = json.dumps(list(criteria.exclude_ids))

    where = " AND ".join(clauses) if clauses else "1 = 1"
    return where, params


class EmailIndexRepository(SqliteRepository):
    """Repository for storing and querying indexed email records."""

    schema_key = "email_index_schema_version"
    schema_version = 1

    def upsert_many(self, records: list[EmailRecord]) -> None:
        """Upsert a batch of email records."""

        if not records:
            return

        now_iso = datetime.now(timezone.utc).isoformat()

        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO email_records (
                    gmail_id,
                    thread_id,
                    internal_date_ms,
                    subject,
                    from_raw,
                    from_email,
                    size_bytes,
                    label_ids_json,
                    importance_level,
                    spam_score,
                    promotional_score,
                    is_unread,
                    is_deleted,
                    is_archived,
                    updated_at_iso
                )
                VALUES (
                    :gmail_id,
                    :thread_id,
                    :internal_date_ms,
                    :subject,
                    :from_raw,
                    :from_email,
                    :size_bytes,
                    :label_ids_json,
                    :importance_level,
                    :spam_score,
                    :promotional_score,
                    :is_unread,
                    :is_deleted,
                    :is_archived,
                    :updated_at_iso
                )
                ON CONFLICT(gmail_id) DO UPDATE SET
                    thread_id=excluded.thread_id,
                    internal_date_ms=excluded.internal_date_ms,
                    subject=excluded.subject,
                    from_raw=excluded.from_raw,
                    from_email=excluded.from_email,
                    size_bytes=excluded.size_bytes,
                    label_ids_json=excluded.label_ids_json,
                    importance_level=excluded.importance_level,
                    spam_score=excluded.spam_score,
                    promotional_score=excluded.promotional_score,
                    is_unread=excluded.is_unread,
                    is_deleted=excluded.is_deleted,
                    is_archived=excluded.is_archived,
                    updated_at_iso=excluded.updated_at_iso
                """,
                [
                    {
                        "gmail_id": r.gmail_id,
                        "thread_id": r.thread_id,
                        "internal_date_ms": r.internal_date_ms,
                        "subject": r.subject,
                        "from_raw": r.from_raw,
                        "from_email": r.from_email,
                        "size_bytes": r.size_bytes,
                        "label_ids_json": json.dumps(r.label_ids),
                        "importance_level": r.importance_level.value,
                        "spam_score": r.spam_score,
                        "promotional_score": r.promotional_score,
                        "is_unread": 1 if r.is_unread else 0,
                        "is_deleted": 1 if r.is_deleted else 0,
                        "is_archived": 1 if r.is_archived else 0,
                        "updated_at_iso": now_iso,
                    }
                    for r in records
                ],
            )
            conn.commit()

    def get_many(self, ids: list[str]) -> list[EmailRecord]:
        """Fetch records by id, in the order given. Unknown ids are skipped."""

        if not ids:
            return []

        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS}
                FROM email_records
                WHERE gmail_id IN (SELECT value FROM json_each(?))
                """,
                (json.dumps(list(ids)),),
            ).fetchall()

        by_id = {row["gmail_id"]: self._row_to_record(row) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    def search(
        self, criteria: SearchCriteria, limit: int | None = None, offset: int = 0
    ) -> list[EmailRecord]:
        """Return records matching ``criteria``, oldest first.

        Ordering is ``internal_date_ms`` ascending with ``gmail_id`` as the
        tie-break, so repeated searches over a stable dataset page identically.
        """

        where, params = _build_where(criteria)

        lim = ""
        if limit is not None:
            lim = "LIMIT :limit OFFSET :offset"
            params["limit"] = int(limit)
            params["offset"] = int(offset)

        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS}
                FROM email_records
                WHERE {where}
                ORDER BY internal_date_ms IS NULL, internal_date_ms ASC, gmail_id ASC
                {lim}
                """,
                params,
            ).fetchall()

        return [self._row_to_record(row) for row in rows]

    def count(self, criteria: SearchCriteria) -> int:
        where, params = _build_where(criteria)
        with self._connect() as conn:
            (n,) = conn.execute(
                f"SELECT COUNT(*) FROM email_records WHERE {where}", params
            ).fetchone()
        return int(n or 0)

    def count_received_since(self, since_ms: int) -> int:
        """Count records received since ``since_ms`` regardless of lifecycle state."""

        return self.count(
            SearchCriteria(
                received_since_ms=since_ms,
                include_deleted=True,
                include_archived=True,
            )
        )

    def overall_stats(self) -> EmailIndexStats:
        """Compute high-level index stats."""

        with self._connect() as conn:
            total, active, unread, active_size = conn.execute(
                """
                SELECT
                    COUNT(*),
                    SUM(CASE WHEN is_deleted = 0 THEN 1 ELSE 0 END),
                    SUM(CASE WHEN is_deleted = 0 THEN is_unread ELSE 0 END),
                    SUM(CASE WHEN is_deleted = 0 THEN size_bytes ELSE 0 END)
                FROM email_records;
                """
            ).fetchone()

            (unique_senders,) = conn.execute(
                """
                SELECT COUNT(DISTINCT COALESCE(from_email, ''))
                FROM email_records
                WHERE is_deleted = 0;
                """
            ).fetchone()

            min_ms, max_ms = conn.execute(
                """
                SELECT MIN(internal_date_ms), MAX(internal_date_ms)
                FROM email_records
                WHERE is_deleted = 0;
                """
            ).fetchone()

        return EmailIndexStats(
            total_messages=int(total or 0),
            active_messages=int(active or 0),
            unread_messages=int(unread or 0),
            unique_senders=int(unique_senders or 0),
            active_size_bytes=int(active_size or 0),
            min_date=from_epoch_ms(min_ms) if min_ms is not None else None,
            max_date=from_epoch_ms(max_ms) if max_ms is not None else None,
        )

    def top_senders(self, limit: int = 25) -> list[SenderStats]:
        """Return top senders by message count among active records."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT
                    COALESCE(from_email, ''),
                    COUNT(*) AS total_messages,
                    SUM(size_bytes) AS total_size
                FROM email_records
                WHERE is_deleted = 0
                GROUP BY COALESCE(from_email, '')
                ORDER BY total_messages DESC
                LIMIT ?;
                """,
                (limit,),
            ).fetchall()

        return [
            SenderStats(
                from_email=row[0],
                total_messages=int(row[1] or 0),
                total_size_bytes=int(row[2] or 0),
            )
            for row in rows
            if row[0]
        ]

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS email_records (
                rowid INTEGER PRIMARY KEY,
                gmail_id TEXT NOT NULL UNIQUE,
                thread_id TEXT,
                internal_date_ms INTEGER,
                subject TEXT,
                from_raw TEXT,
                from_email TEXT,
                size_bytes INTEGER NOT NULL DEFAULT 0,
                label_ids_json TEXT NOT NULL,
                importance_level TEXT NOT NULL,
                spam_score REAL,
                promotional_score REAL,
                is_unread INTEGER NOT NULL,
                is_deleted INTEGER NOT NULL DEFAULT 0,
                is_archived INTEGER NOT NULL DEFAULT 0,
                updated_at_iso TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_email_records_from_email
                ON email_records(from_email);

            CREATE INDEX IF NOT EXISTS idx_email_records_internal_date
                ON email_records(internal_date_ms);

            CREATE INDEX IF NOT EXISTS idx_email_records_lifecycle
                ON email_records(is_deleted, is_archived, internal_date_ms);
            """
        )

    def _row_to_record(self, row: sqlite3.Row) -> EmailRecord:
        return EmailRecord(
            gmail_id=row["gmail_id"],
            thread_id=row["thread_id"],
            internal_date_ms=row["internal_date_ms"],
            subject=row["subject"] or "",
            from_raw=row["from_raw"],
            from_email=row["from_email"],
            size_bytes=int(row["size_bytes"] or 0),
            label_ids=json.loads(row["label_ids_json"]),
            importance_level=ImportanceLevel(row["importance_level"]),
            spam_score=row["spam_score"],
            promotional_score=row["promotional_score"],
            is_unread=bool(row["is_unread"]),
            is_deleted=bool(row["is_deleted"]),
            is_archived=bool(row["is_archived"]),
        )
