"""Policy repository.

Policies live in the shared SQLite database next to the email index. The
criteria/action/safety block is stored as JSON so the policy schema can evolve
without table migrations.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime

from mailbox_cleanup.db import SqliteRepository
from mailbox_cleanup.exceptions import NotFoundError, ValidationError
from mailbox_cleanup.models import Policy


class PolicyStore(SqliteRepository):
    """CRUD, enable/disable and priority ordering for policies."""

    schema_key = "policy_schema_version"
    schema_version = 1

    def create(self, policy: Policy) -> None:
        """Insert a new policy.

        Raises:
            ValidationError: If a policy with the same id already exists.
        """

        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO cleanup_policies (
                        id, name, enabled, priority, definition_json, created_at_iso, updated_at_iso
                    )
                    VALUES (
                        :id, :name, :enabled, :priority, :definition_json, :created_at, :updated_at
                    )
                    """,
                    self._to_row(policy),
                )
                conn.commit()
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Policy id already exists: {policy.id}") from exc

    def get(self, policy_id: str) -> Policy:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, name, enabled, priority, definition_json, created_at_iso, updated_at_iso
                FROM cleanup_policies
                WHERE id = ?
                """,
                (policy_id,),
            ).fetchone()

        if row is None:
            raise NotFoundError("Policy", policy_id)
        return self._row_to_policy(row)

    def exists(self, policy_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM cleanup_policies WHERE id = ?", (policy_id,)
            ).fetchone()
        return row is not None

    def list_policies(self, *, enabled_only: bool = False) -> list[Policy]:
        """Return policies in evaluation order (ascending priority, then age)."""

        where = "WHERE enabled = 1" if enabled_only else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT id, name, enabled, priority, definition_json, created_at_iso, updated_at_iso
                FROM cleanup_policies
                {where}
                ORDER BY priority ASC, created_at_iso ASC, id ASC
                """
            ).fetchall()

        return [self._row_to_policy(r) for r in rows]

    def replace(self, policy: Policy) -> None:
        """Overwrite an existing policy row."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE cleanup_policies
                SET name = :name,
                    enabled = :enabled,
                    priority = :priority,
                    definition_json = :definition_json,
                    updated_at_iso = :updated_at
                WHERE id = :id
                """,
                self._to_row(policy),
            )
            conn.commit()

        if cur.rowcount == 0:
            raise NotFoundError("Policy", policy.id)

    def set_enabled(self, policy_id: str, enabled: bool, *, updated_at: datetime) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE cleanup_policies
                SET enabled = ?, updated_at_iso = ?
                WHERE id = ?
                """,
                (1 if enabled else 0, updated_at.isoformat(), policy_id),
            )
            conn.commit()

        if cur.rowcount == 0:
            raise NotFoundError("Policy", policy_id)

    def delete(self, policy_id: str) -> None:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM cleanup_policies WHERE id = ?", (policy_id,))
            conn.commit()

        if cur.rowcount == 0:
            raise NotFoundError("Policy", policy_id)

    def count(self) -> int:
        with self._connect() as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM cleanup_policies").fetchone()
        return int(n or 0)

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS cleanup_policies (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                enabled INTEGER NOT NULL,
                priority INTEGER NOT NULL,
                definition_json TEXT NOT NULL,
                created_at_iso TEXT NOT NULL,
                updated_at_iso TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_cleanup_policies_order
                ON cleanup_policies(enabled, priority, created_at_iso);
            """
        )

    def _to_row(self, policy: Policy) -> dict[str, object]:
        definition = policy.model_dump(mode="json", include={"criteria", "action", "safety"})
        return {
            "id": policy.id,
            "name": policy.name,
            "enabled": 1 if policy.enabled else 0,
            "priority": policy.priority,
            "definition_json": json.dumps(definition),
            "created_at": policy.created_at.isoformat() if policy.created_at else None,
            "updated_at": policy.updated_at.isoformat() if policy.updated_at else None,
        }

    def _row_to_policy(self, row: sqlite3.Row) -> Policy:
        definition = json.loads(row["definition_json"])
        return Policy.model_validate(
            {
                "id": row["id"],
                "name": row["name"],
                "enabled": bool(row["enabled"]),
                "priority": int(row["priority"]),
                **definition,
                "created_at": datetime.fromisoformat(row["created_at_iso"]),
                "updated_at": datetime.fromisoformat(row["updated_at_iso"]),
            }
        )
