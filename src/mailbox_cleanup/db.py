"""Shared SQLite plumbing for the repositories.

The email index, policies, jobs and automation config all live in one SQLite
file. Each repository owns its tables and records its own schema version in
``_schema_meta`` under a repository-specific key.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog

logger = structlog.get_logger()


class SqliteRepository:
    """Base class for repositories backed by the shared SQLite database."""

    schema_key: str = "schema_version"
    schema_version: int = 1

    def __init__(self, db_path: Path) -> None:
        """Create a repository.

        Args:
            db_path: Path to the SQLite database file.
        """

        self._db_path = Path(db_path)

    @property
    def db_path(self) -> Path:
        return self._db_path

    def initialize(self) -> None:
        """Create or upgrade this repository's schema."""

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )

            current_version = self._get_schema_version(conn)
            if current_version is None:
                self._create_schema(conn)
                self._set_schema_version(conn, self.schema_version)
                conn.commit()
                logger.info(
                    "sqlite_schema_created",
                    schema=self.schema_key,
                    version=self.schema_version,
                )
                return

            if current_version != self.schema_version:
                raise RuntimeError(
                    f"Unsupported {self.schema_key} {current_version}; "
                    f"expected {self.schema_version}"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        raise NotImplementedError

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, timeout=30.0)
        try:
            conn.row_factory = sqlite3.Row
            yield conn
        finally:
            conn.close()

    def _get_schema_version(self, conn: sqlite3.Connection) -> int | None:
        row = conn.execute(
            "SELECT value FROM _schema_meta WHERE key = ?", (self.schema_key,)
        ).fetchone()
        if row is None:
            return None
        return int(row[0])

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO _schema_meta(key, value) VALUES(?, ?)",
            (self.schema_key, str(version)),
        )
