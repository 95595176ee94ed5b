"""Hot-swappable automation configuration.

Readers call :meth:`AutomationConfigStore.current` and get an immutable
snapshot; writers build a complete new snapshot, validate it as a whole and
swap it in under a lock. A rejected update leaves the previous snapshot (and
the persisted copy) untouched.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from mailbox_cleanup.db import SqliteRepository
from mailbox_cleanup.exceptions import ConfigurationError, ValidationError
from mailbox_cleanup.models import AutomationConfig
from mailbox_cleanup.utils import deep_merge

logger = structlog.get_logger()

KEY_AUTOMATION_CONFIG = "automation_config"


class AutomationConfigStore(SqliteRepository):
    """Current automation config snapshot, persisted in a key/value table."""

    schema_key = "automation_config_schema_version"
    schema_version = 1

    def __init__(
        self,
        db_path,
        *,
        policy_exists: Callable[[str], bool] | None = None,
    ) -> None:
        super().__init__(db_path)
        self._policy_exists = policy_exists
        self._lock = threading.Lock()
        self._current = AutomationConfig()
        self._version = 0

    @property
    def version(self) -> int:
        """Incremented on every successful swap."""

        return self._version

    def current(self) -> AutomationConfig:
        return self._current

    def initialize(self) -> None:
        super().initialize()
        self.load()

    def load(self) -> AutomationConfig:
        """Load the persisted snapshot, if any.

        Raises:
            ConfigurationError: If the stored configuration no longer validates.
        """

        raw = self._get_kv(KEY_AUTOMATION_CONFIG)
        if raw is None:
            return self._current

        try:
            config = AutomationConfig.model_validate_json(raw)
        except PydanticValidationError as exc:
            raise ConfigurationError(f"Stored automation config is invalid: {exc}") from exc

        with self._lock:
            self._current = config
            self._version += 1
        logger.info("automation_config_loaded", version=self._version)
        return config

    def update(self, updates: Mapping[str, Any]) -> AutomationConfig:
        """Merge a partial update into the current snapshot and swap it in.

        Raises:
            ValidationError: If the merged configuration is invalid or names
                unknown policies.
        """

        with self._lock:
            merged = deep_merge(self._current.model_dump(mode="json"), updates)
            config = self._validate(merged)
            self._set_kv(KEY_AUTOMATION_CONFIG, config.model_dump_json())
            self._current = config
            self._version += 1
            version = self._version

        logger.info("automation_config_updated", version=version, keys=sorted(updates))
        return config

    def replace(self, config: AutomationConfig | Mapping[str, Any]) -> AutomationConfig:
        """Swap in a complete configuration."""

        data = config.model_dump(mode="json") if isinstance(config, AutomationConfig) else config
        with self._lock:
            validated = self._validate(dict(data))
            self._set_kv(KEY_AUTOMATION_CONFIG, validated.model_dump_json())
            self._current = validated
            self._version += 1
            version = self._version

        logger.info("automation_config_replaced", version=version)
        return validated

    def _validate(self, data: dict[str, Any]) -> AutomationConfig:
        try:
            config = AutomationConfig.model_validate(data)
        except PydanticValidationError as exc:
            messages = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            ]
            raise ValidationError(
                f"Invalid automation configuration: {', '.join(messages)}", messages
            ) from exc

        if self._policy_exists is not None:
            missing = sorted(
                pid for pid in config.referenced_policy_ids() if not self._policy_exists(pid)
            )
            if missing:
                raise ValidationError(
                    f"Automation configuration references unknown policies: {missing}",
                    [f"unknown policy: {pid}" for pid in missing],
                )
        return config

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS automation_kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at_iso TEXT NOT NULL
            );
            """
        )

    def _get_kv(self, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM automation_kv WHERE key = ?", (key,)).fetchone()
        return None if row is None else str(row[0])

    def _set_kv(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO automation_kv (key, value, updated_at_iso)
                VALUES (?, ?, ?)
                ON CONFLICT (key)
                DO UPDATE SET value = excluded.value, updated_at_iso = excluded.updated_at_iso
                """,
                (key, value, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()
