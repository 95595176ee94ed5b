"""Action backend contract and dispatch registry."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from mailbox_cleanup.exceptions import UnsupportedActionError
from mailbox_cleanup.index.criteria import RecordStore
from mailbox_cleanup.models import EmailRecord

logger = structlog.get_logger()


@dataclass
class ActionOutcome:
    """What a backend did with one batch."""

    success: bool
    affected_count: int
    errors: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)


class ActionBackend(Protocol):
    async def execute(
        self, action_type: str, record_ids: list[str], options: Mapping[str, Any]
    ) -> ActionOutcome:
        """Apply ``action_type`` to ``record_ids``.

        Raises:
            BackendError: The whole batch failed (retryable).
            PartialBatchFailure: Some records failed; the rest were applied.
        """
        ...


class ActionRegistry:
    """Maps a policy action type (``delete``, ``archive``) to its backend."""

    def __init__(self) -> None:
        self._backends: dict[str, ActionBackend] = {}

    def register(self, action_type: str, backend: ActionBackend) -> None:
        self._backends[action_type] = backend

    def supports(self, action_type: str) -> bool:
        return action_type in self._backends

    def get(self, action_type: str) -> ActionBackend:
        try:
            return self._backends[action_type]
        except KeyError:
            raise UnsupportedActionError(
                f"No action backend registered for action type: {action_type}"
            ) from None

    @property
    def action_types(self) -> list[str]:
        return sorted(self._backends)

    @classmethod
    def with_backend(
        cls, backend: ActionBackend, action_types: tuple[str, ...] = ("delete", "archive")
    ) -> ActionRegistry:
        registry = cls()
        for action_type in action_types:
            registry.register(action_type, backend)
        return registry


def apply_to_records(records: list[EmailRecord], action_type: str) -> list[EmailRecord]:
    """Return copies of ``records`` with the action's lifecycle flag set."""

    if action_type == "delete":
        update = {"is_deleted": True}
    elif action_type == "archive":
        update = {"is_archived": True}
    else:
        raise UnsupportedActionError(f"Unsupported action type: {action_type}")
    return [r.model_copy(update=update) for r in records]


def mark_records(store: RecordStore, record_ids: list[str], action_type: str) -> list[str]:
    """Reflect an applied action in the record store.

    Returns:
        Ids that were found and updated (unknown ids are skipped).
    """

    found = store.get_many(list(record_ids))
    store.upsert_many(apply_to_records(found, action_type))
    logger.debug("records_marked", action_type=action_type, count=len(found))
    return [r.gmail_id for r in found]
