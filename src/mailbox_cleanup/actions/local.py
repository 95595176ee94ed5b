"""Action backend that applies cleanup actions to the local index only."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import structlog

from mailbox_cleanup.actions.base import ActionOutcome, apply_to_records
from mailbox_cleanup.exceptions import PartialBatchFailure, UnsupportedActionError
from mailbox_cleanup.index.criteria import RecordStore

logger = structlog.get_logger()


class LocalIndexBackend:
    """Marks records deleted/archived in the record store without touching Gmail.

    Useful for offline runs and as the reference backend in tests. Ids that
    are unknown, or already carry the target flag, are reported as per-record
    failures via :class:`PartialBatchFailure`.
    """

    def __init__(self, records: RecordStore) -> None:
        self._records = records

    async def execute(
        self, action_type: str, record_ids: list[str], options: Mapping[str, Any]
    ) -> ActionOutcome:
        if action_type not in ("delete", "archive"):
            raise UnsupportedActionError(f"Unsupported action type: {action_type}")
        return await asyncio.to_thread(self._execute_sync, action_type, list(record_ids))

    def _execute_sync(self, action_type: str, record_ids: list[str]) -> ActionOutcome:
        found = {r.gmail_id: r for r in self._records.get_many(record_ids)}

        applicable = []
        errors: list[str] = []
        failed: list[str] = []
        for record_id in record_ids:
            record = found.get(record_id)
            if record is None:
                errors.append(f"{record_id}: record not found")
                failed.append(record_id)
            elif record.is_deleted or (action_type == "archive" and record.is_archived):
                state = "deleted" if record.is_deleted else "archived"
                errors.append(f"{record_id}: already {state}")
                failed.append(record_id)
            else:
                applicable.append(record)

        self._records.upsert_many(apply_to_records(applicable, action_type))
        logger.info(
            "local_action_applied",
            action_type=action_type,
            affected=len(applicable),
            failed=len(failed),
        )

        if failed:
            raise PartialBatchFailure(len(applicable), errors, failed)
        return ActionOutcome(success=True, affected_count=len(applicable))
