"""Action backend that applies cleanup actions through the Gmail API."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import structlog

from mailbox_cleanup.actions.base import ActionOutcome, mark_records
from mailbox_cleanup.exceptions import (
    AuthenticationError,
    BackendError,
    ConfigurationError,
    GmailAPIError,
    UnsupportedActionError,
)
from mailbox_cleanup.gmail.client import GmailClient
from mailbox_cleanup.index.criteria import RecordStore

logger = structlog.get_logger()


class GmailActionBackend:
    """Trash, archive or permanently delete messages in Gmail.

    ``delete`` moves messages to Trash unless the action options carry
    ``permanent=True``. Once Gmail accepts a batch the matching index records
    are marked so later evaluations no longer see them.
    """

    def __init__(self, client: GmailClient, records: RecordStore) -> None:
        self._client = client
        self._records = records

    async def execute(
        self, action_type: str, record_ids: list[str], options: Mapping[str, Any]
    ) -> ActionOutcome:
        ids = list(record_ids)
        try:
            await self._client.authenticate()
            if action_type == "delete":
                if options.get("permanent"):
                    await self._client.delete_messages(ids)
                else:
                    await self._client.trash_messages(ids)
            elif action_type == "archive":
                await self._client.archive_messages(ids)
            else:
                raise UnsupportedActionError(f"Unsupported action type: {action_type}")
        except (GmailAPIError, AuthenticationError, ConfigurationError) as exc:
            raise BackendError(str(exc)) from exc

        await asyncio.to_thread(mark_records, self._records, ids, action_type)
        logger.info(
            "gmail_action_applied",
            action_type=action_type,
            permanent=bool(options.get("permanent")),
            affected=len(ids),
        )
        return ActionOutcome(success=True, affected_count=len(ids))
