"""Populate the email index from Gmail metadata."""

from __future__ import annotations

import asyncio

import structlog

from mailbox_cleanup.gmail.client import GmailClient
from mailbox_cleanup.gmail.parsing import METADATA_HEADERS, message_to_email_record
from mailbox_cleanup.index.repository import EmailIndexRepository
from mailbox_cleanup.models import EmailRecord

logger = structlog.get_logger()


async def sync_from_gmail(
    gmail: GmailClient,
    repo: EmailIndexRepository,
    *,
    query: str | None = None,
    limit: int | None = None,
    batch_size: int = 200,
) -> int:
    """Download message metadata (no bodies) and upsert it into the index.

    Returns:
        Number of records written.
    """

    messages = await gmail.list_messages(max_results=limit, query=query)
    logger.info("index_sync_list_complete", message_count=len(messages), query=query, limit=limit)

    batch: list[EmailRecord] = []
    processed = 0
    for m in messages:
        message_id = m.get("id")
        if not isinstance(message_id, str) or not message_id:
            continue

        raw = await gmail.get_message(
            message_id, format="metadata", metadata_headers=METADATA_HEADERS
        )
        record = message_to_email_record(raw)
        if not record.gmail_id:
            continue

        batch.append(record)
        processed += 1

        if len(batch) >= batch_size:
            await asyncio.to_thread(repo.upsert_many, list(batch))
            logger.info("index_batch_upserted", batch_size=len(batch), processed=processed)
            batch.clear()

    if batch:
        await asyncio.to_thread(repo.upsert_many, list(batch))
        logger.info("index_batch_upserted", batch_size=len(batch), processed=processed)

    return processed
