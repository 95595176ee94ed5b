"""Helpers for parsing Gmail message metadata into index records."""

from __future__ import annotations

from email.utils import getaddresses
from typing import Any

from mailbox_cleanup.models import EmailRecord, ImportanceLevel

METADATA_HEADERS = ["From", "Subject", "Date"]

_HIGH_IMPORTANCE_LABELS = frozenset({"IMPORTANT", "STARRED"})
_BULK_CATEGORY_LABELS = frozenset(
    {"CATEGORY_PROMOTIONS", "CATEGORY_SOCIAL", "CATEGORY_FORUMS", "CATEGORY_UPDATES"}
)


def _header_map(message: dict[str, Any]) -> dict[str, str]:
    payload = message.get("payload") or {}
    headers = payload.get("headers") or []
    result: dict[str, str] = {}
    for h in headers:
        name = h.get("name")
        value = h.get("value")
        if isinstance(name, str) and isinstance(value, str):
            # Gmail can include duplicates; keep the first for now.
            result.setdefault(name.lower(), value)
    return result


def _parse_address_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [addr for _, addr in getaddresses([value]) if addr]


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def importance_from_labels(label_ids: list[str]) -> ImportanceLevel:
    """Map Gmail system labels to an importance level.

    IMPORTANT/STARRED -> high; bulk categories (promotions, social, forums,
    updates) -> low; everything else -> medium.
    """

    labels = set(label_ids)
    if labels & _HIGH_IMPORTANCE_LABELS:
        return ImportanceLevel.HIGH
    if labels & _BULK_CATEGORY_LABELS:
        return ImportanceLevel.LOW
    return ImportanceLevel.MEDIUM


def message_to_email_record(message: dict[str, Any]) -> EmailRecord:
    """Convert a Gmail API message (format=metadata) to an EmailRecord.

    Gmail's own classification stands in for the spam and promotional scores:
    a message in SPAM scores 1.0, anything else 0.0; likewise for
    CATEGORY_PROMOTIONS.
    """

    hm = _header_map(message)

    label_ids = message.get("labelIds") or []
    if not isinstance(label_ids, list):
        label_ids = []
    label_ids = [str(x) for x in label_ids if isinstance(x, str)]

    from_raw = hm.get("from")
    from_addrs = _parse_address_list(from_raw)

    return EmailRecord(
        gmail_id=str(message.get("id") or ""),
        thread_id=str(message.get("threadId") or "") or None,
        internal_date_ms=_as_int(message.get("internalDate")),
        subject=hm.get("subject") or "",
        from_raw=from_raw,
        from_email=from_addrs[0].lower() if from_addrs else None,
        size_bytes=max(0, _as_int(message.get("sizeEstimate")) or 0),
        label_ids=label_ids,
        importance_level=importance_from_labels(label_ids),
        spam_score=1.0 if "SPAM" in label_ids else 0.0,
        promotional_score=1.0 if "CATEGORY_PROMOTIONS" in label_ids else 0.0,
        is_unread="UNREAD" in label_ids,
        is_deleted="TRASH" in label_ids,
    )
