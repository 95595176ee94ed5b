"""Email index record model.

Records are header-only: no message body is stored. Alongside the header
fields each record carries the signals cleanup policies match on (importance,
spam and promotional scores, size) and its lifecycle flags.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class ImportanceLevel(str, Enum):
    """Ordered importance levels (low < medium < high)."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _IMPORTANCE_ORDER.index(self)

    def at_most(self) -> list["ImportanceLevel"]:
        """All levels ordinally <= this one."""

        return list(_IMPORTANCE_ORDER[: self.rank + 1])


_IMPORTANCE_ORDER = (ImportanceLevel.LOW, ImportanceLevel.MEDIUM, ImportanceLevel.HIGH)


class EmailRecord(BaseModel):
    """A minimal representation of an indexed email message."""

    gmail_id: str = Field(description="Provider message ID")
    thread_id: str | None = Field(default=None, description="Provider thread ID")
    internal_date_ms: int | None = Field(
        default=None, description="Internal timestamp in milliseconds since epoch"
    )

    subject: str = Field(default="", description="Subject header")
    from_raw: str | None = Field(default=None, description="Raw From header")
    from_email: str | None = Field(default=None, description="Parsed sender email address")

    size_bytes: int = Field(default=0, ge=0, description="Message size estimate in bytes")
    label_ids: list[str] = Field(default_factory=list, description="Provider label IDs")

    importance_level: ImportanceLevel = Field(default=ImportanceLevel.MEDIUM)
    spam_score: float | None = Field(default=None, ge=0.0, le=1.0)
    promotional_score: float | None = Field(default=None, ge=0.0, le=1.0)

    is_unread: bool = Field(default=False, description="Whether message is unread")
    is_deleted: bool = Field(default=False, description="Removed by a cleanup action")
    is_archived: bool = Field(default=False, description="Archived by a cleanup action")
