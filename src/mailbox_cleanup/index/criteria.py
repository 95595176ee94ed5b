"""Record-store query surface.

The policy engine only depends on this abstract surface (``search``,
``count``, ``upsert_many``, ``get_many``), never on storage internals.
"""

from __future__ import annotations

from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from mailbox_cleanup.models import EmailRecord, ImportanceLevel


class SearchCriteria(BaseModel):
    """Conjunctive record filter. ``None`` fields impose no constraint."""

    model_config = ConfigDict(frozen=True)

    received_before_ms: int | None = Field(
        default=None, description="internal_date_ms <= value (records without a date never match)"
    )
    received_since_ms: int | None = Field(default=None, description="internal_date_ms >= value")
    importance_levels: list[ImportanceLevel] | None = None
    spam_score_min: float | None = None
    promotional_score_min: float | None = None
    size_min: int | None = None
    from_email: str | None = None
    include_deleted: bool = False
    include_archived: bool = False
    exclude_ids: list[str] = Field(default_factory=list)


class RecordStore(Protocol):
    def search(
        self, criteria: SearchCriteria, limit: int | None = None, offset: int = 0
    ) -> list[EmailRecord]: ...

    def count(self, criteria: SearchCriteria) -> int: ...

    def upsert_many(self, records: list[EmailRecord]) -> None: ...

    def get_many(self, ids: list[str]) -> list[EmailRecord]: ...
