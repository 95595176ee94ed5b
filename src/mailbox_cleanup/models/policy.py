"""Cleanup policy models.

A policy is criteria + action + safety. Criteria are AND-only predicates over
indexed record fields; absent predicates impose no constraint. The action is a
tagged variant dispatched through the action registry, so new variants do not
touch the policy engine.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from mailbox_cleanup.models.email_record import ImportanceLevel


class PolicyCriteria(BaseModel):
    """Conjunctive match predicates."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    age_days_min: int | None = Field(default=None, ge=0, description="Record age >= N days")
    importance_level_max: ImportanceLevel | None = Field(
        default=None, description="Record importance <= level (low < medium < high)"
    )
    spam_score_min: float | None = Field(default=None, ge=0.0, le=1.0)
    promotional_score_min: float | None = Field(default=None, ge=0.0, le=1.0)
    size_threshold_min: int | None = Field(default=None, ge=0, description="Size >= N bytes")

    @model_validator(mode="after")
    def _require_a_predicate(self) -> "PolicyCriteria":
        if not self.model_dump(exclude_none=True):
            raise ValueError("criteria must contain at least one predicate")
        return self


class DeleteAction(BaseModel):
    """Delete matched records (provider trash unless ``permanent``)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["delete"] = "delete"
    permanent: bool = False


class ArchiveAction(BaseModel):
    """Archive matched records (remove from inbox, keep the message)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["archive"] = "archive"


PolicyAction = Annotated[Union[DeleteAction, ArchiveAction], Field(discriminator="type")]


class PolicySafety(BaseModel):
    """Ceiling on what one execution of a policy may do."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_emails_per_run: int = Field(default=100, ge=1)
    preserve_important: bool = True
    require_confirmation: bool = False
    dry_run_first: bool = False


def _new_policy_id() -> str:
    return f"policy-{uuid.uuid4().hex[:12]}"


class Policy(BaseModel):
    """A declarative cleanup policy."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=_new_policy_id, min_length=1)
    name: str = Field(min_length=1)
    enabled: bool = True
    priority: int = Field(default=50, ge=0, le=100, description="Lower number wins precedence")
    criteria: PolicyCriteria
    action: PolicyAction = Field(default_factory=DeleteAction)
    safety: PolicySafety = Field(default_factory=PolicySafety)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _name_not_blank(self) -> "Policy":
        if not self.name.strip():
            raise ValueError("policy name is required")
        return self
