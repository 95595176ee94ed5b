"""Policy evaluation engine.

Translates a policy's criteria into a single conjunctive record-store query,
then applies the policy's safety envelope to the matches:

* ``preserve_important`` drops ``high`` importance records after matching,
  whatever the criteria say.
* Global protections (protected labels, VIP sender domains, recent unread
  mail) drop records for every policy.
* The candidate set is capped at ``max_emails_per_run`` (and the run's own
  ``max_emails``), keeping the oldest-first prefix and flagging truncation.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from mailbox_cleanup.clock import Clock, SystemClock, to_epoch_ms
from mailbox_cleanup.exceptions import PolicyDisabledError, ValidationError
from mailbox_cleanup.index.criteria import RecordStore, SearchCriteria
from mailbox_cleanup.models import EmailRecord, ImportanceLevel, Policy, ProtectionConfig
from mailbox_cleanup.policies.store import PolicyStore
from mailbox_cleanup.utils import deep_merge

logger = structlog.get_logger()

QueryObserver = Callable[[float], None]
ProtectionProvider = Callable[[], ProtectionConfig]

LARGE_EMAIL_BYTES = 10 * 1024 * 1024


@dataclass(frozen=True)
class Candidate:
    record_id: str
    size_bytes: int


@dataclass(frozen=True)
class CandidateSet:
    """Records matched by one policy at one instant, after safety filtering."""

    policy_id: str
    candidates: tuple[Candidate, ...]
    limit: int
    truncated: bool
    protected_count: int
    evaluated_at: datetime

    @property
    def record_ids(self) -> list[str]:
        return [c.record_id for c in self.candidates]

    @property
    def total_size_bytes(self) -> int:
        return sum(c.size_bytes for c in self.candidates)

    def __len__(self) -> int:
        return len(self.candidates)


@dataclass(frozen=True)
class PolicyRecommendation:
    """A starter policy suggested by the shape of the indexed mailbox."""

    name: str
    description: str
    criteria: dict[str, Any]
    action: dict[str, Any]
    estimated_cleanup_count: int
    estimated_storage_freed: int


@dataclass(frozen=True)
class RecommendationReport:
    recommendations: tuple[PolicyRecommendation, ...]
    total_emails: int
    spam_emails: int
    promotional_emails: int
    old_emails: int
    large_emails: int


def protection_reason(
    record: EmailRecord, rules: ProtectionConfig, now: datetime
) -> str | None:
    """Name the global protection that keeps ``record`` out of every policy, if any."""

    labels = {label.upper() for label in record.label_ids}
    if labels.intersection(rules.protected_labels):
        return "protected_label"

    if rules.vip_domains and record.from_email and "@" in record.from_email:
        domain = record.from_email.rsplit("@", 1)[1].lower()
        if domain in rules.vip_domains:
            return "vip_domain"

    if (
        rules.unread_recent_days is not None
        and record.is_unread
        and record.internal_date_ms is not None
        and record.internal_date_ms
        >= to_epoch_ms(now - timedelta(days=rules.unread_recent_days))
    ):
        return "unread_recent"

    return None

def build_search_criteria(
    policy: Policy, now: datetime, exclude_ids: Iterable[str] = ()
) -> SearchCriteria:
    """Translate policy criteria into one conjunctive record-store query."""

    c = policy.criteria
    received_before_ms = None
    if c.age_days_min is not None:
        received_before_ms = to_epoch_ms(now - timedelta(days=c.age_days_min))

    importance_levels = None
    if c.importance_level_max is not None:
        importance_levels = c.importance_level_max.at_most()

    return SearchCriteria(
        received_before_ms=received_before_ms,
        importance_levels=importance_levels,
        spam_score_min=c.spam_score_min,
        promotional_score_min=c.promotional_score_min,
        size_min=c.size_threshold_min,
        exclude_ids=list(exclude_ids),
    )


def _validation_messages(exc: PydanticValidationError) -> list[str]:
    out: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        out.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return out


class PolicyEngine:
    """Owns policy lifecycle and turns policies into candidate sets."""

    def __init__(
        self,
        store: PolicyStore,
        records: RecordStore,
        *,
        clock: Clock | None = None,
        page_size: int = 500,
        query_observer: QueryObserver | None = None,
        protection: ProtectionProvider | None = None,
    ) -> None:
        self._store = store
        self._records = records
        self._clock = clock or SystemClock()
        self._page_size = max(1, int(page_size))
        self._query_observer = query_observer
        self._protection = protection

    @property
    def records(self) -> RecordStore:
        return self._records

    # Policy lifecycle

    def create_policy(self, policy: Policy | Mapping[str, Any]) -> Policy:
        """Validate and persist a new policy.

        Raises:
            ValidationError: If the policy is structurally invalid or its id collides.
        """

        parsed = self._coerce(policy)
        now = self._clock.now()
        stored = parsed.model_copy(update={"created_at": now, "updated_at": now})
        self._store.create(stored)

        logger.info(
            "cleanup_policy_created",
            policy_id=stored.id,
            name=stored.name,
            enabled=stored.enabled,
            priority=stored.priority,
        )
        return stored

    def update_policy(self, policy_id: str, updates: Mapping[str, Any]) -> Policy:
        """Apply a partial update; the merged policy is re-validated as a whole."""

        existing = self._store.get(policy_id)
        if "id" in updates and updates["id"] != policy_id:
            raise ValidationError("Policy id cannot be changed")

        merged = deep_merge(
            existing.model_dump(mode="json", exclude={"created_at", "updated_at"}), updates
        )
        updated = self._coerce(merged).model_copy(
            update={"created_at": existing.created_at, "updated_at": self._clock.now()}
        )
        self._store.replace(updated)

        logger.info("cleanup_policy_updated", policy_id=policy_id, updates=sorted(updates))
        return updated

    def delete_policy(self, policy_id: str) -> None:
        self._store.delete(policy_id)
        logger.info("cleanup_policy_deleted", policy_id=policy_id)

    def set_policy_enabled(self, policy_id: str, enabled: bool) -> Policy:
        self._store.set_enabled(policy_id, enabled, updated_at=self._clock.now())
        logger.info("cleanup_policy_enabled_changed", policy_id=policy_id, enabled=enabled)
        return self._store.get(policy_id)

    def get_policy(self, policy_id: str) -> Policy:
        return self._store.get(policy_id)

    def policy_exists(self, policy_id: str) -> bool:
        return self._store.exists(policy_id)

    def list_policies(self) -> list[Policy]:
        return self._store.list_policies()

    def get_active_policies(self) -> list[Policy]:
        """Enabled policies in precedence order (ascending priority number)."""

        return self._store.list_policies(enabled_only=True)

    def ensure_default_policies(self) -> list[Policy]:
        """Seed conservative, disabled starter policies if no policies exist.

        Canonical examples:
          spam score >= 0.9 AND age >= 30 days -> delete (trash)
          promotional score >= 0.8 AND importance <= low AND age >= 180 days -> archive
        """

        if self._store.count() > 0:
            return []

        seeds = [
            {
                "id": "default-old-spam",
                "name": "Trash old spam (30d)",
                "enabled": False,
                "priority": 10,
                "criteria": {"age_days_min": 30, "spam_score_min": 0.9},
                "action": {"type": "delete"},
                "safety": {"max_emails_per_run": 500, "dry_run_first": True},
            },
            {
                "id": "default-stale-promotions",
                "name": "Archive stale promotions (180d)",
                "enabled": False,
                "priority": 50,
                "criteria": {
                    "age_days_min": 180,
                    "promotional_score_min": 0.8,
                    "importance_level_max": "low",
                },
                "action": {"type": "archive"},
                "safety": {"max_emails_per_run": 200, "dry_run_first": True},
            },
        ]
        return [self.create_policy(seed) for seed in seeds]

    # Evaluation

    async def evaluate(
        self,
        policy_id: str,
        *,
        max_emails: int | None = None,
        exclude_ids: Iterable[str] = (),
        allow_disabled: bool = False,
    ) -> CandidateSet:
        """Resolve the current candidate set for a policy.

        Args:
            policy_id: Policy to evaluate.
            max_emails: Optional per-run cap, applied on top of ``max_emails_per_run``.
            exclude_ids: Records claimed by a higher-precedence policy in the same run.
            allow_disabled: Evaluate a disabled policy (dry runs and testing only).

        Raises:
            NotFoundError: If the policy id is unknown.
            PolicyDisabledError: If the policy is disabled and ``allow_disabled`` is false.
        """

        policy = self._store.get(policy_id)
        if not policy.enabled and not allow_disabled:
            raise PolicyDisabledError(policy_id)

        now = self._clock.now()
        limit = policy.safety.max_emails_per_run
        if max_emails is not None:
            limit = min(limit, int(max_emails))

        criteria = build_search_criteria(policy, now, exclude_ids)
        preserve_important = policy.safety.preserve_important
        rules = self._protection() if self._protection is not None else None

        selected: list[Candidate] = []
        protected = 0
        truncated = False
        offset = 0

        while not truncated:
            rows = await self._search(criteria, self._page_size, offset)
            for record in rows:
                if preserve_important and record.importance_level is ImportanceLevel.HIGH:
                    protected += 1
                    continue
                if rules is not None and protection_reason(record, rules, now) is not None:
                    protected += 1
                    continue
                if len(selected) >= limit:
                    truncated = True
                    break
                selected.append(Candidate(record_id=record.gmail_id, size_bytes=record.size_bytes))

            if len(rows) < self._page_size:
                break
            offset += len(rows)

        if truncated:
            logger.info(
                "policy_candidates_truncated",
                policy_id=policy_id,
                limit=limit,
                max_emails_per_run=policy.safety.max_emails_per_run,
            )

        logger.debug(
            "policy_evaluated",
            policy_id=policy_id,
            candidates=len(selected),
            protected=protected,
            truncated=truncated,
        )

        return CandidateSet(
            policy_id=policy_id,
            candidates=tuple(selected),
            limit=limit,
            truncated=truncated,
            protected_count=protected,
            evaluated_at=now,
        )

    async def evaluate_emails_for_cleanup(
        self, policy_id: str, *, allow_disabled: bool = False
    ) -> list[str]:
        """Ordered record ids the policy would clean up right now."""

        candidate_set = await self.evaluate(policy_id, allow_disabled=allow_disabled)
        return candidate_set.record_ids

    async def generate_policy_recommendations(self) -> RecommendationReport:
        """Suggest starter policies from counts over the active index.

        Estimates are rough: a fixed share of the matching mail and a fixed
        per-message size for each category. Nothing is created; feed a
        recommendation's ``criteria`` and ``action`` to ``create_policy``.
        """

        now = self._clock.now()
        year_ago_ms = to_epoch_ms(now - timedelta(days=365))

        total = await self._count(SearchCriteria())
        spam = await self._count(SearchCriteria(spam_score_min=0.7))
        promotional = await self._count(SearchCriteria(promotional_score_min=0.6))
        old = await self._count(SearchCriteria(received_before_ms=year_ago_ms))
        large = await self._count(SearchCriteria(size_min=LARGE_EMAIL_BYTES))

        recommendations: list[PolicyRecommendation] = []
        if spam > 10:
            recommendations.append(
                PolicyRecommendation(
                    name="Spam Email Cleanup",
                    description="Remove emails identified as spam or junk",
                    criteria={
                        "age_days_min": 30,
                        "importance_level_max": "low",
                        "spam_score_min": 0.7,
                    },
                    action={"type": "delete"},
                    estimated_cleanup_count=spam,
                    estimated_storage_freed=spam * 50_000,
                )
            )
        if promotional > 20:
            count = int(promotional * 0.8)
            recommendations.append(
                PolicyRecommendation(
                    name="Promotional Email Cleanup",
                    description="Archive old promotional and marketing emails",
                    criteria={
                        "age_days_min": 90,
                        "importance_level_max": "medium",
                        "promotional_score_min": 0.6,
                    },
                    action={"type": "archive"},
                    estimated_cleanup_count=count,
                    estimated_storage_freed=count * 75_000,
                )
            )
        if old > 50:
            count = int(old * 0.6)
            recommendations.append(
                PolicyRecommendation(
                    name="Old Email Archive",
                    description="Archive emails older than 1 year with low importance",
                    criteria={"age_days_min": 365, "importance_level_max": "medium"},
                    action={"type": "archive"},
                    estimated_cleanup_count=count,
                    estimated_storage_freed=count * 100_000,
                )
            )
        if large > 5:
            count = int(large * 0.7)
            recommendations.append(
                PolicyRecommendation(
                    name="Large Email Cleanup",
                    description="Archive large emails with attachments",
                    criteria={
                        "age_days_min": 180,
                        "importance_level_max": "medium",
                        "size_threshold_min": LARGE_EMAIL_BYTES,
                    },
                    action={"type": "archive"},
                    estimated_cleanup_count=count,
                    estimated_storage_freed=count * 15_000_000,
                )
            )

        logger.info(
            "policy_recommendations_generated",
            total=total,
            spam=spam,
            promotional=promotional,
            old=old,
            large=large,
            recommended=[r.name for r in recommendations],
        )
        return RecommendationReport(
            recommendations=tuple(recommendations),
            total_emails=total,
            spam_emails=spam,
            promotional_emails=promotional,
            old_emails=old,
            large_emails=large,
        )

    async def _count(self, criteria: SearchCriteria) -> int:
        return await asyncio.to_thread(self._records.count, criteria)

    async def _search(self, criteria: SearchCriteria, limit: int, offset: int) -> list[EmailRecord]:
        started = time.perf_counter()
        rows = await asyncio.to_thread(self._records.search, criteria, limit, offset)
        if self._query_observer is not None:
            self._query_observer((time.perf_counter() - started) * 1000.0)
        return rows

    def _coerce(self, policy: Policy | Mapping[str, Any]) -> Policy:
        try:
            if isinstance(policy, Policy):
                return Policy.model_validate(policy.model_dump())
            return Policy.model_validate(dict(policy))
        except PydanticValidationError as exc:
            messages = _validation_messages(exc)
            raise ValidationError(f"Invalid policy: {', '.join(messages)}", messages) from exc
