"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from mailbox_cleanup.actions import ActionOutcome, ActionRegistry, LocalIndexBackend
from mailbox_cleanup.automation import AutomationConfigStore, AutomationEngine, SystemSignals
from mailbox_cleanup.clock import to_epoch_ms
from mailbox_cleanup.config import Settings
from mailbox_cleanup.exceptions import BackendError
from mailbox_cleanup.index import EmailIndexRepository
from mailbox_cleanup.jobs import JobQueue
from mailbox_cleanup.models import EmailRecord
from mailbox_cleanup.policies import PolicyEngine, PolicyStore

# A Monday, 03:00 UTC: outside the default 09:00-17:00 peak window.
START = datetime(2025, 6, 2, 3, 0, tzinfo=timezone.utc)


class ManualClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, start: datetime = START) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> datetime:
        self._now += timedelta(**kwargs)
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment


class FakeBackend:
    """Action backend that records calls and fails on demand."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, list[str], dict[str, Any]]] = []
        self.failures_remaining = 0
        self.always_fail = False
        self.failed_ids: set[str] = set()

    async def execute(
        self, action_type: str, record_ids: list[str], options: Mapping[str, Any]
    ) -> ActionOutcome:
        self.calls.append((action_type, list(record_ids), dict(options)))
        if self.always_fail:
            raise BackendError("backend unavailable")
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise BackendError("transient backend error")

        failed = [r for r in record_ids if r in self.failed_ids]
        return ActionOutcome(
            success=not failed,
            affected_count=len(record_ids) - len(failed),
            errors=[f"{r}: rejected" for r in failed],
            failed_ids=failed,
        )

    @property
    def processed_ids(self) -> list[str]:
        return [record_id for _, ids, _ in self.calls for record_id in ids]


class FakeSignalSource:
    """Signal source whose readings are set directly by the test."""

    def __init__(self, clock: ManualClock) -> None:
        self._clock = clock
        self.storage_usage_percent = 10.0
        self.average_query_time_ms = 5.0
        self.cache_hit_rate: float | None = None
        self.daily_email_volume = 0
        self.samples = 0

    def sample(self) -> SystemSignals:
        self.samples += 1
        return SystemSignals(
            storage_usage_percent=self.storage_usage_percent,
            average_query_time_ms=self.average_query_time_ms,
            cache_hit_rate=self.cache_hit_rate,
            daily_email_volume=self.daily_email_volume,
            sampled_at=self._clock.now(),
        )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway database, with no delays."""
    return Settings(
        db_path=tmp_path / "cleanup.sqlite3",
        gmail_credentials_path=tmp_path / "credentials.json",
        gmail_token_path=tmp_path / "token.json",
        batch_delay_seconds=0,
        backend_max_retries=1,
        backend_retry_delay_seconds=0,
        peak_hours_timezone="UTC",
        event_max_emails=1000,
    )


@pytest.fixture
def index(settings: Settings) -> EmailIndexRepository:
    repo = EmailIndexRepository(settings.db_path)
    repo.initialize()
    return repo


@pytest.fixture
def policy_store(settings: Settings) -> PolicyStore:
    store = PolicyStore(settings.db_path)
    store.initialize()
    return store


@pytest.fixture
def queue(settings: Settings, clock: ManualClock) -> JobQueue:
    q = JobQueue(settings.db_path, clock=clock)
    q.initialize()
    return q


@pytest.fixture
def config_store(settings: Settings, policy_store: PolicyStore) -> AutomationConfigStore:
    store = AutomationConfigStore(settings.db_path, policy_exists=policy_store.exists)
    store.initialize()
    return store


@pytest.fixture
def policy_engine(
    settings: Settings, policy_store: PolicyStore, index: EmailIndexRepository, clock: ManualClock
) -> PolicyEngine:
    return PolicyEngine(
        policy_store, index, clock=clock, page_size=settings.evaluation_page_size
    )


@pytest.fixture
def make_record(clock: ManualClock):
    """Build an EmailRecord received ``age_days`` before the test clock's now."""

    def _make(gmail_id: str, *, age_days: float = 0, **fields: Any) -> EmailRecord:
        received = clock.now() - timedelta(days=age_days)
        fields.setdefault("internal_date_ms", to_epoch_ms(received))
        fields.setdefault("size_bytes", 1000)
        return EmailRecord(gmail_id=gmail_id, **fields)

    return _make


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def signal_source(clock: ManualClock) -> FakeSignalSource:
    return FakeSignalSource(clock)


@pytest.fixture
def engine(
    settings: Settings,
    index: EmailIndexRepository,
    policy_store: PolicyStore,
    queue: JobQueue,
    config_store: AutomationConfigStore,
    clock: ManualClock,
    signal_source: FakeSignalSource,
) -> AutomationEngine:
    """Engine wired to the local index backend and a controllable signal source."""
    return AutomationEngine(
        settings=settings,
        index=index,
        policy_store=policy_store,
        queue=queue,
        config_store=config_store,
        registry=ActionRegistry.with_backend(LocalIndexBackend(index)),
        clock=clock,
        signal_source=signal_source,
    )


@pytest.fixture
def sample_email_data() -> dict:
    """Provide sample Gmail message metadata (format=metadata)."""
    return {
        "id": "msg123456",
        "threadId": "thread789",
        "labelIds": ["INBOX", "UNREAD", "CATEGORY_PROMOTIONS"],
        "snippet": "Weekly Newsletter - Python Tips",
        "internalDate": "1700000000000",
        "sizeEstimate": 48213,
        "payload": {
            "headers": [
                {"name": "Subject", "value": "Weekly Newsletter - Python Tips"},
                {"name": "From", "value": "Python Weekly <Newsletter@Python.org>"},
                {"name": "To", "value": "user@example.com"},
            ],
        },
    }
