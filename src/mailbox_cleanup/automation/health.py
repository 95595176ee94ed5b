"""System health signals for the event trigger monitor."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

import structlog

from mailbox_cleanup.clock import Clock, SystemClock, to_epoch_ms
from mailbox_cleanup.index.repository import EmailIndexRepository

logger = structlog.get_logger()


@dataclass(frozen=True)
class SystemSignals:
    """One sample of the signals event triggers compare against thresholds."""

    storage_usage_percent: float
    average_query_time_ms: float
    cache_hit_rate: float | None
    daily_email_volume: int
    sampled_at: datetime


class SignalSource(Protocol):
    def sample(self) -> SystemSignals: ...


class HealthMonitor:
    """Default signal source backed by the email index.

    * storage: active (not deleted) index bytes as a percentage of the quota
    * query time: mean of the last ``window`` record-store query durations
    * cache hit rate: hits / (hits + misses) reported by the host, ``None``
      until any cache traffic is seen
    * volume: records received in the trailing 24 hours
    """

    def __init__(
        self,
        index: EmailIndexRepository,
        *,
        storage_quota_bytes: int,
        clock: Clock | None = None,
        window: int = 100,
    ) -> None:
        self._index = index
        self._quota = max(1, int(storage_quota_bytes))
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._query_times: deque[float] = deque(maxlen=window)
        self._cache_hits = 0
        self._cache_misses = 0

    def record_query_time(self, duration_ms: float) -> None:
        with self._lock:
            self._query_times.append(float(duration_ms))

    def record_cache_hit(self) -> None:
        with self._lock:
            self._cache_hits += 1

    def record_cache_miss(self) -> None:
        with self._lock:
            self._cache_misses += 1

    def average_query_time_ms(self) -> float:
        with self._lock:
            if not self._query_times:
                return 0.0
            return sum(self._query_times) / len(self._query_times)

    def cache_hit_rate(self) -> float | None:
        with self._lock:
            total = self._cache_hits + self._cache_misses
            if total == 0:
                return None
            return self._cache_hits / total

    def sample(self) -> SystemSignals:
        now = self._clock.now()
        stats = self._index.overall_stats()
        volume = self._index.count_received_since(to_epoch_ms(now - timedelta(hours=24)))

        signals = SystemSignals(
            storage_usage_percent=stats.active_size_bytes / self._quota * 100.0,
            average_query_time_ms=self.average_query_time_ms(),
            cache_hit_rate=self.cache_hit_rate(),
            daily_email_volume=volume,
            sampled_at=now,
        )
        logger.debug(
            "system_signals_sampled",
            storage_usage_percent=round(signals.storage_usage_percent, 2),
            average_query_time_ms=round(signals.average_query_time_ms, 2),
            cache_hit_rate=signals.cache_hit_rate,
            daily_email_volume=volume,
        )
        return signals
