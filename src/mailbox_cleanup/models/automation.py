"""Automation configuration models.

The whole tree is frozen: a configuration change always builds a new
:class:`AutomationConfig` and swaps it in, it never edits one in place.
"""

from __future__ import annotations

import re
from datetime import time

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_HHMM = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class PeakHours(_Frozen):
    """Daily window (local time, HH:MM) during which automated runs pause."""

    start: str = "09:00"
    end: str = "17:00"

    @field_validator("start", "end")
    @classmethod
    def _validate_hhmm(cls, v: str) -> str:
        if not _HHMM.match(v):
            raise ValueError("peak hours must be in HH:MM format")
        return v

    def contains(self, moment: time) -> bool:
        """Whether ``moment`` falls in ``[start, end)``; windows may wrap midnight."""

        start = _parse_hhmm(self.start)
        end = _parse_hhmm(self.end)
        current = moment.replace(second=0, microsecond=0, tzinfo=None)
        if start == end:
            return False
        if start < end:
            return start <= current < end
        return current >= start or current < end


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class ContinuousCleanupConfig(_Frozen):
    enabled: bool = False
    target_emails_per_minute: int = Field(default=10, ge=1)
    max_concurrent_operations: int = Field(default=3, ge=1)
    pause_during_peak_hours: bool = True
    peak_hours: PeakHours = Field(default_factory=PeakHours)


class StorageThresholdConfig(_Frozen):
    enabled: bool = True
    warning_threshold_percent: float = Field(default=80.0, gt=0, le=100)
    critical_threshold_percent: float = Field(default=95.0, gt=0, le=100)
    warning_policies: list[str] = Field(default_factory=list)
    emergency_policies: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _ordered(self) -> "StorageThresholdConfig":
        if self.warning_threshold_percent > self.critical_threshold_percent:
            raise ValueError("warning_threshold_percent must not exceed critical_threshold_percent")
        return self


class PerformanceThresholdConfig(_Frozen):
    enabled: bool = True
    query_time_threshold_ms: float = Field(default=1000.0, gt=0)
    cache_hit_rate_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    cleanup_policies: list[str] = Field(default_factory=list)


class EmailVolumeThresholdConfig(_Frozen):
    enabled: bool = True
    daily_email_threshold: int = Field(default=1000, ge=1)
    immediate_cleanup_policies: list[str] = Field(default_factory=list)


class EventTriggersConfig(_Frozen):
    storage_threshold: StorageThresholdConfig = Field(default_factory=StorageThresholdConfig)
    performance_threshold: PerformanceThresholdConfig = Field(
        default_factory=PerformanceThresholdConfig
    )
    email_volume_threshold: EmailVolumeThresholdConfig = Field(
        default_factory=EmailVolumeThresholdConfig
    )


class ProtectionConfig(_Frozen):
    """Protections applied to every policy, on top of each policy's own safety.

    Records carrying a protected label, sent from a VIP domain, or unread and
    younger than ``unread_recent_days`` are never candidates. Delete actions
    stop once the hourly or daily deletion ceiling is reached. ``None``
    switches the corresponding check off.
    """

    protected_labels: list[str] = Field(default_factory=lambda: ["STARRED"])
    vip_domains: list[str] = Field(default_factory=list)
    unread_recent_days: int | None = Field(default=14, ge=0)
    max_deletions_per_hour: int | None = Field(default=100, ge=1)
    max_deletions_per_day: int | None = Field(default=1000, ge=1)

    @field_validator("protected_labels")
    @classmethod
    def _upper_labels(cls, v: list[str]) -> list[str]:
        return [label.strip().upper() for label in v if label.strip()]

    @field_validator("vip_domains")
    @classmethod
    def _lower_domains(cls, v: list[str]) -> list[str]:
        return [domain.strip().lower().lstrip("@") for domain in v if domain.strip()]

    @model_validator(mode="after")
    def _ordered_ceilings(self) -> "ProtectionConfig":
        hour, day = self.max_deletions_per_hour, self.max_deletions_per_day
        if hour is not None and day is not None and hour > day:
            raise ValueError("max_deletions_per_hour must not exceed max_deletions_per_day")
        return self


class AutomationConfig(_Frozen):
    """Process-wide automation configuration."""

    continuous_cleanup: ContinuousCleanupConfig = Field(default_factory=ContinuousCleanupConfig)
    event_triggers: EventTriggersConfig = Field(default_factory=EventTriggersConfig)
    protection: ProtectionConfig = Field(default_factory=ProtectionConfig)

    def referenced_policy_ids(self) -> set[str]:
        triggers = self.event_triggers
        return {
            *triggers.storage_threshold.warning_policies,
            *triggers.storage_threshold.emergency_policies,
            *triggers.performance_threshold.cleanup_policies,
            *triggers.email_volume_threshold.immediate_cleanup_policies,
        }
