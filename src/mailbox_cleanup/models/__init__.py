"""Data models for mailbox cleanup.

This package contains Pydantic models for data validation and serialization.
"""

from mailbox_cleanup.models.automation import (
    AutomationConfig,
    ContinuousCleanupConfig,
    EmailVolumeThresholdConfig,
    EventTriggersConfig,
    PeakHours,
    PerformanceThresholdConfig,
    ProtectionConfig,
    StorageThresholdConfig,
)
from mailbox_cleanup.models.email_record import EmailRecord, ImportanceLevel
from mailbox_cleanup.models.job import (
    CleanupRequest,
    Job,
    JobProgress,
    JobResult,
    JobStatus,
    JobType,
)
from mailbox_cleanup.models.policy import (
    ArchiveAction,
    DeleteAction,
    Policy,
    PolicyAction,
    PolicyCriteria,
    PolicySafety,
)

__all__ = [
    "ArchiveAction",
    "AutomationConfig",
    "CleanupRequest",
    "ContinuousCleanupConfig",
    "DeleteAction",
    "EmailRecord",
    "EmailVolumeThresholdConfig",
    "EventTriggersConfig",
    "ImportanceLevel",
    "Job",
    "JobProgress",
    "JobResult",
    "JobStatus",
    "JobType",
    "PeakHours",
    "PerformanceThresholdConfig",
    "Policy",
    "PolicyAction",
    "PolicyCriteria",
    "PolicySafety",
    "ProtectionConfig",
    "StorageThresholdConfig",
]
