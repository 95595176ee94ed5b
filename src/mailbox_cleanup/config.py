"""Configuration management for mailbox cleanup.

This module handles process settings using Pydantic settings. Settings can be
loaded from environment variables or .env files. The hot-swappable automation
policy knobs (rate limits, thresholds) live in
:mod:`mailbox_cleanup.automation.config_store` instead.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the EMAIL_CLEANUP_ prefix (e.g., EMAIL_CLEANUP_DB_PATH).
    """

    model_config = SettingsConfigDict(
        env_prefix="EMAIL_CLEANUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    db_path: Path = Field(
        default=Path("mailbox_cleanup.sqlite3"),
        description="SQLite database holding the email index, policies, jobs and automation config",
    )
    index_batch_size: int = Field(
        default=200,
        description="Batch size used when upserting email records into the index",
    )
    storage_quota_bytes: int = Field(
        default=15 * 1024 * 1024 * 1024,
        description="Mailbox quota used to compute storage utilization percent",
    )

    # Gmail Configuration
    gmail_credentials_path: Path = Field(
        default=Path("credentials.json"),
        description="Path to Gmail API credentials file",
    )
    gmail_token_path: Path = Field(
        default=Path("token.json"),
        description="Path to Gmail API token file",
    )
    gmail_scope: str = Field(
        default="https://www.googleapis.com/auth/gmail.modify",
        description=(
            "OAuth scope used for Gmail access. gmail.modify is enough to trash and archive; "
            "permanent deletion requires https://mail.google.com/."
        ),
    )

    # Action execution
    action_backend: str = Field(
        default="index",
        description="Destructive action backend: 'index' (local index only) or 'gmail'",
    )
    batch_size: int = Field(
        default=100,
        description="Default number of records handed to the action backend per batch",
    )
    batch_delay_seconds: float = Field(
        default=0.1,
        description="Pause between batches of one job",
    )
    backend_max_retries: int = Field(
        default=2,
        description="Retries per batch when the action backend errors",
    )
    backend_retry_delay_seconds: float = Field(
        default=1.0,
        description="Initial delay between batch retries (doubles per retry)",
    )
    evaluation_page_size: int = Field(
        default=500,
        description="Page size used when reading candidate records from the index",
    )

    # Automation loops
    scheduler_tick_seconds: float = Field(
        default=5.0,
        description="Interval between continuous-cleanup scheduler ticks",
    )
    monitor_interval_seconds: float = Field(
        default=300.0,
        description="Interval between event trigger signal samples",
    )
    peak_hours_timezone: str = Field(
        default="UTC",
        description="IANA timezone used to interpret peak_hours",
    )
    event_max_emails: int = Field(
        default=1000,
        description="Per-policy record budget for event-triggered cleanups",
    )
    shutdown_timeout_seconds: float = Field(
        default=30.0,
        description="How long shutdown waits for in-flight jobs",
    )
    requeue_interrupted: bool = Field(
        default=False,
        description="Re-queue a copy of jobs found IN_PROGRESS at startup after failing them",
    )
    job_retention_days: int = Field(
        default=30,
        description="Terminal jobs older than this are pruned by 'job prune'",
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
