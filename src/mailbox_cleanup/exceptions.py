"""Custom exceptions for the mailbox cleanup automation core."""

from __future__ import annotations


class MailboxCleanupError(Exception):
    """Base exception for all mailbox cleanup errors."""


class ConfigurationError(MailboxCleanupError):
    """Exception raised for configuration related errors."""


class AuthenticationError(MailboxCleanupError):
    """Exception raised for authentication failures."""


class GmailAPIError(MailboxCleanupError):
    """Exception raised for Gmail API related errors."""


class ValidationError(MailboxCleanupError):
    """Malformed policy, request or configuration.

    Always raised before any state change.
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class NotFoundError(MailboxCleanupError):
    """Unknown policy or job id."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class PolicyDisabledError(MailboxCleanupError):
    """The policy exists but is disabled."""

    def __init__(self, policy_id: str) -> None:
        super().__init__(f"Policy is disabled: {policy_id}")
        self.policy_id = policy_id


class ConfirmationRequiredError(MailboxCleanupError):
    """The policy requires an explicit confirmation flag on the request."""

    def __init__(self, policy_id: str) -> None:
        super().__init__(f"Policy requires confirmation before it can run: {policy_id}")
        self.policy_id = policy_id


class DryRunRequiredError(MailboxCleanupError):
    """The policy must complete a dry run before its first destructive run."""

    def __init__(self, policy_id: str) -> None:
        super().__init__(f"Policy requires a completed dry run first: {policy_id}")
        self.policy_id = policy_id


class InvalidTransitionError(MailboxCleanupError):
    """Job state machine violation."""

    def __init__(self, job_id: str, current: str, requested: str) -> None:
        super().__init__(f"Illegal job transition for {job_id}: {current} -> {requested}")
        self.job_id = job_id
        self.current = current
        self.requested = requested


class JobAlreadyClaimedError(InvalidTransitionError):
    """Another processor already owns (or finished) the job."""


class QueueClosedError(MailboxCleanupError):
    """The job queue no longer accepts work."""


class DeletionLimitError(MailboxCleanupError):
    """The hourly or daily deletion ceiling is already reached."""

    def __init__(self, window: str, used: int, limit: int) -> None:
        super().__init__(f"Deletion limit reached: {used}/{limit} deletions this {window}")
        self.window = window
        self.used = used
        self.limit = limit


class UnsupportedActionError(ValidationError):
    """No backend is registered for the policy action type."""


class BackendError(MailboxCleanupError):
    """The action backend is unreachable or returned an error for a batch."""


class PartialBatchFailure(MailboxCleanupError):
    """Per-record failures inside an otherwise successful batch."""

    def __init__(self, affected_count: int, errors: list[str], failed_ids: list[str]) -> None:
        super().__init__(f"{len(failed_ids)} record(s) failed in batch")
        self.affected_count = affected_count
        self.errors = list(errors)
        self.failed_ids = list(failed_ids)
