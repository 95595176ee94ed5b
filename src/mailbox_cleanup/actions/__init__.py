"""Action backends that carry out policy actions on batches of records."""

from .base import ActionBackend, ActionOutcome, ActionRegistry, apply_to_records, mark_records
from .gmail import GmailActionBackend
from .local import LocalIndexBackend

__all__ = [
    "ActionBackend",
    "ActionOutcome",
    "ActionRegistry",
    "GmailActionBackend",
    "LocalIndexBackend",
    "apply_to_records",
    "mark_records",
]
