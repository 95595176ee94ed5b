"""Email record index.

This package contains the record store cleanup policies are evaluated
against: a local index of email metadata (sender, date, size, importance and
spam signals, lifecycle flags) without message bodies.
"""

from .criteria import RecordStore, SearchCriteria
from .repository import EmailIndexRepository, EmailIndexStats, SenderStats

__all__ = [
    "EmailIndexRepository",
    "EmailIndexStats",
    "RecordStore",
    "SearchCriteria",
    "SenderStats",
]
