"""Mailbox Cleanup - policy-driven lifecycle cleanup for a Gmail mailbox index.

This package provides the cleanup automation core: declarative cleanup
policies, a durable job queue, a continuous scheduler and edge-triggered
event cleanups, executed against a local SQLite email index and Gmail.
"""

__version__ = "0.1.0"

from mailbox_cleanup.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
