"""Durable cleanup jobs: the queue and the processor that runs them."""

from .processor import JobProcessor, check_deletion_limits, check_safety_gate
from .queue import JobQueue

__all__ = ["JobProcessor", "JobQueue", "check_deletion_limits", "check_safety_gate"]
