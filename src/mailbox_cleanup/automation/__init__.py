"""Unattended cleanup: configuration, scheduling, event triggers and the engine facade."""

from .config_store import AutomationConfigStore
from .engine import AutomationEngine, build_action_registry
from .health import HealthMonitor, SignalSource, SystemSignals
from .scheduler import AutomationScheduler
from .triggers import EventTriggerMonitor

__all__ = [
    "AutomationConfigStore",
    "AutomationEngine",
    "AutomationScheduler",
    "EventTriggerMonitor",
    "HealthMonitor",
    "SignalSource",
    "SystemSignals",
    "build_action_registry",
]
