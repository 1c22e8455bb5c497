"""Failure tracking, degraded mode and resilient store access."""

from .mode import FailureTracker, SystemMode
from .probe import HealthProbe
from .store import SOURCE_FALLBACK, SOURCE_PRIMARY, ResilientStore

__all__ = ["FailureTracker", "HealthProbe", "ResilientStore", "SOURCE_FALLBACK", "SOURCE_PRIMARY", "SystemMode"]
