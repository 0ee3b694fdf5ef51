"""energy_sync configuration."""

from .loader import load
from .merger import deep_merge
from .models import (
    BackendSection,
    ExecutorSection,
    LogSection,
    QueueSection,
    ReconcilerSection,
    RetrySection,
    SessionSection,
    SyncConfig,
)

__all__ = [
    "BackendSection",
    "ExecutorSection",
    "LogSection",
    "QueueSection",
    "ReconcilerSection",
    "RetrySection",
    "SessionSection",
    "SyncConfig",
    "deep_merge",
    "load",
]
