"""Local-mode execution against an OpenCode server."""

from .client import OpenCodeClient, OpenCodeError
from .monitor import MonitorCancelledError, MonitorResult, ProgressEvent, SessionMonitor
from .watcher import WatcherRegistry

__all__ = [
    "MonitorCancelledError",
    "MonitorResult",
    "OpenCodeClient",
    "OpenCodeError",
    "ProgressEvent",
    "SessionMonitor",
    "WatcherRegistry",
]
