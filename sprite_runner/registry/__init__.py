"""Session and task-collaborator persistence."""

from .models import (
    Comment,
    ExecutionMode,
    ExecutionSession,
    ExecutionState,
    Project,
    SessionStatus,
    Task,
    TaskStatus,
    TaskType,
    UsageStats,
)
from .store import Database, SessionStore, TaskStore

__all__ = [
    "Comment",
    "Database",
    "ExecutionMode",
    "ExecutionSession",
    "ExecutionState",
    "Project",
    "SessionStatus",
    "SessionStore",
    "Task",
    "TaskStatus",
    "TaskStore",
    "TaskType",
    "UsageStats",
]
