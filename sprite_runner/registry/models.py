"""SQLModel tables for execution sessions and the task-side collaborators.

Tables:
- ExecutionSession: one execution attempt of one task
- Project: repository settings a task executes against
- Task: board card driven by execution outcomes
- Comment: task history, including the agent's own comments
"""

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel
from sqlalchemy import DateTime, Index, Text, TypeDecorator
from sqlalchemy import Enum as SAEnum
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid.uuid4().hex


class UTCDateTime(TypeDecorator):
    """Aware UTC datetimes stored in SQLite's naive DATETIME column."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None:
            value = value.replace(tzinfo=UTC)
        return value


def enum_type(enum_cls: type[StrEnum]) -> SAEnum:
    """Store an enum by value so raw rows read the same as the API."""
    return SAEnum(
        enum_cls,
        values_callable=lambda members: [member.value for member in members],
        native_enum=False,
        length=32,
    )


class SessionStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


TERMINAL_STATUSES = (SessionStatus.COMPLETED, SessionStatus.ERROR)
ACTIVE_STATUSES = (SessionStatus.PENDING, SessionStatus.IN_PROGRESS)


class ExecutionMode(StrEnum):
    LOCAL = "local"
    SANDBOX = "sandbox"


class TaskType(StrEnum):
    BUG = "bug"
    FEATURE = "feature"
    PLAN = "plan"
    OTHER = "other"


class TaskStatus(StrEnum):
    """Board column of a task."""

    BACKLOG = "backlog"
    READY = "ready"
    ACTIVE = "active"
    BLOCKED = "blocked"
    REVIEW = "review"
    DONE = "done"


class ExecutionState(StrEnum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    AWAITING_REVIEW = "awaiting_review"
    COMPLETED = "completed"
    ERROR = "error"


# =============================================================================
# Execution sessions
# =============================================================================


class ExecutionSession(SQLModel, table=True):
    """One execution attempt of one task."""

    __tablename__ = "sessions"
    __table_args__ = (
        Index("ix_sessions_task_created", "task_id", "created_at"),
        Index("ix_sessions_status_mode_created", "status", "execution_mode", "created_at"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    task_id: str
    status: SessionStatus = Field(
        default=SessionStatus.PENDING, sa_type=enum_type(SessionStatus)
    )
    execution_mode: ExecutionMode = Field(
        default=ExecutionMode.SANDBOX, sa_type=enum_type(ExecutionMode)
    )
    sandbox_name: str | None = None
    opencode_session_id: str | None = None
    webhook_secret: str | None = None
    branch_name: str | None = None

    # Usage counters only move forward
    message_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    error_message: str | None = Field(default=None, sa_type=Text)
    logs: str | None = Field(default=None, sa_type=Text)
    pull_request_url: str | None = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    completed_at: datetime | None = Field(default=None, sa_type=UTCDateTime)


class UsageStats(BaseModel):
    """Cumulative usage counters reported by the agent."""

    message_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


# =============================================================================
# Task collaborators
# =============================================================================


class Project(SQLModel, table=True):
    __tablename__ = "projects"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    repository_url: str | None = None
    github_token: str | None = None
    repository_path: str | None = None


class Task(SQLModel, table=True):
    __tablename__ = "tasks"

    id: str = Field(default_factory=new_id, primary_key=True)
    project_id: str = Field(foreign_key="projects.id", index=True)
    title: str
    description: str = Field(default="", sa_type=Text)
    type: TaskType = Field(default=TaskType.OTHER, sa_type=enum_type(TaskType))
    status: TaskStatus = Field(default=TaskStatus.BACKLOG, sa_type=enum_type(TaskStatus))
    execution_state: ExecutionState = Field(
        default=ExecutionState.IDLE, sa_type=enum_type(ExecutionState)
    )
    branch_name: str | None = None
    completed_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Comment(SQLModel, table=True):
    __tablename__ = "comments"
    __table_args__ = (Index("ix_comments_task_created", "task_id", "created_at"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    task_id: str = Field(foreign_key="tasks.id")
    content: str = Field(sa_type=Text)
    is_agent_comment: bool = False
    agent_name: str | None = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
