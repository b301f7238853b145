"""
Async persistence for execution sessions and task collaborators.

Every store call runs in its own short-lived AsyncSession, so no transaction
ever spans a network call. On Modal the SQLite file lives on the mounted
volume.

Terminal status is sticky: `SessionStore.finish` only moves a session out of
a non-terminal state and reports whether it did. Callers must only emit task
updates and comments when it returns True.
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import case, event, func, insert, literal, literal_column, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel, col, select

from ..log_config import get_logger
from .models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Comment,
    ExecutionMode,
    ExecutionSession,
    ExecutionState,
    Project,
    SessionStatus,
    Task,
    TaskStatus,
    UsageStats,
    utcnow,
)

AGENT_NAME = "sprite-runner"


def _on_connect(dbapi_connection, connection_record) -> None:
    # Let SQLAlchemy emit BEGIN itself (see _on_begin)
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _on_begin(conn) -> None:
    # Take the write lock up front; a deferred read-then-write upgrade can
    # fail with "database is locked" instead of waiting for the busy timeout
    conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Async engine over the SQLite file; creates the tables on first use."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.engine = create_async_engine(
            f"sqlite+aiosqlite:///{self.path}",
            poolclass=NullPool,
            connect_args={"timeout": 30},
        )
        event.listen(self.engine.sync_engine, "connect", _on_connect)
        event.listen(self.engine.sync_engine, "begin", _on_begin)
        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            self._initialized = True

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        await self.initialize()
        async with self.session_maker() as db:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def dispose(self) -> None:
        await self.engine.dispose()


class SessionStore:
    """Execution session persistence."""

    def __init__(self, db: Database):
        self.db = db
        self.log = get_logger("store")

    async def create(self, session: ExecutionSession) -> ExecutionSession:
        async with self.db.session() as db:
            db.add(session)
        return session

    async def create_exclusive(self, session: ExecutionSession) -> bool:
        """Insert the session unless the task already has an active one."""
        table = ExecutionSession.__table__
        values = session.model_dump()
        active = (
            select(col(ExecutionSession.id))
            .where(
                col(ExecutionSession.task_id) == session.task_id,
                col(ExecutionSession.status).in_(ACTIVE_STATUSES),
            )
            .correlate(None)
            .exists()
        )
        row = select(*(literal(values[c.name], c.type) for c in table.columns)).where(~active)
        stmt = insert(table).from_select([c.name for c in table.columns], row)

        async with self.db.session() as db:
            result = await db.execute(stmt)
        return result.rowcount > 0

    async def get(self, session_id: str) -> ExecutionSession | None:
        async with self.db.session() as db:
            return await db.get(ExecutionSession, session_id)

    async def latest_for_task(
        self, task_id: str, *, active_only: bool = False
    ) -> ExecutionSession | None:
        stmt = select(ExecutionSession).where(col(ExecutionSession.task_id) == task_id)
        if active_only:
            stmt = stmt.where(col(ExecutionSession.status).in_(ACTIVE_STATUSES))
        stmt = stmt.order_by(
            col(ExecutionSession.created_at).desc(), literal_column("rowid").desc()
        ).limit(1)

        async with self.db.session() as db:
            result = await db.execute(stmt)
            return result.scalars().first()

    async def active_for_task(self, task_id: str) -> ExecutionSession | None:
        return await self.latest_for_task(task_id, active_only=True)

    async def _update(self, session_id: str, values: dict[str, Any], *criteria) -> bool:
        stmt = (
            update(ExecutionSession)
            .where(col(ExecutionSession.id) == session_id, *criteria)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as db:
            result = await db.execute(stmt)
        return result.rowcount > 0

    async def mark_launched(
        self,
        session_id: str,
        *,
        sandbox_name: str | None = None,
        opencode_session_id: str | None = None,
        branch_name: str | None = None,
    ) -> bool:
        """Record the launch handle and promote pending -> in_progress."""
        handles = {
            "sandbox_name": sandbox_name,
            "opencode_session_id": opencode_session_id,
            "branch_name": branch_name,
        }
        values = {key: value for key, value in handles.items() if value is not None}
        return await self._update(session_id, {**values, "status": _promote_pending()})

    async def update_progress(self, session_id: str, stats: UsageStats) -> bool:
        """
        Apply cumulative usage counters to a non-terminal session.

        Counters only move forward. Returns False when the session is terminal
        (or unknown) and nothing was written.
        """
        return await self._update(
            session_id,
            {**_forward_counters(stats), "status": _promote_pending()},
            col(ExecutionSession.status).not_in(TERMINAL_STATUSES),
        )

    async def finish(
        self,
        session_id: str,
        status: SessionStatus,
        *,
        error_message: str | None = None,
        stats: UsageStats | None = None,
        pull_request_url: str | None = None,
        logs: str | None = None,
    ) -> bool:
        """
        Move a session to a terminal status.

        Returns True only if this call performed the transition; a session that
        is already completed or errored is left untouched.
        """
        if not status.is_terminal:
            raise ValueError(f"finish() requires a terminal status, got {status}")

        values: dict[str, Any] = {
            "status": status,
            "completed_at": utcnow(),
            **_forward_counters(stats or UsageStats()),
        }
        extras = {
            "error_message": error_message,
            "pull_request_url": pull_request_url,
            "logs": logs,
        }
        values.update({key: value for key, value in extras.items() if value is not None})

        transitioned = await self._update(
            session_id, values, col(ExecutionSession.status).not_in(TERMINAL_STATUSES)
        )
        if not transitioned:
            self.log.info("session.finish_skipped", session_id=session_id, status=status.value)
        return transitioned

    async def list_stale(self, cutoff: datetime) -> list[ExecutionSession]:
        """In-progress sandbox sessions created before the cutoff."""
        stmt = (
            select(ExecutionSession)
            .where(
                col(ExecutionSession.execution_mode) == ExecutionMode.SANDBOX,
                col(ExecutionSession.status) == SessionStatus.IN_PROGRESS,
                col(ExecutionSession.created_at) < cutoff,
            )
            .order_by(col(ExecutionSession.created_at))
        )
        async with self.db.session() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())


def _promote_pending():
    status = col(ExecutionSession.status)
    return case(
        (status == SessionStatus.PENDING, SessionStatus.IN_PROGRESS.value),
        else_=status,
    )


def _forward_counters(stats: UsageStats) -> dict[str, Any]:
    # SQLite's two-argument max() is a scalar function
    return {
        "message_count": func.max(col(ExecutionSession.message_count), stats.message_count),
        "input_tokens": func.max(col(ExecutionSession.input_tokens), stats.input_tokens),
        "output_tokens": func.max(col(ExecutionSession.output_tokens), stats.output_tokens),
    }


class TaskStore:
    """Minimal persistence for the task, project and comment collaborators."""

    def __init__(self, db: Database):
        self.db = db

    # --- Projects ---

    async def create_project(self, project: Project) -> Project:
        async with self.db.session() as db:
            db.add(project)
        return project

    async def get_project(self, project_id: str) -> Project | None:
        async with self.db.session() as db:
            return await db.get(Project, project_id)

    # --- Tasks ---

    async def create_task(self, task: Task) -> Task:
        async with self.db.session() as db:
            db.add(task)
        return task

    async def get_task(self, task_id: str) -> Task | None:
        async with self.db.session() as db:
            return await db.get(Task, task_id)

    async def update_task(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        execution_state: ExecutionState | None = None,
        branch_name: str | None = None,
    ) -> None:
        changes = {
            "status": status,
            "execution_state": execution_state,
            "branch_name": branch_name,
        }
        values = {key: value for key, value in changes.items() if value is not None}
        stmt = (
            update(Task)
            .where(col(Task.id) == task_id)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as db:
            await db.execute(stmt)

    async def mark_in_progress(self, task_id: str) -> None:
        await self.update_task(
            task_id, status=TaskStatus.ACTIVE, execution_state=ExecutionState.IN_PROGRESS
        )

    async def mark_awaiting_review(self, task_id: str) -> None:
        await self.update_task(
            task_id, status=TaskStatus.REVIEW, execution_state=ExecutionState.AWAITING_REVIEW
        )

    async def mark_blocked(self, task_id: str) -> None:
        await self.update_task(
            task_id, status=TaskStatus.BLOCKED, execution_state=ExecutionState.ERROR
        )

    # --- Comments ---

    async def add_comment(
        self,
        task_id: str,
        content: str,
        *,
        is_agent_comment: bool = True,
        agent_name: str | None = AGENT_NAME,
    ) -> Comment:
        comment = Comment(
            task_id=task_id,
            content=content,
            is_agent_comment=is_agent_comment,
            agent_name=agent_name if is_agent_comment else None,
        )
        async with self.db.session() as db:
            db.add(comment)
        return comment

    async def has_agent_comment(
        self, task_id: str, content: str, since: datetime | None = None
    ) -> bool:
        """Whether the agent already posted this exact comment (after `since`)."""
        stmt = select(col(Comment.id)).where(
            col(Comment.task_id) == task_id,
            col(Comment.is_agent_comment).is_(True),
            col(Comment.content) == content,
        )
        if since is not None:
            stmt = stmt.where(col(Comment.created_at) >= since)

        async with self.db.session() as db:
            result = await db.execute(stmt.limit(1))
            return result.first() is not None

    async def list_comments(self, task_id: str) -> list[Comment]:
        stmt = (
            select(Comment)
            .where(col(Comment.task_id) == task_id)
            .order_by(col(Comment.created_at), literal_column("rowid"))
        )
        async with self.db.session() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())
