"""Tests for the SQLModel session and task stores."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from sprite_runner.registry.models import (
    Comment,
    ExecutionMode,
    ExecutionSession,
    ExecutionState,
    SessionStatus,
    TaskStatus,
    UsageStats,
    utcnow,
)


class TestSessionCreation:
    @pytest.mark.asyncio
    async def test_create_and_get_round_trip(self, session_store, task):
        session = await session_store.create(
            ExecutionSession(task_id=task.id, webhook_secret="secret", sandbox_name="runner-x")
        )

        stored = await session_store.get(session.id)
        assert stored.task_id == task.id
        assert stored.status == SessionStatus.PENDING
        assert stored.execution_mode == ExecutionMode.SANDBOX
        assert stored.webhook_secret == "secret"
        assert stored.created_at == session.created_at

    @pytest.mark.asyncio
    async def test_get_unknown_session_returns_none(self, session_store):
        assert await session_store.get("missing") is None

    @pytest.mark.asyncio
    async def test_enums_are_stored_by_value(self, db, session_store, task):
        session = await session_store.create(
            ExecutionSession(task_id=task.id, status=SessionStatus.IN_PROGRESS)
        )

        async with db.session() as conn:
            result = await conn.execute(
                text("SELECT status, execution_mode FROM sessions WHERE id = :id"),
                {"id": session.id},
            )
            assert tuple(result.one()) == ("in_progress", "sandbox")

    @pytest.mark.asyncio
    async def test_create_exclusive_rejects_second_active_session(self, session_store, task):
        first = ExecutionSession(task_id=task.id)
        second = ExecutionSession(task_id=task.id)

        assert await session_store.create_exclusive(first) is True
        assert await session_store.create_exclusive(second) is False
        assert await session_store.get(second.id) is None
        assert (await session_store.active_for_task(task.id)).id == first.id

    @pytest.mark.asyncio
    async def test_concurrent_exclusive_creates_admit_one(self, session_store, task):
        candidates = [ExecutionSession(task_id=task.id) for _ in range(5)]

        created = await asyncio.gather(*(session_store.create_exclusive(c) for c in candidates))

        assert sum(created) == 1

    @pytest.mark.asyncio
    async def test_create_exclusive_allows_retry_after_terminal(self, session_store, task):
        first = ExecutionSession(task_id=task.id)
        await session_store.create_exclusive(first)
        await session_store.finish(first.id, SessionStatus.ERROR, error_message="boom")

        retry = ExecutionSession(task_id=task.id)
        assert await session_store.create_exclusive(retry) is True
        assert (await session_store.latest_for_task(task.id)).id == retry.id

    @pytest.mark.asyncio
    async def test_latest_for_task_prefers_newest(self, session_store, task):
        older = ExecutionSession(task_id=task.id, created_at=utcnow() - timedelta(minutes=5))
        newer = ExecutionSession(task_id=task.id)
        await session_store.create(newer)
        await session_store.create(older)

        assert (await session_store.latest_for_task(task.id)).id == newer.id


class TestMarkLaunched:
    @pytest.mark.asyncio
    async def test_records_handles_and_promotes_pending(self, session_store, task):
        session = await session_store.create(
            ExecutionSession(task_id=task.id, branch_name="agent/old")
        )

        assert await session_store.mark_launched(session.id, sandbox_name="runner-x")

        stored = await session_store.get(session.id)
        assert stored.status == SessionStatus.IN_PROGRESS
        assert stored.sandbox_name == "runner-x"
        assert stored.branch_name == "agent/old"

    @pytest.mark.asyncio
    async def test_does_not_resurrect_terminal_session(self, session_store, task):
        session = await session_store.create(ExecutionSession(task_id=task.id))
        await session_store.finish(session.id, SessionStatus.ERROR, error_message="boom")

        await session_store.mark_launched(session.id, sandbox_name="runner-x")

        assert (await session_store.get(session.id)).status == SessionStatus.ERROR


class TestFinish:
    """Terminal status is sticky."""

    @pytest.mark.asyncio
    async def test_first_terminal_status_wins(self, session_store, task):
        session = await session_store.create(
            ExecutionSession(task_id=task.id, status=SessionStatus.IN_PROGRESS)
        )

        assert await session_store.finish(session.id, SessionStatus.COMPLETED, logs="done")
        assert not await session_store.finish(
            session.id, SessionStatus.ERROR, error_message="late"
        )

        stored = await session_store.get(session.id)
        assert stored.status == SessionStatus.COMPLETED
        assert stored.error_message is None
        assert stored.logs == "done"
        assert stored.completed_at is not None
        assert stored.completed_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_concurrent_finishes_transition_once(self, session_store, task):
        session = await session_store.create(
            ExecutionSession(task_id=task.id, status=SessionStatus.IN_PROGRESS)
        )

        results = await asyncio.gather(
            session_store.finish(session.id, SessionStatus.COMPLETED),
            session_store.finish(session.id, SessionStatus.ERROR, error_message="late"),
            session_store.finish(session.id, SessionStatus.COMPLETED),
        )

        assert sum(results) == 1

    @pytest.mark.asyncio
    async def test_finish_keeps_larger_counters(self, session_store, task):
        session = await session_store.create(
            ExecutionSession(task_id=task.id, status=SessionStatus.IN_PROGRESS)
        )
        await session_store.update_progress(
            session.id, UsageStats(message_count=9, input_tokens=900, output_tokens=90)
        )

        await session_store.finish(
            session.id,
            SessionStatus.COMPLETED,
            stats=UsageStats(message_count=4, input_tokens=1000, output_tokens=10),
        )

        stored = await session_store.get(session.id)
        assert (stored.message_count, stored.input_tokens, stored.output_tokens) == (9, 1000, 90)

    @pytest.mark.asyncio
    async def test_finish_requires_terminal_status(self, session_store, task):
        session = await session_store.create(ExecutionSession(task_id=task.id))

        with pytest.raises(ValueError):
            await session_store.finish(session.id, SessionStatus.IN_PROGRESS)


class TestUpdateProgress:
    @pytest.mark.asyncio
    async def test_counters_are_monotonic(self, session_store, task):
        session = await session_store.create(
            ExecutionSession(task_id=task.id, status=SessionStatus.IN_PROGRESS)
        )

        await session_store.update_progress(
            session.id, UsageStats(message_count=3, input_tokens=300, output_tokens=30)
        )
        await session_store.update_progress(
            session.id, UsageStats(message_count=2, input_tokens=400, output_tokens=20)
        )

        stored = await session_store.get(session.id)
        assert (stored.message_count, stored.input_tokens, stored.output_tokens) == (3, 400, 30)

    @pytest.mark.asyncio
    async def test_terminal_session_is_not_updated(self, session_store, task):
        session = await session_store.create(ExecutionSession(task_id=task.id))
        await session_store.finish(session.id, SessionStatus.COMPLETED)

        assert not await session_store.update_progress(session.id, UsageStats(message_count=5))
        assert (await session_store.get(session.id)).message_count == 0


class TestListStale:
    @pytest.mark.asyncio
    async def test_only_old_in_progress_sandbox_sessions(self, session_store, task):
        old = utcnow() - timedelta(hours=2)
        stale = await session_store.create(
            ExecutionSession(task_id=task.id, status=SessionStatus.IN_PROGRESS, created_at=old)
        )
        await session_store.create(
            ExecutionSession(
                task_id=task.id,
                status=SessionStatus.IN_PROGRESS,
                execution_mode=ExecutionMode.LOCAL,
                created_at=old,
            )
        )
        await session_store.create(
            ExecutionSession(task_id=task.id, status=SessionStatus.COMPLETED, created_at=old)
        )
        await session_store.create(
            ExecutionSession(task_id=task.id, status=SessionStatus.IN_PROGRESS)
        )

        found = await session_store.list_stale(utcnow() - timedelta(hours=1))

        assert [session.id for session in found] == [stale.id]


class TestTaskStore:
    @pytest.mark.asyncio
    async def test_task_transitions(self, task_store, task):
        await task_store.mark_in_progress(task.id)
        assert (await task_store.get_task(task.id)).status == TaskStatus.ACTIVE

        await task_store.mark_awaiting_review(task.id)
        reviewed = await task_store.get_task(task.id)
        assert reviewed.status == TaskStatus.REVIEW
        assert reviewed.execution_state == ExecutionState.AWAITING_REVIEW

        await task_store.mark_blocked(task.id)
        blocked = await task_store.get_task(task.id)
        assert blocked.status == TaskStatus.BLOCKED
        assert blocked.execution_state == ExecutionState.ERROR

    @pytest.mark.asyncio
    async def test_update_task_keeps_unset_fields(self, task_store, task):
        await task_store.update_task(task.id, branch_name="agent/0f8fad5b-fix-login-redirect")
        await task_store.update_task(task.id, status=TaskStatus.READY)

        updated = await task_store.get_task(task.id)
        assert updated.branch_name == "agent/0f8fad5b-fix-login-redirect"
        assert updated.status == TaskStatus.READY

    @pytest.mark.asyncio
    async def test_comments_are_listed_in_order(self, task_store, task):
        await task_store.add_comment(task.id, "first")
        await task_store.add_comment(task.id, "second", is_agent_comment=False)

        comments = await task_store.list_comments(task.id)
        assert [comment.content for comment in comments] == ["first", "second"]
        assert comments[0].agent_name == "sprite-runner"
        assert comments[1].agent_name is None
        assert not comments[1].is_agent_comment

    @pytest.mark.asyncio
    async def test_has_agent_comment_ignores_user_and_older_comments(self, task_store, task):
        since = utcnow()
        await task_store.add_comment(task.id, "same text", is_agent_comment=False)
        assert not await task_store.has_agent_comment(task.id, "same text", since=since)

        await task_store.add_comment(task.id, "same text")
        assert await task_store.has_agent_comment(task.id, "same text", since=since)
        assert not await task_store.has_agent_comment(
            task.id, "same text", since=utcnow() + timedelta(minutes=1)
        )

    @pytest.mark.asyncio
    async def test_comment_for_unknown_task_is_rejected(self, db, task_store):
        with pytest.raises(IntegrityError, match="FOREIGN KEY"):
            async with db.session() as conn:
                conn.add(Comment(task_id="missing", content="orphan"))

    @pytest.mark.asyncio
    async def test_project_round_trip(self, task_store, project):
        stored = await task_store.get_project(project.id)
        assert stored.repository_url == "https://github.com/acme/webapp"
        assert stored.github_token == "ghp_test"
