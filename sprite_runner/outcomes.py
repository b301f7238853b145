"""
Applies execution outcomes to the session store and the task collaborators.

Shared by the webhook handler (sandbox mode), the session watcher (local
mode), the reaper and the execution service, so each terminal path performs
the same conditional transition, task flip and comment. Started and question
comments are posted at most once per session, so redelivered callbacks and
repeated idle events do not pile up.
"""

from .log_config import get_logger
from .registry.models import ExecutionSession, SessionStatus, UsageStats
from .registry.store import SessionStore, TaskStore

STARTED_COMMENT = "Agent execution started."


def format_stats(stats: UsageStats) -> str:
    return (
        f"**Stats:** {stats.message_count} messages, "
        f"{stats.input_tokens} input tokens, {stats.output_tokens} output tokens"
    )


def completion_comment(summary: str, stats: UsageStats | None = None) -> str:
    text = f"Execution completed successfully.\n\n{summary or 'Task finished.'}"
    if stats is not None:
        text += f"\n\n{format_stats(stats)}"
    return text


def error_comment(message: str) -> str:
    return f"Execution failed.\n\n**Error:** {message}\n\nPlease review the error and try again."


def question_comment(question: str) -> str:
    return (
        f"**Question from the agent:**\n\n{question}\n\n"
        "Please respond in the comments to continue execution."
    )


class OutcomeRecorder:
    """Writes session transitions and their task-side effects."""

    def __init__(self, sessions: SessionStore, tasks: TaskStore):
        self.sessions = sessions
        self.tasks = tasks
        self.log = get_logger("outcomes")

    async def _comment_once(self, session: ExecutionSession, content: str) -> bool:
        """Post an agent comment unless this session already posted the same text."""
        if await self.tasks.has_agent_comment(session.task_id, content, since=session.created_at):
            self.log.info("comment.duplicate_skipped", session_id=session.id)
            return False
        await self.tasks.add_comment(session.task_id, content)
        return True

    async def started(self, session: ExecutionSession) -> None:
        current = await self.sessions.get(session.id) or session
        if current.status.is_terminal:
            return
        await self._comment_once(current, STARTED_COMMENT)

    async def progress(self, session: ExecutionSession, stats: UsageStats) -> bool:
        """Record cumulative usage; a terminal session is left untouched."""
        updated = await self.sessions.update_progress(session.id, stats)
        if updated:
            await self.tasks.mark_in_progress(session.task_id)
        return updated

    async def question(self, session: ExecutionSession, question: str) -> bool:
        return await self._comment_once(session, question_comment(question))

    async def completed(
        self,
        session: ExecutionSession,
        summary: str,
        stats: UsageStats | None = None,
        pull_request_url: str | None = None,
    ) -> bool:
        transitioned = await self.sessions.finish(
            session.id,
            SessionStatus.COMPLETED,
            stats=stats,
            pull_request_url=pull_request_url,
            logs=summary or None,
        )
        if transitioned:
            await self.tasks.mark_awaiting_review(session.task_id)
            await self.tasks.add_comment(session.task_id, completion_comment(summary, stats))
            self.log.info("session.completed", session_id=session.id, task_id=session.task_id)
        return transitioned

    async def failed(
        self,
        session: ExecutionSession,
        message: str,
        comment: str | None = None,
        stats: UsageStats | None = None,
    ) -> bool:
        transitioned = await self.sessions.finish(
            session.id, SessionStatus.ERROR, error_message=message, stats=stats
        )
        if transitioned:
            await self.tasks.mark_blocked(session.task_id)
            await self.tasks.add_comment(session.task_id, comment or error_comment(message))
            self.log.info(
                "session.failed",
                session_id=session.id,
                task_id=session.task_id,
                error_message=message,
            )
        return transitioned
