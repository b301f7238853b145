"""
Task execution service.

Starts an execution attempt for a task, in one of two modes:
- sandbox: spawn a sprite that reports back through signed webhooks
- local: drive a locally reachable OpenCode server and watch its event stream

A task has at most one pending or in-progress session at a time. The session
row is written before the launch, so every attempt is accounted for even if
the launch fails. A local OpenCode server that fails its health check is
rejected before any row is written.
"""

from collections.abc import Callable
from dataclasses import dataclass

from .config import RunnerConfig
from .log_config import get_logger
from .opencode.client import OpenCodeClient, OpenCodeError
from .opencode.monitor import SessionMonitor
from .opencode.watcher import WatcherRegistry
from .outcomes import OutcomeRecorder
from .registry.models import (
    Comment,
    ExecutionMode,
    ExecutionSession,
    Project,
    Task,
)
from .registry.store import SessionStore, TaskStore
from .sandbox.lifecycle import ExecutionError, SpriteLifecycle
from .sandbox.run_script import generate_webhook_secret
from .sprites.client import SpritesConfigError

LOCAL_AGENT = "task-executor"
STREAM_CONNECT_TIMEOUT_SECONDS = 10.0


class ExecutionConflictError(ExecutionError):
    """The task already has an active execution session."""


class ProjectNotConfiguredError(ExecutionError):
    """The project lacks what the requested execution mode needs."""


class OpenCodeUnavailableError(ExecutionError):
    """The local OpenCode server did not answer its health check."""


@dataclass(frozen=True)
class ExecutionResult:
    session_id: str
    sandbox_name: str | None
    branch_name: str | None


def build_task_prompt(task: Task, comments: list[Comment]) -> str:
    """Render the task and its comment history as the agent's prompt."""
    sections = [
        f"# Task: {task.title}\n",
        f"**Type:** {task.type.value}\n",
        f"## Description\n{task.description or 'No description provided.'}\n",
    ]

    if comments:
        sections.append("## Comment History\n")
        for comment in comments:
            author = (comment.agent_name or "Agent") if comment.is_agent_comment else "User"
            timestamp = comment.created_at.strftime("%Y-%m-%d %H:%M UTC")
            sections.append(f"**{author}** ({timestamp}):\n{comment.content}\n")

    return "\n".join(sections)


class TaskExecutor:
    def __init__(
        self,
        sessions: SessionStore,
        tasks: TaskStore,
        config: RunnerConfig,
        lifecycle: SpriteLifecycle | None = None,
        watchers: WatcherRegistry | None = None,
        opencode_factory: Callable[[str | None], OpenCodeClient] | None = None,
    ):
        self.sessions = sessions
        self.tasks = tasks
        self.config = config
        self.lifecycle = lifecycle
        self.watchers = watchers
        self.outcomes = OutcomeRecorder(sessions, tasks)
        self.opencode_factory = opencode_factory or (
            lambda directory: OpenCodeClient(config.opencode_base_url, directory=directory)
        )
        self.log = get_logger("execution")

    async def execute(
        self,
        task: Task,
        project: Project,
        comments: list[Comment],
        mode: ExecutionMode = ExecutionMode.SANDBOX,
    ) -> ExecutionResult:
        """
        Start an execution attempt.

        Raises:
            SpritesConfigError: sandbox mode requested but not configured
            ProjectNotConfiguredError: project is missing repository settings
            OpenCodeUnavailableError: local mode requested but the server is down
            ExecutionConflictError: the task already has an active session
            ExecutionError: the launch failed (session and task already marked)
        """
        if mode == ExecutionMode.SANDBOX:
            return await self._execute_sandbox(task, project, comments)
        return await self._execute_local(task, project, comments)

    async def status(self, session_id: str) -> ExecutionSession | None:
        return await self.sessions.get(session_id)

    async def _open_session(self, session: ExecutionSession) -> ExecutionSession:
        if not await self.sessions.create_exclusive(session):
            active = await self.sessions.active_for_task(session.task_id)
            raise ExecutionConflictError(
                f"Task {session.task_id} already has an active session"
                + (f" ({active.id})" if active else "")
            )
        await self.tasks.mark_in_progress(session.task_id)
        return session

    async def _launch_failed(self, session: ExecutionSession, error: Exception) -> None:
        message = str(error) or type(error).__name__
        self.log.error(
            "execution.launch_error", exc=error, session_id=session.id, task_id=session.task_id
        )
        await self.outcomes.failed(session, message)

    async def _execute_sandbox(
        self, task: Task, project: Project, comments: list[Comment]
    ) -> ExecutionResult:
        if not self.config.sandbox_enabled or self.lifecycle is None:
            raise SpritesConfigError(
                "Sandbox execution is not configured "
                "(SPRITES_TOKEN and WEBHOOK_BASE_URL required)"
            )
        if not project.repository_url or not project.github_token:
            raise ProjectNotConfiguredError(
                "Project does not have a repository URL and GitHub token configured"
            )

        session = await self._open_session(
            ExecutionSession(
                task_id=task.id,
                execution_mode=ExecutionMode.SANDBOX,
                webhook_secret=generate_webhook_secret(),
                branch_name=task.branch_name,
            )
        )
        log = self.log.bind(session_id=session.id, task_id=task.id)
        log.info("execution.start", execution_mode=ExecutionMode.SANDBOX.value)

        try:
            spawned = await self.lifecycle.spawn(
                task,
                project,
                build_task_prompt(task, comments),
                session_id=session.id,
                webhook_secret=session.webhook_secret,
            )
        except Exception as e:
            await self._launch_failed(session, e)
            raise

        await self.sessions.mark_launched(
            session.id, sandbox_name=spawned.sprite_name, branch_name=spawned.branch_name
        )
        if not task.branch_name:
            await self.tasks.update_task(task.id, branch_name=spawned.branch_name)
        await self.tasks.add_comment(
            task.id,
            f"Execution started in sandbox `{spawned.sprite_name}` "
            f"on branch `{spawned.branch_name}`.",
        )
        log.info("execution.launched", sprite_name=spawned.sprite_name)
        return ExecutionResult(
            session_id=session.id,
            sandbox_name=spawned.sprite_name,
            branch_name=spawned.branch_name,
        )

    async def _execute_local(
        self, task: Task, project: Project, comments: list[Comment]
    ) -> ExecutionResult:
        if self.watchers is None:
            raise ExecutionError("Local execution is not available in this process")
        if not project.repository_path:
            raise ProjectNotConfiguredError("Project does not have a local repository path")

        # The client belongs to the watcher once it starts; until then it is closed here
        client = self.opencode_factory(project.repository_path)
        watching = False
        try:
            try:
                await client.health()
            except OpenCodeError as e:
                raise OpenCodeUnavailableError(str(e)) from e

            session = await self._open_session(
                ExecutionSession(
                    task_id=task.id,
                    execution_mode=ExecutionMode.LOCAL,
                    branch_name=task.branch_name,
                )
            )
            log = self.log.bind(session_id=session.id, task_id=task.id)
            log.info("execution.start", execution_mode=ExecutionMode.LOCAL.value)

            try:
                opencode_session_id = await client.create_session(f"Task: {task.title}")
                await self.sessions.mark_launched(
                    session.id, opencode_session_id=opencode_session_id
                )
                launched = await self.sessions.get(session.id) or session
                watching = await self.watchers.start(
                    launched, SessionMonitor(client, self.config.monitor_timeout_seconds)
                )
                # Subscribe before prompting so the first events are not missed
                if not await self.watchers.wait_until_streaming(
                    session.id, STREAM_CONNECT_TIMEOUT_SECONDS
                ):
                    raise OpenCodeError("OpenCode event stream did not connect")
                await client.prompt_async(
                    opencode_session_id, build_task_prompt(task, comments), agent=LOCAL_AGENT
                )
            except Exception as e:
                if watching:
                    await self.watchers.stop(session.id)
                await self._launch_failed(session, e)
                raise
        finally:
            if not watching:
                await client.aclose()

        await self.tasks.add_comment(
            task.id, "Execution started against the local OpenCode server."
        )
        log.info("execution.launched", opencode_session_id=opencode_session_id)
        return ExecutionResult(
            session_id=session.id, sandbox_name=None, branch_name=task.branch_name
        )
