"""
Background watchers for local-mode sessions.

Each watched session gets one asyncio task running SessionMonitor.monitor and
applying its results: usage counters, each distinct question once as a
comment, and the terminal outcome through the same conditional transitions
the webhook handler uses. The watcher owns its monitor's OpenCode client and
closes it when the task ends.
"""

import asyncio
from dataclasses import dataclass

from ..log_config import get_logger
from ..outcomes import OutcomeRecorder
from ..registry.models import ExecutionSession
from .monitor import MonitorCancelledError, ProgressEvent, SessionMonitor


@dataclass
class _Watcher:
    task: asyncio.Task[None]
    cancel_event: asyncio.Event
    connected: asyncio.Event


class WatcherRegistry:
    """Tracks the active watcher per execution session id."""

    def __init__(self, outcomes: OutcomeRecorder):
        self.outcomes = outcomes
        self._watchers: dict[str, _Watcher] = {}
        self._lock = asyncio.Lock()
        self.log = get_logger("watcher")

    async def start(self, session: ExecutionSession, monitor: SessionMonitor) -> bool:
        """Start watching a session. Returns False if it is already watched."""
        if not session.opencode_session_id:
            raise ValueError(f"Session {session.id} has no OpenCode session to watch")

        async with self._lock:
            if session.id in self._watchers:
                self.log.info("watcher.already_active", session_id=session.id)
                return False

            cancel_event = asyncio.Event()
            connected = asyncio.Event()
            task = asyncio.create_task(self._run(session, monitor, cancel_event, connected))
            watcher = _Watcher(task=task, cancel_event=cancel_event, connected=connected)
            self._watchers[session.id] = watcher

        def handle_task_exception(t: asyncio.Task[None], s: ExecutionSession = session) -> None:
            if t.cancelled():
                return
            if exc := t.exception():
                self.log.error("watcher.error", exc=exc, session_id=s.id, task_id=s.task_id)

        task.add_done_callback(handle_task_exception)
        self.log.info(
            "watcher.start",
            session_id=session.id,
            opencode_session_id=session.opencode_session_id,
        )
        return True

    async def wait_until_streaming(self, session_id: str, timeout: float) -> bool:
        """
        Wait until the watcher has its event stream open.

        Returns False if the watcher ended (or is unknown) or the timeout passed
        before the stream connected.
        """
        watcher = self._watchers.get(session_id)
        if watcher is None:
            return False

        connected = asyncio.create_task(watcher.connected.wait())
        try:
            await asyncio.wait(
                {connected, watcher.task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            connected.cancel()
        return watcher.connected.is_set() and not watcher.task.done()

    async def stop(self, session_id: str) -> bool:
        async with self._lock:
            watcher = self._watchers.pop(session_id, None)
        if watcher is None:
            return False
        watcher.cancel_event.set()
        watcher.task.cancel()
        self.log.info("watcher.stop", session_id=session_id)
        return True

    async def stop_all(self) -> None:
        async with self._lock:
            session_ids = list(self._watchers)
        for session_id in session_ids:
            await self.stop(session_id)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._watchers

    async def _run(
        self,
        session: ExecutionSession,
        monitor: SessionMonitor,
        cancel_event: asyncio.Event,
        connected: asyncio.Event,
    ) -> None:
        posted_questions: set[str] = set()

        async def on_progress(event: ProgressEvent) -> None:
            if event.kind == "usage":
                await self.outcomes.progress(session, event.stats)
            elif event.kind == "question" and event.text and event.text not in posted_questions:
                posted_questions.add(event.text)
                await self.outcomes.question(session, event.text)

        try:
            result = await monitor.monitor(
                session.opencode_session_id, on_progress, cancel_event, connected
            )
            if result.success:
                await self.outcomes.completed(session, result.summary or "", stats=result.stats)
            else:
                await self.outcomes.failed(
                    session, result.error or "Unknown error", stats=result.stats
                )
        except MonitorCancelledError:
            self.log.info("watcher.cancelled", session_id=session.id)
        except Exception as e:
            self.log.error("watcher.error", exc=e, session_id=session.id, task_id=session.task_id)
            await self.outcomes.failed(session, str(e) or type(e).__name__)
        finally:
            await monitor.close()
            async with self._lock:
                current = self._watchers.get(session.id)
                if current is not None and current.task is asyncio.current_task():
                    del self._watchers[session.id]
