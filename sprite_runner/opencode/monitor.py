"""
Live monitoring of a local OpenCode session through its event stream.

Token usage in `message.updated` events is cumulative per message, so the
latest value for a message id replaces the earlier one and totals are summed
across message ids. A session is only considered done when it goes idle
after an assistant message; idle after a user message means the prompt has
not been picked up yet.
"""

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

from ..log_config import get_logger
from ..registry.models import UsageStats
from .client import OpenCodeClient, OpenCodeError

DEFAULT_MONITOR_TIMEOUT_SECONDS = 1800.0

QUESTION_INDICATORS = ("?", "please provide", "what is", "which", "how")


class MonitorCancelledError(Exception):
    """Raised when monitoring is stopped through its cancel event."""


@dataclass
class MonitorResult:
    success: bool
    summary: str | None = None
    error: str | None = None
    message_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def stats(self) -> UsageStats:
        return UsageStats(
            message_count=self.message_count,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
        )


@dataclass(frozen=True)
class ProgressEvent:
    kind: Literal["usage", "question", "summary"]
    stats: UsageStats
    text: str | None = None


ProgressCallback = Callable[[ProgressEvent], Awaitable[None]]


def looks_like_question(text: str) -> bool:
    lowered = text.lower()
    return any(indicator in lowered for indicator in QUESTION_INDICATORS)


def event_session_id(props: dict[str, Any]) -> str | None:
    return (
        props.get("sessionID")
        or (props.get("info") or {}).get("sessionID")
        or (props.get("part") or {}).get("sessionID")
    )


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        data = error.get("data") or {}
        return error.get("message") or data.get("message") or error.get("name") or "Unknown error"
    return str(error) if error else "Unknown error"


@dataclass
class _SessionState:
    tokens: dict[str, tuple[int, int]] = field(default_factory=dict)
    assistant_ids: list[str] = field(default_factory=list)
    texts: dict[str, dict[str, str]] = field(default_factory=dict)
    last_role: str | None = None

    def stats(self) -> UsageStats:
        return UsageStats(
            message_count=len(self.assistant_ids),
            input_tokens=sum(tokens[0] for tokens in self.tokens.values()),
            output_tokens=sum(tokens[1] for tokens in self.tokens.values()),
        )

    def assistant_text(self) -> str:
        if not self.assistant_ids:
            return ""
        parts = self.texts.get(self.assistant_ids[-1], {})
        return "\n".join(text for text in parts.values() if text).strip()

    def result(self, success: bool, summary: str | None = None, error: str | None = None):
        stats = self.stats()
        return MonitorResult(
            success=success,
            summary=summary,
            error=error,
            message_count=stats.message_count,
            input_tokens=stats.input_tokens,
            output_tokens=stats.output_tokens,
        )


class SessionMonitor:
    """Consumes the OpenCode event stream for one session until it finishes."""

    def __init__(
        self,
        client: OpenCodeClient,
        timeout_seconds: float = DEFAULT_MONITOR_TIMEOUT_SECONDS,
    ):
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.log = get_logger("monitor")

    async def close(self) -> None:
        await self.client.aclose()

    async def monitor(
        self,
        opencode_session_id: str,
        on_progress: ProgressCallback,
        cancel_event: asyncio.Event | None = None,
        connected: asyncio.Event | None = None,
    ) -> MonitorResult:
        """
        Follow the session until it goes idle, errors or times out.

        `connected` is set once the event stream is open, so the caller can
        submit the prompt without missing its first events.
        """
        state = _SessionState()
        log = self.log.bind(opencode_session_id=opencode_session_id)
        try:
            async with asyncio.timeout(self.timeout_seconds):
                return await self._consume(
                    opencode_session_id, state, on_progress, cancel_event, connected, log
                )
        except TimeoutError:
            log.error(
                "monitor.timeout",
                timeout_name="monitor",
                timeout_ms=int(self.timeout_seconds * 1000),
            )
            return state.result(
                False,
                error=f"Session monitoring timed out after {self.timeout_seconds / 60:g} minutes",
            )
        except (OpenCodeError, httpx.HTTPError) as e:
            log.error("monitor.stream_error", exc=e)
            return state.result(False, error=f"Event stream failed: {e}")

    async def _consume(
        self,
        opencode_session_id: str,
        state: _SessionState,
        on_progress: ProgressCallback,
        cancel_event: asyncio.Event | None,
        connected: asyncio.Event | None,
        log,
    ) -> MonitorResult:
        async with aclosing(self.client.events(connected)) as events:
            async for event in events:
                if cancel_event is not None and cancel_event.is_set():
                    raise MonitorCancelledError(f"Monitoring cancelled for {opencode_session_id}")

                event_type = event.get("type")
                props = event.get("properties") or {}
                if event_session_id(props) != opencode_session_id:
                    continue

                if event_type == "message.updated":
                    before = state.stats()
                    self._apply_message(state, props.get("info") or {})
                    after = state.stats()
                    if after != before:
                        await on_progress(ProgressEvent(kind="usage", stats=after))

                elif event_type == "message.part.updated":
                    part = props.get("part") or {}
                    if part.get("type") == "text":
                        message_texts = state.texts.setdefault(part.get("messageID", ""), {})
                        part_id = part.get("id", "")
                        delta = props.get("delta")
                        if delta and not part.get("text"):
                            message_texts[part_id] = message_texts.get(part_id, "") + delta
                        else:
                            message_texts[part_id] = part.get("text", "")

                elif event_type == "session.idle" or (
                    event_type == "session.status"
                    and (props.get("status") or {}).get("type") == "idle"
                ):
                    if state.last_role != "assistant":
                        log.debug("monitor.idle_waiting", last_role=state.last_role)
                        continue

                    text = state.assistant_text()
                    kind = "question" if text and looks_like_question(text) else "summary"
                    await on_progress(ProgressEvent(kind=kind, stats=state.stats(), text=text))
                    log.info("monitor.session_idle", outcome=kind)
                    return state.result(True, summary=text or "Task execution completed")

                elif event_type == "session.error":
                    message = _error_message(props.get("error"))
                    log.error("monitor.session_error", error_msg=message)
                    return state.result(False, error=message)

        return state.result(False, error="Event stream closed before the session finished")

    @staticmethod
    def _apply_message(state: _SessionState, info: dict[str, Any]) -> None:
        message_id = info.get("id")
        role = info.get("role")
        if not message_id:
            return

        state.last_role = role
        if role == "assistant" and message_id not in state.assistant_ids:
            state.assistant_ids.append(message_id)

        tokens = info.get("tokens")
        if isinstance(tokens, dict):
            state.tokens[message_id] = (
                int(tokens.get("input") or 0),
                int(tokens.get("output") or 0),
            )
