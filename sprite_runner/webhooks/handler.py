"""
Callback handling for sprite executions.

The run-script posts signed JSON callbacks to /webhooks/sprite/{task_id}.
Handling is idempotent: duplicate terminal callbacks and late progress
updates never change a session that already finished, while the sprite
destroy that follows a terminal callback is safe to repeat.
"""

import hmac

from pydantic import ValidationError

from ..log_config import get_logger
from ..outcomes import OutcomeRecorder
from ..registry.models import ExecutionSession
from ..registry.store import SessionStore
from ..sandbox.lifecycle import SpriteLifecycle
from ..sandbox.run_script import sign_payload
from ..sprites.client import SpritesError
from .payloads import (
    CallbackPayload,
    CompletedPayload,
    ErrorPayload,
    ProgressPayload,
    QuestionPayload,
    StartedPayload,
    callback_adapter,
)


class WebhookError(Exception):
    """Base class for rejected callbacks; carries the HTTP status to answer with."""

    status_code = 400


class SessionNotFoundError(WebhookError):
    status_code = 404


class WebhookConfigError(WebhookError):
    status_code = 400


class SignatureError(WebhookError):
    status_code = 401


class PayloadError(WebhookError):
    status_code = 400


class PayloadMismatchError(WebhookError):
    status_code = 400


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    if not signature:
        return False
    expected = sign_payload(raw_body, secret)
    return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))


def decode_payload(raw_body: bytes) -> CallbackPayload:
    try:
        return callback_adapter.validate_json(raw_body)
    except ValidationError as e:
        raise PayloadError(f"Invalid callback payload: {e.errors()[0]['msg']}") from e


class WebhookHandler:
    """Verifies and applies one sprite callback."""

    def __init__(
        self,
        sessions: SessionStore,
        outcomes: OutcomeRecorder,
        lifecycle: SpriteLifecycle | None,
    ):
        self.sessions = sessions
        self.outcomes = outcomes
        self.lifecycle = lifecycle
        self.log = get_logger("webhook")

    async def handle(self, task_id: str, raw_body: bytes, signature: str | None) -> dict:
        log = self.log.bind(task_id=task_id)
        log.info("webhook.received", body_length=len(raw_body), signed=bool(signature))

        session = await self.sessions.latest_for_task(task_id)
        if session is None:
            raise SessionNotFoundError(f"No execution session for task {task_id}")
        if not session.webhook_secret:
            raise WebhookConfigError("Session not configured for webhooks")
        if not verify_signature(raw_body, signature, session.webhook_secret):
            raise SignatureError("Invalid signature")

        payload = decode_payload(raw_body)
        if payload.task_id != session.task_id:
            raise PayloadMismatchError("Task ID mismatch")

        log = log.bind(session_id=session.id, callback_type=payload.type)
        await self._dispatch(session, payload)
        log.info("webhook.applied")

        if isinstance(payload, CompletedPayload | ErrorPayload):
            await self._destroy_sandbox(session)

        return {"success": True}

    async def _dispatch(self, session: ExecutionSession, payload: CallbackPayload) -> None:
        match payload:
            case StartedPayload():
                await self.outcomes.started(session)
            case ProgressPayload(progress=progress):
                await self.outcomes.progress(session, progress.to_usage())
            case CompletedPayload():
                await self.outcomes.completed(
                    session,
                    payload.summary,
                    stats=payload.stats.to_usage() if payload.stats else None,
                    pull_request_url=payload.pull_request_url,
                )
            case ErrorPayload(error=error):
                await self.outcomes.failed(session, error)
            case QuestionPayload(question=question):
                await self.outcomes.question(session, question)

    async def _destroy_sandbox(self, session: ExecutionSession) -> None:
        if not session.sandbox_name or self.lifecycle is None:
            return
        try:
            await self.lifecycle.destroy(session.sandbox_name)
        except SpritesError as e:
            self.log.error(
                "sprite.destroy_error",
                exc=e,
                task_id=session.task_id,
                sprite_name=session.sandbox_name,
            )
