"""Signed callbacks from sprite run-scripts."""

from .handler import (
    PayloadError,
    PayloadMismatchError,
    SessionNotFoundError,
    SignatureError,
    WebhookConfigError,
    WebhookError,
    WebhookHandler,
)

__all__ = [
    "PayloadError",
    "PayloadMismatchError",
    "SessionNotFoundError",
    "SignatureError",
    "WebhookConfigError",
    "WebhookError",
    "WebhookHandler",
]
