"""
Sprites API client.

Thin authenticated wrapper around the Sprites control plane
(https://api.sprites.dev/v1). Every call is a single HTTP request; failures are
raised as one of:

- SpritesConfigError: no token configured (raised before any network call)
- SpritesAuthError: the control plane rejected the token (401/403)
- SpritesNotFoundError: the named sprite does not exist (404)
- SpritesApiError: any other non-2xx response or transport failure

Every create() consumes billable provider quota. Callers own the matching
destroy() on every exit path.
"""

from __future__ import annotations

import json
from typing import Any

import httpx

from ..log_config import get_logger
from .types import (
    Checkpoint,
    ExecSession,
    Sprite,
    SpriteListResponse,
    StreamEvent,
)

SPRITES_API_BASE = "https://api.sprites.dev/v1"


class SpritesError(Exception):
    """Base class for Sprites API failures."""


class SpritesConfigError(SpritesError):
    """Raised when the client is missing credentials."""


class SpritesAuthError(SpritesConfigError):
    """Raised when the control plane rejects the configured token."""

    def __init__(self, message: str, status: int):
        super().__init__(message)
        self.status = status


class SpritesNotFoundError(SpritesError):
    """Raised when a sprite (or a resource under it) does not exist."""

    def __init__(self, message: str, sprite_name: str):
        super().__init__(message)
        self.sprite_name = sprite_name


class SpritesApiError(SpritesError):
    """Raised for any other failed request."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class SpritesClient:
    """Async client for the Sprites control plane."""

    HTTP_DEFAULT_TIMEOUT = 60.0
    HTTP_CONNECT_TIMEOUT = 10.0

    def __init__(
        self,
        token: str,
        base_url: str = SPRITES_API_BASE,
        http_client: httpx.AsyncClient | None = None,
    ):
        if not token:
            raise SpritesConfigError("Missing SPRITES_TOKEN configuration")

        self.base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {token}"}
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.HTTP_DEFAULT_TIMEOUT, connect=self.HTTP_CONNECT_TIMEOUT)
        )
        self.log = get_logger("sprites")

    async def aclose(self) -> None:
        await self.http_client.aclose()

    async def __aenter__(self) -> "SpritesClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        sprite_name: str | None = None,
        params: Any = None,
        json_body: Any = None,
        content: str | None = None,
        content_type: str = "application/json",
    ) -> httpx.Response:
        headers = {**self._headers, "Content-Type": content_type}
        try:
            response = await self.http_client.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=json_body,
                content=content,
                headers=headers,
            )
        except httpx.HTTPError as e:
            self.log.warn("sprites.transport_error", exc=e, method=method, path=path)
            raise SpritesApiError(f"Sprites API request failed: {e}") from e

        if response.is_success:
            return response

        message = response.text or response.reason_phrase
        status = response.status_code
        self.log.debug("sprites.request_failed", method=method, path=path, http_status=status)

        if status == 404:
            name = sprite_name or "unknown"
            raise SpritesNotFoundError(f"Sprite not found: {name}", sprite_name=name)
        if status in (401, 403):
            raise SpritesAuthError(f"Sprites API rejected credentials: {message}", status)
        raise SpritesApiError(message or "Sprites API request failed", status=status)

    async def _request_json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._send(method, path, **kwargs)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def _request_stream(self, method: str, path: str, **kwargs: Any) -> list[StreamEvent]:
        """Call an NDJSON endpoint and parse every non-empty line."""
        response = await self._send(method, path, **kwargs)
        events = []
        for line in response.text.splitlines():
            if line.strip():
                events.append(StreamEvent.model_validate(json.loads(line)))
        return events

    # --- Sprite management ---

    async def create(self, name: str, url_auth: str = "sprite") -> Sprite:
        """Create a new sprite."""
        data = await self._request_json(
            "POST",
            "/sprites",
            sprite_name=name,
            json_body={"name": name, "url_settings": {"auth": url_auth}},
        )
        self.log.info("sprites.created", sprite_name=name)
        return Sprite.model_validate(data or {"name": name})

    async def get(self, name: str) -> Sprite:
        data = await self._request_json("GET", f"/sprites/{name}", sprite_name=name)
        return Sprite.model_validate(data)

    async def list(self, prefix: str | None = None, max_results: int | None = None) -> list[str]:
        """List sprite names, following continuation tokens until exhausted."""
        names: list[str] = []
        continuation: str | None = None

        while True:
            params: dict[str, str] = {}
            if prefix:
                params["prefix"] = prefix
            if max_results:
                params["max_results"] = str(max_results)
            if continuation:
                params["continuation_token"] = continuation

            data = await self._request_json("GET", "/sprites", params=params or None)
            page = SpriteListResponse.model_validate(data or {})
            names.extend(entry.name for entry in page.sprites)

            if not page.has_more or not page.next_continuation_token:
                return names
            continuation = page.next_continuation_token

    async def destroy(self, name: str) -> None:
        await self._send("DELETE", f"/sprites/{name}", sprite_name=name)
        self.log.info("sprites.destroyed", sprite_name=name)

    # --- Command execution ---

    async def exec(
        self,
        name: str,
        command: list[str],
        *,
        env: dict[str, str] | None = None,
        workdir: str | None = None,
        stdin: str | None = None,
    ) -> str:
        """
        Run a command in a sprite (non-TTY) and return its captured output.

        When ``stdin`` is given it is sent as the request body, which is how
        files are uploaded without a separate transfer API.
        """
        params: list[tuple[str, str]] = [("cmd", part) for part in command]
        if stdin:
            params.append(("stdin", "true"))
        if workdir:
            params.append(("dir", workdir))
        for key, value in (env or {}).items():
            params.append(("env", f"{key}={value}"))

        response = await self._send(
            "POST",
            f"/sprites/{name}/exec",
            sprite_name=name,
            params=params,
            content=stdin or None,
            content_type="application/octet-stream",
        )
        return response.text

    async def list_exec_sessions(self, name: str) -> list[ExecSession]:
        data = await self._request_json("GET", f"/sprites/{name}/exec", sprite_name=name)
        return [ExecSession.model_validate(item) for item in data or []]

    async def kill_exec_session(
        self, name: str, exec_id: str, signal: str | None = None
    ) -> list[StreamEvent]:
        params = {"signal": signal} if signal else None
        return await self._request_stream(
            "POST", f"/sprites/{name}/exec/{exec_id}/kill", sprite_name=name, params=params
        )

    # --- Checkpoints ---

    async def create_checkpoint(self, name: str, comment: str | None = None) -> list[StreamEvent]:
        return await self._request_stream(
            "POST",
            f"/sprites/{name}/checkpoint",
            sprite_name=name,
            json_body={"comment": comment} if comment else None,
        )

    async def list_checkpoints(self, name: str) -> list[Checkpoint]:
        data = await self._request_json("GET", f"/sprites/{name}/checkpoints", sprite_name=name)
        return [Checkpoint.model_validate(item) for item in data or []]

    async def restore_checkpoint(self, name: str, checkpoint_id: str) -> list[StreamEvent]:
        return await self._request_stream(
            "POST",
            f"/sprites/{name}/checkpoints/{checkpoint_id}/restore",
            sprite_name=name,
        )
