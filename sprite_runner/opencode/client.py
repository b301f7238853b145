"""
HTTP client for a locally reachable OpenCode server (`opencode serve`).

Only the calls local execution needs: a health check, create a session,
submit a prompt without waiting for the reply, abort, and consume the
`/event` SSE stream.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from ..log_config import get_logger


class OpenCodeError(Exception):
    """Raised when the OpenCode server rejects a request or is unreachable."""


class OpenCodeClient:
    OPENCODE_REQUEST_TIMEOUT = 30.0
    HTTP_CONNECT_TIMEOUT = 10.0
    HEALTH_CHECK_TIMEOUT = 5.0

    def __init__(
        self,
        base_url: str = "http://localhost:4096",
        directory: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.directory = directory
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.OPENCODE_REQUEST_TIMEOUT, connect=self.HTTP_CONNECT_TIMEOUT)
        )
        self.log = get_logger("opencode")

    @property
    def _params(self) -> dict[str, str] | None:
        return {"directory": self.directory} if self.directory else None

    async def aclose(self) -> None:
        await self.http_client.aclose()

    async def _post(self, path: str, body: dict[str, Any] | None = None) -> httpx.Response:
        try:
            response = await self.http_client.post(
                f"{self.base_url}{path}",
                json=body if body is not None else {},
                params=self._params,
                timeout=self.OPENCODE_REQUEST_TIMEOUT,
            )
        except httpx.HTTPError as e:
            raise OpenCodeError(f"OpenCode request failed: {e}") from e

        if response.status_code not in (200, 204):
            raise OpenCodeError(
                f"OpenCode request {path} failed: {response.status_code} - {response.text}"
            )
        return response

    async def health(self) -> None:
        """
        Check that the server answers by listing its sessions.

        Raises:
            OpenCodeError: the server is not running or not reachable
        """
        try:
            response = await self.http_client.get(
                f"{self.base_url}/session",
                params=self._params,
                timeout=self.HEALTH_CHECK_TIMEOUT,
            )
        except httpx.HTTPError as e:
            raise OpenCodeError(self._unavailable(str(e) or type(e).__name__)) from e

        if response.status_code != 200:
            raise OpenCodeError(self._unavailable(f"status {response.status_code}"))

    def _unavailable(self, reason: str) -> str:
        return (
            f"OpenCode server is not running or not accessible at {self.base_url} ({reason}). "
            "Start it with `opencode serve --port 4096` or set OPENCODE_BASE_URL."
        )

    async def create_session(self, title: str | None = None) -> str:
        """Create a session and return its id."""
        response = await self._post("/session", {"title": title} if title else {})
        session_id = response.json().get("id")
        if not session_id:
            raise OpenCodeError("OpenCode did not return a session id")
        self.log.info("opencode.session.ensure", opencode_session_id=session_id, action="created")
        return session_id

    async def prompt_async(
        self,
        session_id: str,
        text: str,
        agent: str | None = None,
        model: str | None = None,
    ) -> None:
        """Submit a prompt; the reply is observed through events()."""
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        if agent:
            body["agent"] = agent
        if model:
            if "/" in model:
                provider_id, model_id = model.split("/", 1)
            else:
                provider_id, model_id = "anthropic", model
            body["model"] = {"providerID": provider_id, "modelID": model_id}

        await self._post(f"/session/{session_id}/prompt_async", body)

    async def abort(self, session_id: str) -> None:
        await self._post(f"/session/{session_id}/abort")
        self.log.info("opencode.session.abort", opencode_session_id=session_id)

    async def events(
        self, connected: asyncio.Event | None = None
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield parsed events from the server's SSE stream until it closes.

        `connected` is set as soon as the stream is accepted, before any event
        arrives.
        """
        async with self.http_client.stream(
            "GET",
            f"{self.base_url}/event",
            params=self._params,
            timeout=httpx.Timeout(None, connect=self.HTTP_CONNECT_TIMEOUT, read=None),
        ) as response:
            if response.status_code != 200:
                raise OpenCodeError(f"SSE connection failed: {response.status_code}")
            if connected is not None:
                connected.set()
            async for event in parse_sse_stream(response.aiter_text()):
                yield event


async def parse_sse_stream(chunks: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """
    Parse Server-Sent Events into JSON objects.

    SSE format:
        data: {"type": "...", "properties": {...}}

        data: {"type": "...", "properties": {...}}

    Events are separated by blank lines; multi-line data is joined with newlines.
    """
    log = get_logger("opencode")
    buffer = ""
    async for chunk in chunks:
        buffer += chunk.replace("\r\n", "\n")

        while "\n\n" in buffer:
            event_str, buffer = buffer.split("\n\n", 1)

            data_lines: list[str] = []
            for line in event_str.split("\n"):
                if line.startswith("data:"):
                    # Handle both "data: {...}" and "data:{...}" formats
                    data_content = line[5:].lstrip()
                    if data_content:
                        data_lines.append(data_content)

            if data_lines:
                try:
                    yield json.loads("\n".join(data_lines))
                except json.JSONDecodeError as e:
                    log.debug("opencode.sse_parse_error", exc=e)
