"""
Stale-session reaper.

Sandbox sessions that never report back (crashed sprite, lost callback) stay
in_progress forever. The reaper finalises every in-progress sandbox session
older than the execution timeout as a timeout error and destroys its sprite.

Runs on the Modal schedule (see app.py), from GET /cron/cleanup, or standalone:

    python -m sprite_runner.scheduler.reaper --interval 300
    python -m sprite_runner.scheduler.reaper --once
"""

import argparse
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ..config import get_config
from ..log_config import configure_logging, get_logger
from ..outcomes import OutcomeRecorder
from ..registry.models import utcnow
from ..registry.store import Database, SessionStore, TaskStore
from ..sandbox.lifecycle import SpriteLifecycle
from ..sprites.client import SpritesClient, SpritesError

log = get_logger("reaper")


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    for unit, size in (("hour", 3600), ("minute", 60)):
        if seconds >= size and seconds % size == 0:
            count = seconds // size
            return f"{count} {unit}{'s' if count != 1 else ''}"
    return f"{seconds} seconds"


class ExecutionTimeoutError(Exception):
    """An execution exceeded the maximum allowed time."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Execution timed out after {format_duration(timeout_seconds)}")


def timeout_comment(error: ExecutionTimeoutError) -> str:
    return (
        "Execution timed out.\n\n"
        f"The sprite execution exceeded the maximum allowed time "
        f"({format_duration(error.timeout_seconds)}) and was terminated.\n\n"
        "Please review and try again with a smaller task scope."
    )


@dataclass
class ReaperResult:
    cleaned: int = 0
    session_ids: list[str] = field(default_factory=list)


async def cleanup_stale_sessions(
    session_store: SessionStore,
    task_store: TaskStore,
    lifecycle: SpriteLifecycle | None,
    timeout_seconds: float,
    now: datetime | None = None,
) -> ReaperResult:
    """Finalise every in-progress sandbox session older than the timeout."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=timeout_seconds)
    stale = await session_store.list_stale(cutoff)
    outcomes = OutcomeRecorder(session_store, task_store)
    result = ReaperResult()

    log.info("reaper.sweep", stale_count=len(stale), timeout_ms=int(timeout_seconds * 1000))

    for session in stale:
        session_log = log.bind(
            session_id=session.id, task_id=session.task_id, sprite_name=session.sandbox_name
        )
        if session.sandbox_name and lifecycle is not None:
            try:
                await lifecycle.destroy(session.sandbox_name)
            except SpritesError as e:
                session_log.error("sprite.destroy_error", exc=e)

        error = ExecutionTimeoutError(timeout_seconds)
        if await outcomes.failed(session, str(error), comment=timeout_comment(error)):
            result.cleaned += 1
            result.session_ids.append(session.id)
            session_log.info("reaper.session_timed_out")

    return result


async def run_once() -> ReaperResult:
    config = get_config()
    db = Database(config.database_path)
    client = SpritesClient(config.sprites_token) if config.sprites_token else None
    lifecycle = SpriteLifecycle(client, config) if client else None
    try:
        return await cleanup_stale_sessions(
            SessionStore(db), TaskStore(db), lifecycle, config.sprite_timeout_seconds
        )
    finally:
        if client is not None:
            await client.aclose()
        await db.dispose()


async def run_forever(interval_seconds: float) -> None:
    while True:
        try:
            result = await run_once()
            log.info("reaper.complete", cleaned=result.cleaned)
        except Exception as e:
            log.error("reaper.error", exc=e)
        await asyncio.sleep(interval_seconds)


def main() -> None:
    parser = argparse.ArgumentParser(description="Reap stale sprite execution sessions")
    parser.add_argument(
        "--interval", type=float, default=300.0, help="Seconds between sweeps (default 300)"
    )
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    configure_logging()
    if args.once:
        result = asyncio.run(run_once())
        log.info("reaper.complete", cleaned=result.cleaned)
    else:
        asyncio.run(run_forever(args.interval))


if __name__ == "__main__":
    main()
