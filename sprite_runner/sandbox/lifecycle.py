"""
Sprite lifecycle: spawn a sprite for a task and tear it down again.

spawn() returns as soon as the run-script is launched in a detached screen
session. Completion is observed out-of-band, through the webhook handler or
the stale-session reaper. The returned handle does not own the remote process.
"""

import re
import time
from dataclasses import dataclass

from ..config import RunnerConfig
from ..log_config import get_logger
from ..registry.models import Project, Task
from ..sprites.client import (
    SpritesApiError,
    SpritesClient,
    SpritesConfigError,
    SpritesError,
    SpritesNotFoundError,
)
from .run_script import (
    DEFAULT_SETUP_SCRIPT,
    RunScriptConfig,
    generate_run_script,
    generate_webhook_secret,
)

SPRITE_NAME_PREFIX = "runner"
BRANCH_PREFIX = "agent"
SCRIPT_PATH = "/tmp/sprite-run.sh"
SCREEN_SESSION = "sprite-runner"
MAX_SPRITE_NAME_LENGTH = 63


class ExecutionError(Exception):
    """Raised when an execution attempt cannot be started."""

    def __init__(self, message: str, sprite_name: str | None = None):
        super().__init__(message)
        self.sprite_name = sprite_name


@dataclass(frozen=True)
class SpawnResult:
    sprite_name: str
    webhook_secret: str
    branch_name: str


def _compact_id(task_id: str, length: int) -> str:
    return task_id.replace("-", "")[:length]


def slugify(value: str, max_length: int = 30) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug[:max_length].rstrip("-")


def generate_sprite_name(task_id: str, now_ms: int | None = None) -> str:
    """runner-<12 chars of task id>-<epoch ms>; alphanumeric and dashes only."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    name = f"{SPRITE_NAME_PREFIX}-{_compact_id(task_id, 12)}-{now_ms}"
    return name[:MAX_SPRITE_NAME_LENGTH]


def generate_branch_name(task_id: str, title: str) -> str:
    slug = slugify(title)
    short_id = _compact_id(task_id, 8)
    return f"{BRANCH_PREFIX}/{short_id}-{slug}" if slug else f"{BRANCH_PREFIX}/{short_id}"


def build_webhook_url(base_url: str, task_id: str) -> str:
    return f"{base_url.rstrip('/')}/webhooks/sprite/{task_id}"


class SpriteLifecycle:
    """Creates, launches and destroys sprites through the Sprites API."""

    def __init__(self, client: SpritesClient, config: RunnerConfig):
        self.client = client
        self.config = config
        self.log = get_logger("lifecycle")

    async def spawn(
        self,
        task: Task,
        project: Project,
        prompt: str,
        *,
        session_id: str | None = None,
        webhook_secret: str | None = None,
    ) -> SpawnResult:
        """
        Create a sprite, upload the run-script and start it detached.

        Preconditions are checked before any remote call. Once the sprite
        exists, any failure destroys it again and surfaces as ExecutionError.
        """
        if not project.repository_url:
            raise ExecutionError(
                "Project does not have a repository URL configured. "
                "Required for sandbox execution."
            )
        if not project.github_token:
            raise ExecutionError(
                "Project does not have a GitHub token configured. Required for sandbox execution."
            )
        if not self.config.webhook_base_url:
            raise SpritesConfigError("Missing WEBHOOK_BASE_URL configuration")

        sprite_name = generate_sprite_name(task.id)
        secret = webhook_secret or generate_webhook_secret()
        branch_name = task.branch_name or generate_branch_name(task.id, task.title)
        webhook_url = build_webhook_url(self.config.webhook_base_url, task.id)
        log = self.log.bind(task_id=task.id, sprite_name=sprite_name)

        log.info(
            "sprite.spawn_start",
            branch_name=branch_name,
            branch_source="existing" if task.branch_name else "new",
        )

        try:
            await self.client.create(sprite_name)
        except SpritesConfigError:
            raise
        except SpritesError as e:
            log.error("sprite.create_error", exc=e)
            if isinstance(e, SpritesApiError) and e.status is None:
                # No response: the sprite may exist anyway
                await self._destroy_quietly(sprite_name)
            raise ExecutionError(f"Failed to create sprite: {e}", sprite_name=sprite_name) from e

        script = generate_run_script(
            RunScriptConfig(
                session_id=session_id or task.id,
                task_id=task.id,
                webhook_url=webhook_url,
                webhook_secret=secret,
                prompt=prompt,
                repo_url=project.repository_url,
                github_token=project.github_token,
                branch_name=branch_name,
                setup_script=self.config.setup_script or DEFAULT_SETUP_SCRIPT,
                git_user_name=self.config.git_user_name,
                git_user_email=self.config.git_user_email,
            )
        )

        step = "write script"
        try:
            await self.client.exec(
                sprite_name, ["bash", "-c", f"cat > {SCRIPT_PATH}"], stdin=script
            )
            step = "chmod script"
            await self.client.exec(sprite_name, ["chmod", "+x", SCRIPT_PATH])
            step = "start execution"
            # screen keeps an attached process alive so the sprite stays awake
            await self.client.exec(
                sprite_name,
                ["bash", "-c", f"screen -dmS {SCREEN_SESSION} bash {SCRIPT_PATH}"],
            )
        except Exception as e:
            log.error("sprite.launch_error", exc=e, step=step)
            await self._destroy_quietly(sprite_name)
            raise ExecutionError(f"Failed to {step}: {e}", sprite_name=sprite_name) from e

        log.info("sprite.spawn_complete", branch_name=branch_name)
        return SpawnResult(sprite_name=sprite_name, webhook_secret=secret, branch_name=branch_name)

    async def destroy(self, sprite_name: str) -> None:
        """Destroy a sprite. A sprite that no longer exists counts as destroyed."""
        try:
            await self.client.destroy(sprite_name)
        except SpritesNotFoundError:
            self.log.info("sprite.destroy_missing", sprite_name=sprite_name)

    async def _destroy_quietly(self, sprite_name: str) -> None:
        try:
            await self.destroy(sprite_name)
        except SpritesError as e:
            self.log.error("sprite.destroy_error", exc=e, sprite_name=sprite_name)
