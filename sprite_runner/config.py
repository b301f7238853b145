"""
Runtime configuration, read from environment variables.

Variables:
- SPRITES_TOKEN: Sprites API token (required for sandbox execution)
- WEBHOOK_BASE_URL: externally reachable base URL used to build callback addresses
- SPRITE_TIMEOUT_SECONDS: execution timeout enforced by the reaper (default 3600)
- SPRITE_SETUP_SCRIPT: optional bash run before cloning (default: install opencode)
- GH_USER_NAME / GH_USER_EMAIL: git identity used for agent commits
- OPENCODE_BASE_URL: local OpenCode server for local execution mode
- MONITOR_TIMEOUT_SECONDS: hard timeout for local session monitoring (default 1800)
- CRON_SECRET: optional bearer token protecting the cleanup endpoint
- DATABASE_PATH: SQLite database file (default /data/sprite-runner.db)
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from .log_config import get_logger

log = get_logger("config")

DEFAULT_SPRITE_TIMEOUT_SECONDS = 3600.0
SPRITE_TIMEOUT_MIN = 60.0
SPRITE_TIMEOUT_MAX = 86400.0

DEFAULT_MONITOR_TIMEOUT_SECONDS = 1800.0
MONITOR_TIMEOUT_MIN = 5.0
MONITOR_TIMEOUT_MAX = 21600.0


@dataclass(frozen=True)
class RunnerConfig:
    sprites_token: str = ""
    webhook_base_url: str = ""
    sprite_timeout_seconds: float = DEFAULT_SPRITE_TIMEOUT_SECONDS
    setup_script: str = ""
    git_user_name: str = "Sprite Runner"
    git_user_email: str = "runner@sprites.dev"
    opencode_base_url: str = "http://localhost:4096"
    monitor_timeout_seconds: float = DEFAULT_MONITOR_TIMEOUT_SECONDS
    cron_secret: str = ""
    database_path: str = "/data/sprite-runner.db"

    @property
    def sandbox_enabled(self) -> bool:
        """Sandbox execution needs both the provider token and a callback address."""
        return bool(self.sprites_token and self.webhook_base_url)


def resolve_timeout_seconds(
    name: str,
    default: float,
    min_value: float,
    max_value: float,
) -> float:
    """Read a timeout from the environment, falling back on bad input and clamping to range."""
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default

    try:
        value = float(raw)
    except ValueError:
        log.warn(
            "config.timeout_invalid",
            timeout_name=name,
            timeout_ms=int(default * 1000),
            detail=f"invalid value '{raw}', using default",
        )
        return default

    if value < min_value:
        log.warn(
            "config.timeout_clamped",
            timeout_name=name,
            timeout_ms=int(min_value * 1000),
            detail=f"below min ({min_value}s), clamped",
        )
        value = min_value
    elif value > max_value:
        log.warn(
            "config.timeout_clamped",
            timeout_name=name,
            timeout_ms=int(max_value * 1000),
            detail=f"above max ({max_value}s), clamped",
        )
        value = max_value
    return value


def load_config() -> RunnerConfig:
    """Build a RunnerConfig from the current environment."""
    defaults = RunnerConfig()
    return RunnerConfig(
        sprites_token=os.environ.get("SPRITES_TOKEN", ""),
        webhook_base_url=os.environ.get("WEBHOOK_BASE_URL", ""),
        sprite_timeout_seconds=resolve_timeout_seconds(
            "SPRITE_TIMEOUT_SECONDS",
            DEFAULT_SPRITE_TIMEOUT_SECONDS,
            SPRITE_TIMEOUT_MIN,
            SPRITE_TIMEOUT_MAX,
        ),
        setup_script=os.environ.get("SPRITE_SETUP_SCRIPT", ""),
        git_user_name=os.environ.get("GH_USER_NAME") or defaults.git_user_name,
        git_user_email=os.environ.get("GH_USER_EMAIL") or defaults.git_user_email,
        opencode_base_url=os.environ.get("OPENCODE_BASE_URL") or defaults.opencode_base_url,
        monitor_timeout_seconds=resolve_timeout_seconds(
            "MONITOR_TIMEOUT_SECONDS",
            DEFAULT_MONITOR_TIMEOUT_SECONDS,
            MONITOR_TIMEOUT_MIN,
            MONITOR_TIMEOUT_MAX,
        ),
        cron_secret=os.environ.get("CRON_SECRET", ""),
        database_path=os.environ.get("DATABASE_PATH") or defaults.database_path,
    )


@lru_cache
def get_config() -> RunnerConfig:
    """Cached configuration for the running process."""
    return load_config()
