"""Sprite sandbox spawning and the run-script executed inside it."""

from .lifecycle import ExecutionError, SpawnResult, SpriteLifecycle
from .run_script import RunScriptConfig, generate_run_script, sign_payload

__all__ = [
    "ExecutionError",
    "RunScriptConfig",
    "SpawnResult",
    "SpriteLifecycle",
    "generate_run_script",
    "sign_payload",
]
