"""
Modal deployment for sprite-runner.

- `api`: serves the FastAPI app (webhooks, execute, status, cleanup)
- `reap_stale_sessions`: scheduled sweep of stale sandbox sessions

The SQLite store lives on a persistent volume mounted at /data. Secrets
(SPRITES_TOKEN, WEBHOOK_BASE_URL, CRON_SECRET, ...) come from the
`sprite-runner-secrets` Modal secret.

Deploy with:

    modal deploy -m sprite_runner.app
"""

import modal

APP_NAME = "sprite-runner"
DATA_MOUNT = "/data"

app = modal.App(APP_NAME)

function_image = (
    modal.Image.debian_slim(python_version="3.12")
    .pip_install(
        "fastapi>=0.115",
        "httpx>=0.27",
        "pydantic>=2.7",
        "sqlmodel>=0.0.16",
        "sqlalchemy[asyncio]>=2.0",
        "aiosqlite>=0.19",
    )
    .env({"DATABASE_PATH": f"{DATA_MOUNT}/sprite-runner.db"})
    .add_local_python_source("sprite_runner")
)

runner_volume = modal.Volume.from_name("sprite-runner-data", create_if_missing=True)
runner_secrets = modal.Secret.from_name("sprite-runner-secrets")


@app.function(
    image=function_image,
    volumes={DATA_MOUNT: runner_volume},
    secrets=[runner_secrets],
)
@modal.concurrent(max_inputs=50)
@modal.asgi_app()
def api():
    from .web_api import app as web_app

    return web_app


@app.function(
    image=function_image,
    schedule=modal.Period(minutes=5),
    volumes={DATA_MOUNT: runner_volume},
    secrets=[runner_secrets],
    timeout=600,
)
async def reap_stale_sessions() -> dict:
    """Finalise sandbox sessions that exceeded SPRITE_TIMEOUT_SECONDS."""
    from .log_config import configure_logging, get_logger
    from .scheduler.reaper import run_once

    configure_logging()
    log = get_logger("reaper")

    runner_volume.reload()
    result = await run_once()
    runner_volume.commit()

    log.info("reaper.complete", cleaned=result.cleaned)
    return {"cleaned": result.cleaned, "session_ids": result.session_ids}
