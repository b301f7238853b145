"""
HTTP surface for sprite-runner.

Endpoints:
- POST /webhooks/sprite/{task_id}   - signed callbacks from sprite run-scripts
- POST /tasks/{task_id}/execute     - start an execution attempt
- GET  /sessions/{session_id}/status - polling fallback for session state
- GET  /cron/cleanup                - reap stale sandbox sessions
- GET  /health

Services are provided through FastAPI dependencies so tests can override them.
Errors are translated to HTTP status codes here and nowhere else.
"""

import hmac
import time
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from functools import lru_cache

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import RunnerConfig, get_config
from .execution import (
    ExecutionConflictError,
    OpenCodeUnavailableError,
    ProjectNotConfiguredError,
    TaskExecutor,
)
from .log_config import configure_logging, get_logger
from .opencode.watcher import WatcherRegistry
from .outcomes import OutcomeRecorder
from .registry.models import ExecutionMode, ExecutionSession
from .registry.store import Database, SessionStore, TaskStore
from .sandbox.lifecycle import ExecutionError, SpriteLifecycle
from .scheduler.reaper import cleanup_stale_sessions
from .sprites.client import SpritesClient, SpritesConfigError
from .webhooks.handler import WebhookError, WebhookHandler

configure_logging()
log = get_logger("web_api")


# --- Dependencies ---


def get_runner_config() -> RunnerConfig:
    return get_config()


@lru_cache
def _database(path: str) -> Database:
    return Database(path)


def get_database(config: RunnerConfig = Depends(get_runner_config)) -> Database:
    return _database(config.database_path)


def get_session_store(db: Database = Depends(get_database)) -> SessionStore:
    return SessionStore(db)


def get_task_store(db: Database = Depends(get_database)) -> TaskStore:
    return TaskStore(db)


@lru_cache
def _sprites_client(token: str) -> SpritesClient:
    return SpritesClient(token)


def get_lifecycle(config: RunnerConfig = Depends(get_runner_config)) -> SpriteLifecycle | None:
    if not config.sprites_token:
        return None
    return SpriteLifecycle(_sprites_client(config.sprites_token), config)


@lru_cache
def get_watchers() -> WatcherRegistry:
    db = _database(get_config().database_path)
    return WatcherRegistry(OutcomeRecorder(SessionStore(db), TaskStore(db)))


def get_webhook_handler(
    sessions: SessionStore = Depends(get_session_store),
    tasks: TaskStore = Depends(get_task_store),
    lifecycle: SpriteLifecycle | None = Depends(get_lifecycle),
) -> WebhookHandler:
    return WebhookHandler(sessions, OutcomeRecorder(sessions, tasks), lifecycle)


def get_executor(
    sessions: SessionStore = Depends(get_session_store),
    tasks: TaskStore = Depends(get_task_store),
    config: RunnerConfig = Depends(get_runner_config),
    lifecycle: SpriteLifecycle | None = Depends(get_lifecycle),
    watchers: WatcherRegistry = Depends(get_watchers),
) -> TaskExecutor:
    return TaskExecutor(sessions, tasks, config, lifecycle=lifecycle, watchers=watchers)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if get_watchers.cache_info().currsize:
        await get_watchers().stop_all()
    if _sprites_client.cache_info().currsize:
        config = get_config()
        if config.sprites_token:
            await _sprites_client(config.sprites_token).aclose()
    if _database.cache_info().currsize:
        await _database(get_config().database_path).dispose()


app = FastAPI(title="sprite-runner", lifespan=lifespan)


def _log_request(
    method: str,
    path: str,
    start_time: float,
    http_status: int,
    outcome: str,
    endpoint_name: str,
    **fields,
) -> None:
    log.info(
        "http.request",
        http_method=method,
        http_path=path,
        http_status=http_status,
        duration_ms=int((time.time() - start_time) * 1000),
        outcome=outcome,
        endpoint_name=endpoint_name,
        **fields,
    )


def _session_view(session: ExecutionSession) -> dict:
    return {
        "sessionId": session.id,
        "taskId": session.task_id,
        "status": session.status.value,
        "executionMode": session.execution_mode.value,
        "sandboxName": session.sandbox_name,
        "opencodeSessionId": session.opencode_session_id,
        "branchName": session.branch_name,
        "messageCount": session.message_count,
        "inputTokens": session.input_tokens,
        "outputTokens": session.output_tokens,
        "errorMessage": session.error_message,
        "pullRequestUrl": session.pull_request_url,
        "createdAt": session.created_at.isoformat(),
        "updatedAt": session.updated_at.isoformat(),
        "completedAt": session.completed_at.isoformat() if session.completed_at else None,
    }


# --- Routes ---


@app.post("/webhooks/sprite/{task_id}")
async def sprite_webhook(
    task_id: str,
    request: Request,
    x_webhook_signature: str | None = Header(None),
    handler: WebhookHandler = Depends(get_webhook_handler),
) -> dict:
    """Receive a signed callback from a sprite run-script."""
    start_time = time.time()
    http_status = 200
    outcome = "success"

    raw_body = await request.body()
    try:
        return await handler.handle(task_id, raw_body, x_webhook_signature)
    except WebhookError as e:
        http_status = e.status_code
        outcome = "rejected"
        log.warn("webhook.rejected", exc=e, task_id=task_id, http_status=http_status)
        raise HTTPException(status_code=http_status, detail=str(e))
    except Exception as e:
        http_status = 500
        outcome = "error"
        log.error("api.error", exc=e, endpoint_name="sprite_webhook", task_id=task_id)
        raise HTTPException(status_code=500, detail="Internal server error")
    finally:
        _log_request(
            "POST",
            f"/webhooks/sprite/{task_id}",
            start_time,
            http_status,
            outcome,
            "sprite_webhook",
            task_id=task_id,
        )


class ExecuteRequest(BaseModel):
    mode: ExecutionMode = ExecutionMode.SANDBOX


@app.post("/tasks/{task_id}/execute", status_code=201)
async def execute_task(
    task_id: str,
    body: ExecuteRequest | None = None,
    tasks: TaskStore = Depends(get_task_store),
    executor: TaskExecutor = Depends(get_executor),
) -> dict:
    """
    Start executing a task.

    POST body:
    {
        "mode": "sandbox" | "local"   // Optional, default "sandbox"
    }
    """
    start_time = time.time()
    http_status = 201
    outcome = "success"
    mode = body.mode if body else ExecutionMode.SANDBOX

    try:
        task = await tasks.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
        project = await tasks.get_project(task.project_id)
        if project is None:
            raise HTTPException(status_code=404, detail=f"Project not found: {task.project_id}")

        try:
            comments = await tasks.list_comments(task_id)
            result = await executor.execute(task, project, comments, mode)
        except SpritesConfigError as e:
            raise HTTPException(status_code=503, detail=str(e))
        except ExecutionConflictError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ProjectNotConfiguredError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except OpenCodeUnavailableError as e:
            raise HTTPException(status_code=503, detail=str(e))
        except ExecutionError as e:
            raise HTTPException(status_code=500, detail=str(e))

        return {
            "success": True,
            "sessionId": result.session_id,
            "sandboxName": result.sandbox_name,
            "branchName": result.branch_name,
        }
    except HTTPException as e:
        http_status = e.status_code
        outcome = "rejected" if e.status_code < 500 else "error"
        raise
    except Exception as e:
        http_status = 500
        outcome = "error"
        log.error("api.error", exc=e, endpoint_name="execute_task", task_id=task_id)
        raise HTTPException(status_code=500, detail=str(e))
    finally:
        _log_request(
            "POST",
            f"/tasks/{task_id}/execute",
            start_time,
            http_status,
            outcome,
            "execute_task",
            task_id=task_id,
            execution_mode=mode.value,
        )


@app.get("/sessions/{session_id}/status")
async def session_status(
    session_id: str,
    executor: TaskExecutor = Depends(get_executor),
) -> dict:
    session = await executor.status(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    return _session_view(session)


@app.get("/cron/cleanup")
async def cron_cleanup(
    authorization: str | None = Header(None),
    config: RunnerConfig = Depends(get_runner_config),
    sessions: SessionStore = Depends(get_session_store),
    tasks: TaskStore = Depends(get_task_store),
    lifecycle: SpriteLifecycle | None = Depends(get_lifecycle),
):
    """Reap stale sandbox sessions. Protected by CRON_SECRET when it is set."""
    start_time = time.time()
    http_status = 200
    outcome = "success"

    try:
        if config.cron_secret and not hmac.compare_digest(
            (authorization or "").encode("utf-8"), f"Bearer {config.cron_secret}".encode("utf-8")
        ):
            http_status = 401
            outcome = "rejected"
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})

        result = await cleanup_stale_sessions(
            sessions, tasks, lifecycle, config.sprite_timeout_seconds
        )
        return {
            "success": True,
            "cleaned": result.cleaned,
            "timestamp": datetime.now(UTC).isoformat(),
        }
    except Exception as e:
        http_status = 500
        outcome = "error"
        log.error("api.error", exc=e, endpoint_name="cron_cleanup")
        raise HTTPException(status_code=500, detail=str(e))
    finally:
        _log_request("GET", "/cron/cleanup", start_time, http_status, outcome, "cron_cleanup")


@app.get("/health")
async def health(config: RunnerConfig = Depends(get_runner_config)) -> dict:
    return {
        "status": "healthy",
        "service": "sprite-runner",
        "sandbox_enabled": config.sandbox_enabled,
    }
