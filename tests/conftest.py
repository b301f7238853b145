"""Shared fixtures for sprite-runner tests."""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from sprite_runner.config import RunnerConfig
from sprite_runner.outcomes import OutcomeRecorder
from sprite_runner.registry.models import Project, Task
from sprite_runner.registry.store import Database, SessionStore, TaskStore
from sprite_runner.sandbox.lifecycle import SpawnResult


@pytest.fixture
def config() -> RunnerConfig:
    return RunnerConfig(
        sprites_token="test-token",
        webhook_base_url="https://runner.example.com/",
        sprite_timeout_seconds=3600,
    )


@pytest.fixture
def db(tmp_path) -> Database:
    return Database(tmp_path / "runner.db")


@pytest.fixture
def session_store(db: Database) -> SessionStore:
    return SessionStore(db)


@pytest.fixture
def task_store(db: Database) -> TaskStore:
    return TaskStore(db)


@pytest.fixture
def outcomes(session_store: SessionStore, task_store: TaskStore) -> OutcomeRecorder:
    return OutcomeRecorder(session_store, task_store)


@pytest_asyncio.fixture
async def project(task_store: TaskStore) -> Project:
    return await task_store.create_project(
        Project(
            name="webapp",
            repository_url="https://github.com/acme/webapp",
            github_token="ghp_test",
            repository_path="/tmp/acme/webapp",
        )
    )


@pytest_asyncio.fixture
async def task(task_store: TaskStore, project: Project) -> Task:
    return await task_store.create_task(
        Task(
            id="0f8fad5b-d9cb-469f-a165-70867728950e",
            project_id=project.id,
            title="Fix login redirect",
            description="Users land on /404 after login.",
        )
    )


@pytest.fixture
def lifecycle() -> AsyncMock:
    """Lifecycle double that spawns instantly and destroys nothing."""
    mock = AsyncMock()
    mock.spawn.return_value = SpawnResult(
        sprite_name="runner-0f8fad5bd9cb-1700000000000",
        webhook_secret="unused",
        branch_name="agent/0f8fad5b-fix-login-redirect",
    )
    return mock
