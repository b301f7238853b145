"""Tests for sprite spawning and teardown."""

import re
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from sprite_runner.registry.models import Project, Task
from sprite_runner.sandbox.lifecycle import (
    SCRIPT_PATH,
    ExecutionError,
    SpriteLifecycle,
    build_webhook_url,
    generate_branch_name,
    generate_sprite_name,
)
from sprite_runner.sprites.client import (
    SpritesApiError,
    SpritesClient,
    SpritesConfigError,
    SpritesNotFoundError,
)


@pytest.fixture
def sprites() -> AsyncMock:
    return AsyncMock(spec=SpritesClient)


@pytest.fixture
def sample_task() -> Task:
    return Task(
        id="0f8fad5b-d9cb-469f-a165-70867728950e",
        project_id="proj-1",
        title="Fix: login redirect (again!)",
    )


@pytest.fixture
def sample_project() -> Project:
    return Project(
        id="proj-1",
        name="webapp",
        repository_url="https://github.com/acme/webapp",
        github_token="ghp_test",
    )


class TestNaming:
    def test_sprite_name_format(self):
        name = generate_sprite_name("0f8fad5b-d9cb-469f-a165-70867728950e", now_ms=1700000000000)
        assert name == "runner-0f8fad5bd9cb-1700000000000"
        assert len(name) <= 63
        assert re.fullmatch(r"[a-z0-9-]+", name)

    def test_branch_name_slugifies_title(self):
        branch = generate_branch_name(
            "0f8fad5b-d9cb-469f-a165-70867728950e", "Fix: login redirect (again!)"
        )
        assert branch == "agent/0f8fad5b-fix-login-redirect-again"

    def test_branch_slug_is_truncated(self):
        branch = generate_branch_name("abcdef12-0000", "a" * 80)
        assert branch == f"agent/abcdef12-{'a' * 30}"

    def test_webhook_url_strips_trailing_slash(self):
        assert (
            build_webhook_url("https://runner.example.com/", "task-1")
            == "https://runner.example.com/webhooks/sprite/task-1"
        )


class TestSpawn:
    @pytest.mark.asyncio
    async def test_spawn_creates_uploads_and_launches(
        self, sprites: AsyncMock, config, sample_task: Task, sample_project: Project
    ):
        lifecycle = SpriteLifecycle(sprites, config)

        result = await lifecycle.spawn(
            sample_task, sample_project, "Do the thing", session_id="sess-1", webhook_secret="abc"
        )

        assert result.sprite_name.startswith("runner-0f8fad5bd9cb-")
        assert result.webhook_secret == "abc"
        assert result.branch_name == "agent/0f8fad5b-fix-login-redirect-again"

        sprites.create.assert_awaited_once_with(result.sprite_name)
        calls = sprites.exec.await_args_list
        assert len(calls) == 3

        upload = calls[0]
        assert upload.args == (result.sprite_name, ["bash", "-c", f"cat > {SCRIPT_PATH}"])
        script = upload.kwargs["stdin"]
        assert 'WEBHOOK_URL="https://runner.example.com/webhooks/sprite/' in script
        assert 'WEBHOOK_SECRET="abc"' in script
        assert 'SESSION_ID="sess-1"' in script

        assert calls[1].args == (result.sprite_name, ["chmod", "+x", SCRIPT_PATH])
        assert calls[2].args[1] == ["bash", "-c", f"screen -dmS sprite-runner bash {SCRIPT_PATH}"]
        sprites.destroy.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_spawn_generates_secret_when_not_supplied(
        self, sprites: AsyncMock, config, sample_task: Task, sample_project: Project
    ):
        result = await SpriteLifecycle(sprites, config).spawn(sample_task, sample_project, "p")
        assert len(result.webhook_secret) == 64

    @pytest.mark.asyncio
    async def test_spawn_reuses_existing_branch(
        self, sprites: AsyncMock, config, sample_task: Task, sample_project: Project
    ):
        task = Task(
            id=sample_task.id,
            project_id=sample_task.project_id,
            title=sample_task.title,
            branch_name="agent/existing",
        )
        result = await SpriteLifecycle(sprites, config).spawn(task, sample_project, "p")
        assert result.branch_name == "agent/existing"

    @pytest.mark.asyncio
    async def test_missing_repository_fails_before_any_remote_call(
        self, sprites: AsyncMock, config, sample_task: Task, sample_project: Project
    ):
        project = Project(id="proj-1", name="webapp", github_token="ghp_test")

        with pytest.raises(ExecutionError):
            await SpriteLifecycle(sprites, config).spawn(sample_task, project, "p")
        sprites.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_webhook_base_url_is_config_error(
        self, sprites: AsyncMock, config, sample_task: Task, sample_project: Project
    ):
        lifecycle = SpriteLifecycle(sprites, replace(config, webhook_base_url=""))

        with pytest.raises(SpritesConfigError):
            await lifecycle.spawn(sample_task, sample_project, "p")
        sprites.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_failure_raises_execution_error(
        self, sprites: AsyncMock, config, sample_task: Task, sample_project: Project
    ):
        sprites.create.side_effect = SpritesApiError("quota exceeded", status=429)

        with pytest.raises(ExecutionError, match="Failed to create sprite"):
            await SpriteLifecycle(sprites, config).spawn(sample_task, sample_project, "p")
        sprites.exec.assert_not_awaited()
        sprites.destroy.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_without_response_destroys_possible_sprite(
        self, sprites: AsyncMock, config, sample_task: Task, sample_project: Project
    ):
        sprites.create.side_effect = SpritesApiError("Sprites API request failed: read timeout")

        with pytest.raises(ExecutionError, match="Failed to create sprite") as exc_info:
            await SpriteLifecycle(sprites, config).spawn(sample_task, sample_project, "p")

        sprites.destroy.assert_awaited_once_with(exc_info.value.sprite_name)
        sprites.exec.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_launch_failure_destroys_sprite(
        self, sprites: AsyncMock, config, sample_task: Task, sample_project: Project
    ):
        sprites.exec.side_effect = [None, None, SpritesApiError("screen missing", status=500)]

        with pytest.raises(ExecutionError, match="Failed to start execution") as exc_info:
            await SpriteLifecycle(sprites, config).spawn(sample_task, sample_project, "p")

        sprite_name = exc_info.value.sprite_name
        assert sprite_name is not None
        sprites.destroy.assert_awaited_once_with(sprite_name)

    @pytest.mark.asyncio
    async def test_launch_failure_still_raises_when_cleanup_fails(
        self, sprites: AsyncMock, config, sample_task: Task, sample_project: Project
    ):
        sprites.exec.side_effect = SpritesApiError("upload failed", status=500)
        sprites.destroy.side_effect = SpritesApiError("destroy failed", status=500)

        with pytest.raises(ExecutionError, match="Failed to write script"):
            await SpriteLifecycle(sprites, config).spawn(sample_task, sample_project, "p")
        sprites.destroy.assert_awaited_once()


class TestDestroy:
    @pytest.mark.asyncio
    async def test_destroy_missing_sprite_succeeds(self, sprites: AsyncMock, config):
        sprites.destroy.side_effect = SpritesNotFoundError("gone", sprite_name="runner-x")

        await SpriteLifecycle(sprites, config).destroy("runner-x")

        sprites.destroy.assert_awaited_once_with("runner-x")

    @pytest.mark.asyncio
    async def test_destroy_propagates_other_errors(self, sprites: AsyncMock, config):
        sprites.destroy.side_effect = SpritesApiError("boom", status=500)

        with pytest.raises(SpritesApiError):
            await SpriteLifecycle(sprites, config).destroy("runner-x")
