"""Response types for the Sprites API."""

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict


class SpriteStatus(StrEnum):
    COLD = "cold"
    WARM = "warm"
    RUNNING = "running"


class UrlSettings(BaseModel):
    auth: Literal["sprite", "public"] = "sprite"


class Sprite(BaseModel):
    """A sprite as returned by create/get."""

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    name: str
    organization: str = ""
    url: str = ""
    status: SpriteStatus = SpriteStatus.COLD
    url_settings: UrlSettings = UrlSettings()
    created_at: str | None = None
    updated_at: str | None = None


class SpriteListEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    org_slug: str = ""
    updated_at: str | None = None


class SpriteListResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sprites: list[SpriteListEntry] = []
    has_more: bool = False
    next_continuation_token: str | None = None


class ExecSession(BaseModel):
    """An exec session running inside a sprite."""

    model_config = ConfigDict(extra="ignore")

    id: str
    command: str = ""
    is_active: bool = False
    tty: bool = False
    created: str | None = None
    last_activity: str | None = None
    workdir: str | None = None
    bytes_per_second: float | None = None


class Checkpoint(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    create_time: str = ""
    source_id: str | None = None
    comment: str | None = None


class StreamEvent(BaseModel):
    """One NDJSON line from a streaming endpoint (kill, checkpoint, restore)."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["info", "error", "complete"]
    data: str | None = None
    error: str | None = None
    time: str | None = None
