"""Wire format of the callbacks sent by the run-script."""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from ..registry.models import UsageStats


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Stats(_WireModel):
    message_count: int = Field(default=0, ge=0)
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)

    def to_usage(self) -> UsageStats:
        return UsageStats(
            message_count=self.message_count,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
        )


class Progress(Stats):
    message: str = ""
    current_step: str | None = None


class _Callback(_WireModel):
    session_id: str
    task_id: str


class StartedPayload(_Callback):
    type: Literal["started"]


class CompletedPayload(_Callback):
    type: Literal["completed"]
    summary: str = ""
    stats: Stats | None = None
    pull_request_url: str | None = None


class ErrorPayload(_Callback):
    type: Literal["error"]
    error: str = "Unknown error"


class QuestionPayload(_Callback):
    type: Literal["question"]
    question: str


class ProgressPayload(_Callback):
    type: Literal["progress"]
    progress: Progress


CallbackPayload = Annotated[
    StartedPayload | CompletedPayload | ErrorPayload | QuestionPayload | ProgressPayload,
    Field(discriminator="type"),
]

callback_adapter: TypeAdapter[CallbackPayload] = TypeAdapter(CallbackPayload)
