"""Duplex channel wire protocol and stream snapshot models."""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from threadkeep_models.base import Record
from threadkeep_models.conversation import Role


class ChatTurn(BaseModel):
    """A role/content pair as sent to the model provider."""

    role: Role
    content: str


class StartStreamRequest(Record):
    """Client -> server: open a streamed completion."""

    type: Literal["start_stream"] = "start_stream"
    prompt: str = ""
    messages: list[ChatTurn] = Field(default_factory=list)
    model: str | None = None
    provider: str = "openrouter"
    web_search: bool = False
    reasoning: bool = False
    tab_id: str = ""
    retry: bool = False


class ContentEvent(Record):
    type: Literal["content"] = "content"
    content: str = ""


class ReasoningEvent(Record):
    type: Literal["reasoning"] = "reasoning"
    reasoning: str = ""


class CompleteEvent(Record):
    type: Literal["complete"] = "complete"
    model: str | None = None
    tokens: int | None = None
    context_size: int = 0


class ErrorEvent(Record):
    type: Literal["error"] = "error"
    error: str = "Unknown error"


ServerEvent = Annotated[
    Union[ContentEvent, ReasoningEvent, CompleteEvent, ErrorEvent],
    Field(discriminator="type"),
]

_server_event_adapter: TypeAdapter[ServerEvent] = TypeAdapter(ServerEvent)


def parse_server_event(data: dict[str, Any]) -> ServerEvent:
    """Validate a raw server -> client message into its typed event."""
    return _server_event_adapter.validate_python(data)


class StreamContext(Record):
    """Frozen snapshot of a send's parameters, used to replay it on retry."""

    model_config = ConfigDict(frozen=True)

    prompt: str = ""
    thread_id: str | None = None
    project_id: str | None = None
    model: str | None = None
    model_provider: str = "openrouter"
    model_display_name: str | None = None
    custom_instructions: str = ""
    summary: str = ""
    web_search: bool = False
    reasoning: bool = False
