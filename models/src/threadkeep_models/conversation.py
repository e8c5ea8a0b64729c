"""Project, thread and message models."""

from datetime import datetime
from typing import Literal

from pydantic import ConfigDict, Field

from threadkeep_models.base import Record, new_id, utcnow

Role = Literal["user", "assistant", "system"]

DEFAULT_THREAD_TITLE = "New Thread"
DEFAULT_PROJECT_ICON = "📁"


class Project(Record):
    """A named group of threads sharing model and instruction defaults."""

    id: str = Field(default_factory=lambda: new_id("project"), description="Unique project ID")
    name: str = Field("", description="Display name")
    description: str = Field("", description="Free-form description")
    icon: str = Field(DEFAULT_PROJECT_ICON, description="Emoji icon")
    model: str = Field("", description="Model ID used for new turns")
    model_provider: str | None = Field(None, description="Provider ID for the model")
    model_display_name: str = Field("", description="Human-readable model label")
    custom_instructions: str = Field("", description="Standing system instructions")
    web_search: bool = Field(False, description="Web search toggle default")
    reasoning: bool = Field(False, description="Reasoning toggle default")
    created_at: datetime = Field(default_factory=utcnow, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=utcnow, description="Last update timestamp")


class Thread(Record):
    """One conversation. Messages, summary and archive live in their own collections."""

    id: str = Field(default_factory=lambda: new_id("thread"), description="Unique thread ID")
    project_id: str | None = Field(None, description="Owning project ID (back-reference)")
    title: str = Field(DEFAULT_THREAD_TITLE, description="Thread title")
    created_at: datetime = Field(default_factory=utcnow, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=utcnow, description="Last update timestamp")


class MessageMeta(Record):
    """Response metadata attached to assistant messages."""

    model_config = ConfigDict(extra="allow")

    model: str | None = None
    tokens: int | None = None
    response_time_sec: float | None = None
    context_size: int = 0
    created_at: datetime | None = None


class Message(Record):
    """A single message. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("msg"), description="Unique message ID")
    thread_id: str = Field(..., description="Parent thread ID")
    role: Role = Field(..., description="Message role")
    content: str = Field("", description="Message text, may contain citation markers")
    meta: MessageMeta | None = Field(None, description="Response metadata")
    created_at: datetime = Field(default_factory=utcnow, description="Creation timestamp")


class Summary(Record):
    """Running summary of the archived part of a thread."""

    thread_id: str
    summary: str = ""
    summary_updated_at: datetime | None = None


class Archive(Record):
    """Messages compressed out of the live window, oldest first."""

    thread_id: str
    archived_messages: list[Message] = Field(default_factory=list)
    archived_updated_at: datetime | None = None
