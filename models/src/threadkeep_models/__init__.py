"""Shared Pydantic models for threadkeep."""

from threadkeep_models.base import Record, new_id, utcnow
from threadkeep_models.conversation import (
    DEFAULT_PROJECT_ICON,
    DEFAULT_THREAD_TITLE,
    Archive,
    Message,
    MessageMeta,
    Project,
    Role,
    Summary,
    Thread,
)
from threadkeep_models.stream import (
    ChatTurn,
    CompleteEvent,
    ContentEvent,
    ErrorEvent,
    ReasoningEvent,
    ServerEvent,
    StartStreamRequest,
    StreamContext,
    parse_server_event,
)

__all__ = [
    "Record",
    "new_id",
    "utcnow",
    # Records
    "Project",
    "Thread",
    "Message",
    "MessageMeta",
    "Role",
    "Summary",
    "Archive",
    "DEFAULT_PROJECT_ICON",
    "DEFAULT_THREAD_TITLE",
    # Streaming
    "ChatTurn",
    "StartStreamRequest",
    "ContentEvent",
    "ReasoningEvent",
    "CompleteEvent",
    "ErrorEvent",
    "ServerEvent",
    "StreamContext",
    "parse_server_event",
]
