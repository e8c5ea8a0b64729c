"""Host hooks: the display side of the engine.

The host (a UI, a CLI, a test) injects one ``HostHooks`` implementation
into the controller. Every hook is fire-and-forget; ``NullHooks`` is the
default and ignores everything.
"""

from typing import Literal, Protocol

from threadkeep_models import Message, Project, StreamContext
from threadkeep.models import ThreadView
from threadkeep.services.sources import Source

NotifyLevel = Literal["info", "success", "error"]


class HostHooks(Protocol):
    def render_messages(self, messages: list[Message], view: ThreadView) -> None:
        """Re-render the live message list after a persistence change."""
        ...

    def update_context_usage(self, view: ThreadView, project: Project | None) -> None:
        """Refresh the context-usage indicator."""
        ...

    def notify(self, message: str, level: NotifyLevel = "info") -> None:
        """Show a transient notification."""
        ...

    def render_assistant_content(self, content: str) -> None:
        """Replace the streaming answer with the full accumulated text."""
        ...

    def append_reasoning(self, text: str) -> None: ...

    def render_stream_error(self, message: str, context: StreamContext | None) -> None:
        """Show an inline error with a retry action bound to ``context``."""
        ...

    def stream_finished(self, message: Message, sources: list[Source], clean_text: str) -> None:
        """The assistant message was persisted."""
        ...


class NullHooks:
    """Hooks that do nothing."""

    def render_messages(self, messages: list[Message], view: ThreadView) -> None:
        pass

    def update_context_usage(self, view: ThreadView, project: Project | None) -> None:
        pass

    def notify(self, message: str, level: NotifyLevel = "info") -> None:
        pass

    def render_assistant_content(self, content: str) -> None:
        pass

    def append_reasoning(self, text: str) -> None:
        pass

    def render_stream_error(self, message: str, context: StreamContext | None) -> None:
        pass

    def stream_finished(self, message: Message, sources: list[Source], clean_text: str) -> None:
        pass
