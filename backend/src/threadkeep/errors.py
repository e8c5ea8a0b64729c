"""Error taxonomy for the chat engine.

"Not found" on a read is a normal empty result (``None`` / ``[]``), not an
exception. ``NotFoundError`` is raised only by operations that need the
record to exist in order to do anything (appending to a thread, updating
a project).
"""


class ThreadkeepError(Exception):
    """Base class for engine errors."""


class StorageError(ThreadkeepError):
    """Backend I/O failure."""


class DecryptionError(ThreadkeepError):
    """A stored envelope could not be decrypted.

    Swallowed by the store layer; the record reads as missing.
    """


class SummarizationFailure(ThreadkeepError):
    """The summarizer failed or returned an unusable summary. Non-fatal."""


class StreamError(ThreadkeepError):
    """The provider reported an error mid-stream."""

    def __init__(self, message: str) -> None:
        super().__init__(message or "Unknown error")
        self.message = message or "Unknown error"


class StreamBusyError(ThreadkeepError):
    """A send was refused because a stream session is already in flight."""


class NotFoundError(ThreadkeepError):
    """A project or thread the operation depends on does not exist."""

    def __init__(self, kind: str, record_id: str | None) -> None:
        super().__init__(f"{kind.capitalize()} not found: {record_id!r}")
        self.kind = kind
        self.record_id = record_id
