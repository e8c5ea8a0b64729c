"""Chat controller: send, stop and retry for one open chat view.

All per-view state (current thread, streaming flag, retry guard, last
stream snapshot, active session) lives on the controller instance. Storage
and not-found errors are caught here, logged and reported through
``HostHooks.notify``; they never propagate into the host.
"""

import logging
from typing import Callable

from threadkeep_models import Project, StreamContext
from threadkeep.channel import Channel
from threadkeep.config import Settings, settings as default_settings
from threadkeep.errors import NotFoundError, StorageError, StreamBusyError, StreamError
from threadkeep.hooks import HostHooks, NullHooks
from threadkeep.models import ThreadView
from threadkeep.services.context import ContextManager
from threadkeep.services.stream_session import StreamOutcome, StreamSession, StreamState
from threadkeep.store import ChatStore

logger = logging.getLogger(__name__)

NOTHING_TO_RETRY_NOTICE = "Nothing to retry yet"
RETRY_NOT_FOUND_NOTICE = "Retry failed: Project or thread not found"
GENERATION_STOPPED_NOTICE = "Generation stopped"
RETRY_IN_PROGRESS_NOTICE = "Retry already in progress"
STREAM_BUSY_NOTICE = "A response is already streaming"


class ChatController:
    def __init__(
        self,
        store: ChatStore,
        context_manager: ContextManager,
        channel_factory: Callable[[], Channel],
        hooks: HostHooks | None = None,
        config: Settings | None = None,
    ):
        self._store = store
        self._context = context_manager
        self._channel_factory = channel_factory
        self._hooks = hooks or NullHooks()
        self._config = config or default_settings

        self.current_project_id: str | None = None
        self.current_thread_id: str | None = None
        self.is_streaming = False
        self.retry_in_progress = False
        self.last_stream_context: StreamContext | None = None
        self.session: StreamSession | None = None
        self._stop_requested = False

    def _report(self, action: str, error: Exception) -> None:
        logger.error(f"{action} failed: {error}")
        self._hooks.notify(str(error) or f"{action} failed", "error")

    async def _refresh(self, thread_id: str | None, project: Project | None) -> ThreadView | None:
        view = await self._store.get_thread_view(thread_id)
        if view is not None:
            self._hooks.update_context_usage(view, project)
        return view

    # ============= Threads =============

    async def open_thread(self, thread_id: str) -> ThreadView | None:
        """Make ``thread_id`` the current thread and render it."""
        try:
            view = await self._store.get_thread_view(thread_id)
            if view is None:
                raise NotFoundError("thread", thread_id)
            project = await self._store.get_project(view.project_id)
        except (StorageError, NotFoundError) as e:
            self._report("Open thread", e)
            return None

        self.current_thread_id = view.id
        self.current_project_id = view.project_id
        self._hooks.render_messages(view.messages, view)
        self._hooks.update_context_usage(view, project)
        return view

    # ============= Streaming =============

    async def _run_session(self, context: StreamContext, view: ThreadView, retry: bool) -> StreamOutcome:
        if self._stop_requested:
            # Stopped before the channel opened (e.g. while summarizing).
            logger.info(f"Stream for thread {context.thread_id} stopped before it opened")
            return StreamOutcome(state=StreamState.CANCELLED)

        session = StreamSession(
            self._store,
            self._channel_factory(),
            context,
            view.messages,
            hooks=self._hooks,
            retry=retry,
        )
        self.session = session
        outcome = await session.run()
        if outcome.state == StreamState.COMPLETE:
            await self._refresh(context.thread_id, await self._store.get_project(context.project_id))
        return outcome

    async def send_message(
        self,
        content: str,
        web_search: bool | None = None,
        reasoning: bool | None = None,
    ) -> StreamOutcome | None:
        """Persist a user message and stream the assistant's answer.

        Returns ``None`` when nothing was sent or the stream failed; stream
        failures are rendered inline with a retry action.
        """
        content = (content or "").strip()
        if not content or not self.current_thread_id or not self.current_project_id:
            return None
        if self.is_streaming:
            logger.warning(f"Refusing send on thread {self.current_thread_id}: stream in flight")
            raise StreamBusyError(STREAM_BUSY_NOTICE)

        self.is_streaming = True
        self._stop_requested = False
        try:
            project = await self._store.get_project(self.current_project_id)
            if project is None:
                raise NotFoundError("project", self.current_project_id)

            await self._store.add_message_to_thread(self.current_thread_id, "user", content)
            view = await self._store.get_thread_view(self.current_thread_id)
            if view is None:
                raise NotFoundError("thread", self.current_thread_id)

            view = await self._context.maybe_summarize(view, content, project)
            self._hooks.render_messages(view.messages, view)

            context = StreamContext(
                prompt=content,
                thread_id=view.id,
                project_id=project.id,
                model=project.model or self._config.default_model or None,
                model_provider=project.model_provider or self._config.default_provider,
                model_display_name=project.model_display_name or None,
                custom_instructions=project.custom_instructions,
                summary=view.summary,
                web_search=project.web_search if web_search is None else web_search,
                reasoning=project.reasoning if reasoning is None else reasoning,
            )
            self.last_stream_context = context

            return await self._run_session(context, view, retry=False)
        except StreamError as e:
            logger.error(f"Stream error: {e.message}")
            self._hooks.notify(e.message, "error")
            return None
        except (StorageError, NotFoundError) as e:
            self._report("Send message", e)
            return None
        finally:
            self.is_streaming = False
            self.session = None

    async def stop_streaming(self) -> None:
        """Cancel the in-flight send or retry. Partial output is not persisted.

        The streaming flag is cleared by the send itself once it has
        unwound, so a new send is refused until then.
        """
        if self.is_streaming:
            self._stop_requested = True
        if self.session is not None:
            await self.session.stop()
        self._hooks.notify(GENERATION_STOPPED_NOTICE, "info")

    async def retry(self, context: StreamContext | None = None) -> StreamOutcome | None:
        """Replay a failed send from its snapshot.

        Thread and project are looked up again, but model, provider and
        instructions come from the snapshot. Only one retry runs at a time.
        """
        context = context or self.last_stream_context
        if self.retry_in_progress:
            logger.warning("Refusing retry: another retry is in flight")
            self._hooks.notify(RETRY_IN_PROGRESS_NOTICE, "info")
            return None
        if self.is_streaming:
            logger.warning("Refusing retry: a stream is in flight")
            self._hooks.notify(STREAM_BUSY_NOTICE, "info")
            return None
        if context is None:
            self._hooks.notify(NOTHING_TO_RETRY_NOTICE, "error")
            return None

        self.retry_in_progress = True
        self.is_streaming = True
        self._stop_requested = False
        try:
            view = await self._store.get_thread_view(context.thread_id)
            project = await self._store.get_project(context.project_id)
            if view is None or project is None:
                self._hooks.notify(RETRY_NOT_FOUND_NOTICE, "error")
                return None

            logger.info(f"Retrying stream for thread {context.thread_id}")
            return await self._run_session(context, view, retry=True)
        except StreamError as e:
            logger.error(f"Stream retry failed: {e.message}")
            self._hooks.notify(e.message or "Retry failed", "error")
            return None
        except (StorageError, NotFoundError) as e:
            self._report("Retry", e)
            return None
        finally:
            self.is_streaming = False
            self.retry_in_progress = False
            self.session = None
