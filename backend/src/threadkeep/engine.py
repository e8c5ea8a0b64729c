"""Wiring of the configured store, provider and controller."""

import logging

from threadkeep.channel import LocalChannel
from threadkeep.config import Settings, settings as default_settings
from threadkeep.crypto import KeyProvider, RecordCipher
from threadkeep.db import create_backend
from threadkeep.errors import StorageError
from threadkeep.hooks import HostHooks, NullHooks
from threadkeep.migration import JsonFileLegacyStorage, run_legacy_migrations
from threadkeep.services.context import ContextManager, ProviderSummarizer
from threadkeep.services.controller import ChatController
from threadkeep.services.provider import HttpProviderCaller, ProviderCaller
from threadkeep.store import ChatStore

logger = logging.getLogger(__name__)


async def open_chat_store(config: Settings | None = None, migrate: bool = True) -> ChatStore:
    """Connect the configured backend and run the legacy migration once."""
    config = config or default_settings
    backend = await create_backend(config)
    store = ChatStore(backend, RecordCipher(KeyProvider(config=config)))

    if migrate and config.legacy_storage_path.exists():
        try:
            result = await run_legacy_migrations(store, JsonFileLegacyStorage(config=config))
            if result.migrated:
                logger.info(f"Legacy migration wrote {result.writes} records")
        except StorageError as e:
            # Legacy data is left in place; the next start retries.
            logger.error(f"Legacy migration failed: {e}")
    return store


def create_controller(
    store: ChatStore,
    hooks: HostHooks | None = None,
    caller: ProviderCaller | None = None,
    config: Settings | None = None,
) -> ChatController:
    """Build a controller for one chat view."""
    config = config or default_settings
    hooks = hooks or NullHooks()
    caller = caller or HttpProviderCaller(config)
    return ChatController(
        store,
        ContextManager(store, ProviderSummarizer(caller, config), hooks=hooks, config=config),
        channel_factory=lambda: LocalChannel(caller),
        hooks=hooks,
        config=config,
    )
