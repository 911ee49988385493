"""Application entry point.

This module wires configuration, logging, local storage and the HTTP
client into a ready-to-use :class:`ConversationStore`.  Front ends call
:func:`open_store` and keep the store for the lifetime of their screen.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
from loguru import logger

from .config.app_config import AppConfig, get_app_config
from .config.chat_config import ChatConfig, get_chat_config
from .services.attachment_pipeline import AttachmentPipeline
from .services.conversation_store import ConversationStore
from .services.remote_service import RemoteConversationService
from .storage.conversation_cache import ConversationCache
from .storage.key_value_store import JsonFileKeyValueStore, KeyValueStore
from .storage.token_store import TokenStore
from .utils.api_client import ApiClient, UnauthorizedHook
from .utils.logger import setup_logging


def create_store(
    *,
    app_config: AppConfig | None = None,
    chat_config: ChatConfig | None = None,
    storage: KeyValueStore | None = None,
    client: httpx.AsyncClient | None = None,
    on_unauthorized: UnauthorizedHook | None = None,
) -> ConversationStore:
    """Build a conversation store from configuration.

    Every collaborator can be replaced, which is how tests plug in an
    in-memory store and a mock transport.
    """
    app_config = app_config or get_app_config()
    chat_config = chat_config or get_chat_config()
    storage = storage or JsonFileKeyValueStore(app_config.storage_path)

    token_store = TokenStore(storage, key=chat_config.token_key)
    api = ApiClient(chat_config, token_store, client=client, on_unauthorized=on_unauthorized)
    remote = RemoteConversationService(api, chat_config)
    cache = ConversationCache(storage, key=chat_config.storage_key)
    return ConversationStore(chat_config, remote, cache, AttachmentPipeline())


@asynccontextmanager
async def open_store(**kwargs) -> AsyncIterator[ConversationStore]:
    """Configure logging, start a store and dispose of it on exit."""
    setup_logging(kwargs.get("app_config"))
    store = create_store(**kwargs)
    await store.start()
    logger.info("Conversation store ready with {} conversations", len(store.conversations))
    try:
        yield store
    finally:
        await store.dispose()
