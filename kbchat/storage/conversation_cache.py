"""Offline mirror of the conversation list.

The whole list, including every conversation's messages, lives under a
single storage key.  Writers always store the complete list; there is no
partial patching, so two conversations updated one after the other can
never lose each other's changes.
"""

from __future__ import annotations

import json
from typing import Iterable

from loguru import logger
from pydantic import ValidationError

from ..models.conversation import Conversation
from .key_value_store import KeyValueStore


class ConversationCache:
    """Read and write the serialised conversation list."""

    def __init__(self, store: KeyValueStore, key: str = "chatHistory") -> None:
        self.store = store
        self.key = key

    async def load(self) -> list[Conversation]:
        """Return cached conversations, skipping entries that fail to parse.

        Answers that were still streaming when the list was written can
        never resume, so their ``loading`` flag is cleared on load.
        """
        try:
            raw = await self.store.get(self.key)
        except Exception as exc:
            logger.warning("Failed to read conversation cache: {}", exc)
            return []
        if not raw:
            return []

        try:
            payload = json.loads(raw)
        except ValueError as exc:
            logger.warning("Conversation cache is not valid JSON: {}", exc)
            return []
        if not isinstance(payload, list):
            logger.warning("Conversation cache holds {} instead of a list", type(payload).__name__)
            return []

        conversations: list[Conversation] = []
        for entry in payload:
            try:
                conversation = Conversation.model_validate(entry)
            except ValidationError as exc:
                logger.warning("Skipping invalid cached conversation: {}", exc)
                continue
            for message in conversation.messages:
                message.loading = False
            conversations.append(conversation)
        logger.debug("Loaded {} conversations from cache", len(conversations))
        return conversations

    async def save(self, conversations: Iterable[Conversation]) -> bool:
        """Write the complete conversation list; return whether it succeeded."""
        payload = [conversation.model_dump(mode="json") for conversation in conversations]
        try:
            await self.store.set(self.key, json.dumps(payload, ensure_ascii=False))
        except Exception as exc:
            logger.warning("Failed to write conversation cache: {}", exc)
            return False
        logger.debug("Saved {} conversations to cache", len(payload))
        return True
