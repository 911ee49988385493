"""Storage package holding the local conversation cache and the auth token."""

from .conversation_cache import ConversationCache  # noqa: F401
from .key_value_store import InMemoryKeyValueStore, JsonFileKeyValueStore, KeyValueStore  # noqa: F401
from .token_store import TokenStore  # noqa: F401
