"""Bearer token persistence."""

from __future__ import annotations

from .key_value_store import KeyValueStore


class TokenStore:
    """Holds the bearer token used for every remote request."""

    def __init__(self, store: KeyValueStore, key: str = "token") -> None:
        self.store = store
        self.key = key

    async def get(self) -> str | None:
        token = await self.store.get(self.key)
        return token or None

    async def set(self, token: str) -> None:
        await self.store.set(self.key, token)

    async def clear(self) -> None:
        await self.store.remove(self.key)
