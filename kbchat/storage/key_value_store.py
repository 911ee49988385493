"""Key-value storage backends for the local cache and the auth token.

The chat engine only needs three asynchronous operations on string
values.  Two backends are provided: an in-memory dictionary (tests and
ephemeral sessions) and a single JSON file on disk, rewritten atomically
on every change.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Dict, Protocol

from loguru import logger


class KeyValueStore(Protocol):
    """Asynchronous string key-value storage."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    """Dictionary-backed store; contents are lost with the process."""

    def __init__(self, initial: Dict[str, str] | None = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileKeyValueStore:
    """Store all keys in one JSON object file.

    Writes go to a temporary sibling file which then replaces the target,
    so a crash mid-write never leaves a truncated file behind.  File I/O
    runs in a worker thread to keep the event loop responsive; a lock
    serialises read-modify-write cycles.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        data = await asyncio.to_thread(self._read)
        value = data.get(key)
        return value if isinstance(value, str) else None

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._update, key, value)

    async def remove(self, key: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._update, key, None)

    # ------------------------------------------------------------------
    # Blocking helpers

    def _read(self) -> dict[str, object]:
        if not self.path.is_file():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read key-value store at {}: {}", self.path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _update(self, key: str, value: str | None) -> None:
        data = self._read()
        if value is None:
            data.pop(key, None)
        else:
            data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, ensure_ascii=False)
        os.replace(tmp_path, self.path)
