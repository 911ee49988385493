"""Background reconciliation of local conversations with the remote store.

Local writes are committed first; pushing them to the server happens in
a background task per conversation.  At most one push per conversation
id runs at a time.  A change that arrives while a push is in flight
marks the flight dirty and a follow-up push runs once the current one
resolves, so the remote store always ends up with the latest state and
never sees two pushes for one conversation racing each other.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict

from loguru import logger

from ..models.outcomes import SyncOutcome

PushFunction = Callable[[str], Awaitable[SyncOutcome]]


@dataclass
class _Flight:
    """State of the push loop for one conversation."""

    key: str
    dirty: bool = True
    discarded: bool = False
    attempts: int = 0
    task: "asyncio.Task[SyncOutcome] | None" = field(default=None, repr=False)


class SyncEngine:
    """Single-flight scheduler for conversation pushes.

    ``push`` receives a conversation id and returns a :class:`SyncOutcome`
    (see :func:`~kbchat.utils.error_handler.handle_sync_error`); it must
    not raise.  If the outcome carries a different ``conversation_id`` the
    remote store assigned a new durable id and the flight is re-keyed.
    """

    def __init__(self, push: PushFunction) -> None:
        self._push = push
        self._flights: Dict[str, _Flight] = {}

    def is_syncing(self, conversation_id: str) -> bool:
        return conversation_id in self._flights

    def schedule(self, conversation_id: str) -> "asyncio.Task[SyncOutcome]":
        """Request a push of ``conversation_id``.

        Returns the task whose result covers the state at the time of
        this call: the running flight when one exists (it will loop once
        more), otherwise a new one.
        """
        flight = self._flights.get(conversation_id)
        if flight is not None and flight.task is not None and not flight.task.done():
            if not flight.discarded:
                flight.dirty = True
                logger.debug("Push of {} in flight; follow-up scheduled", conversation_id)
                return flight.task

        previous = flight.task if flight is not None else None
        flight = _Flight(key=conversation_id)
        self._flights[conversation_id] = flight
        flight.task = asyncio.create_task(self._run(flight, previous), name=f"sync-{conversation_id}")
        return flight.task

    def rekey(self, old_key: str, new_key: str) -> None:
        """Move the flight for ``old_key`` to ``new_key``.

        Called as soon as the remote store confirms a new id, before the
        push suspends again, so a push requested under the new id joins
        the running flight instead of starting a second one.
        """
        flight = self._flights.get(old_key)
        if flight is None or old_key == new_key:
            return
        self._rekey(flight, new_key)

    async def discard(self, conversation_id: str) -> None:
        """Cancel follow-ups for a conversation and wait for any in-flight push."""
        flight = self._flights.get(conversation_id)
        if flight is None or flight.task is None:
            return
        flight.discarded = True
        flight.dirty = False
        await asyncio.wait([flight.task])

    async def flush(self) -> None:
        """Wait until every scheduled push has resolved."""
        while self._flights:
            tasks = [flight.task for flight in self._flights.values() if flight.task is not None]
            if not tasks:
                return
            await asyncio.wait(tasks)

    async def dispose(self) -> None:
        """Cancel all pushes; used when the owning store shuts down."""
        tasks = [flight.task for flight in self._flights.values() if flight.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._flights.clear()

    async def _run(
        self,
        flight: _Flight,
        previous: "asyncio.Task[SyncOutcome] | None" = None,
    ) -> SyncOutcome:
        outcome = SyncOutcome(conversation_id=flight.key, ok=False, error="Sync was not attempted")
        try:
            if previous is not None and not previous.done():
                await asyncio.wait([previous])
            while flight.dirty and not flight.discarded:
                flight.dirty = False
                flight.attempts += 1
                outcome = await self._push(flight.key)
                if outcome.ok and outcome.conversation_id != flight.key:
                    self._rekey(flight, outcome.conversation_id)
                if not outcome.ok:
                    logger.info(
                        "Push {} of conversation {} failed: {}",
                        flight.attempts,
                        flight.key,
                        outcome.error,
                    )
            return outcome
        finally:
            if self._flights.get(flight.key) is flight:
                del self._flights[flight.key]

    def _rekey(self, flight: _Flight, new_key: str) -> None:
        logger.debug("Conversation {} confirmed as {}", flight.key, new_key)
        if self._flights.get(flight.key) is flight:
            del self._flights[flight.key]
        flight.key = new_key
        existing = self._flights.get(new_key)
        if existing is not None and existing is not flight and existing.task is not None and not existing.task.done():
            # Hand pending work to the flight already registered under the new id
            existing.dirty = existing.dirty or flight.dirty
            flight.dirty = False
            return
        self._flights[new_key] = flight
