from __future__ import annotations

import asyncio

import pytest

from kbchat.models.outcomes import SyncOutcome
from kbchat.services.sync_engine import SyncEngine
from kbchat.utils.error_handler import TransportError, handle_sync_error


class GatedPush:
    """Push function whose calls block until released."""

    def __init__(self, confirmed: dict[str, str] | None = None) -> None:
        self.calls: list[str] = []
        self.running = 0
        self.max_running = 0
        self.gate = asyncio.Event()
        self.confirmed = confirmed or {}

    async def __call__(self, conversation_id: str) -> SyncOutcome:
        self.calls.append(conversation_id)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await self.gate.wait()
        finally:
            self.running -= 1
        return SyncOutcome(conversation_id=self.confirmed.get(conversation_id, conversation_id), ok=True)


@pytest.mark.asyncio
async def test_changes_during_push_coalesce_into_one_follow_up() -> None:
    push = GatedPush()
    engine = SyncEngine(push)

    first = engine.schedule("c1")
    await asyncio.sleep(0)
    second = engine.schedule("c1")
    third = engine.schedule("c1")
    assert first is second is third

    push.gate.set()
    outcome = await first
    assert outcome.ok
    assert push.calls == ["c1", "c1"]
    assert push.max_running == 1
    assert not engine.is_syncing("c1")


@pytest.mark.asyncio
async def test_different_conversations_push_concurrently() -> None:
    push = GatedPush()
    engine = SyncEngine(push)
    engine.schedule("a")
    engine.schedule("b")
    await asyncio.sleep(0)
    assert push.max_running == 2
    push.gate.set()
    await engine.flush()
    assert sorted(push.calls) == ["a", "b"]


@pytest.mark.asyncio
async def test_flight_is_rekeyed_to_confirmed_id() -> None:
    push = GatedPush(confirmed={"local": "server-1"})
    engine = SyncEngine(push)
    task = engine.schedule("local")
    await asyncio.sleep(0)
    engine.schedule("local")
    push.gate.set()
    outcome = await task
    assert outcome.conversation_id == "server-1"
    assert push.calls == ["local", "server-1"]


@pytest.mark.asyncio
async def test_discard_waits_for_in_flight_push_and_drops_follow_ups() -> None:
    push = GatedPush()
    engine = SyncEngine(push)
    engine.schedule("c1")
    await asyncio.sleep(0)
    engine.schedule("c1")

    discarding = asyncio.create_task(engine.discard("c1"))
    await asyncio.sleep(0)
    assert not discarding.done()
    push.gate.set()
    await discarding
    assert push.calls == ["c1"]


@pytest.mark.asyncio
async def test_schedule_after_discard_waits_for_previous_flight() -> None:
    push = GatedPush()
    engine = SyncEngine(push)
    engine.schedule("c1")
    await asyncio.sleep(0)
    discarding = asyncio.create_task(engine.discard("c1"))
    await asyncio.sleep(0)

    follow_up = engine.schedule("c1")
    await asyncio.sleep(0)
    assert push.max_running == 1
    push.gate.set()
    await discarding
    await follow_up
    assert push.calls == ["c1", "c1"]
    assert push.max_running == 1


@pytest.mark.asyncio
async def test_handle_sync_error_reports_failures() -> None:
    @handle_sync_error
    async def failing(conversation_id: str) -> str:
        raise TransportError("Request failed: 500 boom", status_code=500)

    @handle_sync_error
    async def crashing(conversation_id: str) -> str:
        raise KeyError("id")

    outcome = await failing("c1")
    assert not outcome.ok
    assert outcome.status_code == 500
    assert outcome.conversation_id == "c1"

    outcome = await crashing("c2")
    assert not outcome.ok
    assert "unexpected" in outcome.error


@pytest.mark.asyncio
async def test_failed_push_is_not_retried_automatically() -> None:
    calls = []

    async def push(conversation_id: str) -> SyncOutcome:
        calls.append(conversation_id)
        return SyncOutcome(conversation_id=conversation_id, ok=False, error="offline")

    engine = SyncEngine(push)
    outcome = await engine.schedule("c1")
    assert not outcome.ok
    assert calls == ["c1"]


@pytest.mark.asyncio
async def test_push_under_confirmed_id_joins_flight_moved_mid_push() -> None:
    push = GatedPush()
    engine = SyncEngine(push)
    confirmed = asyncio.Event()

    async def confirming_push(conversation_id: str) -> SyncOutcome:
        if conversation_id == "local":
            engine.rekey("local", "server-1")
            confirmed.set()
        return await push("server-1")

    engine._push = confirming_push
    task = engine.schedule("local")
    await confirmed.wait()

    assert engine.is_syncing("server-1")
    assert not engine.is_syncing("local")
    assert engine.schedule("server-1") is task

    push.gate.set()
    outcome = await task
    assert outcome.conversation_id == "server-1"
    assert push.calls == ["server-1", "server-1"]
    assert push.max_running == 1


@pytest.mark.asyncio
async def test_moved_flight_hands_pending_work_to_existing_flight() -> None:
    push = GatedPush(confirmed={"local": "server-1"})
    engine = SyncEngine(push)
    moved = engine.schedule("local")
    existing = engine.schedule("server-1")
    await asyncio.sleep(0)
    engine.schedule("local")

    engine.rekey("local", "server-1")
    assert engine.schedule("server-1") is existing

    push.gate.set()
    await asyncio.gather(moved, existing)
    assert push.calls.count("local") == 1
    assert push.calls.count("server-1") == 2
    assert not engine.is_syncing("server-1")
