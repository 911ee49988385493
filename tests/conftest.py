from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio

repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from kbchat.config.chat_config import ChatConfig
from kbchat.main import create_store
from kbchat.storage.key_value_store import InMemoryKeyValueStore

TOKEN = "secret-token"


def sse(*payloads: Any, done: bool = True) -> bytes:
    """Encode payloads as SSE frames, optionally closed by the sentinel."""
    frames = [f"data: {json.dumps(payload)}\n\n" for payload in payloads]
    if done:
        frames.append("data: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


def chunk_frames(*texts: str) -> list[dict[str, Any]]:
    return [{"choices": [{"delta": {"content": text}}]} for text in texts]


class FakeBackend:
    """In-process stand-in for the knowledge-base HTTP service."""

    def __init__(self) -> None:
        self.conversations: dict[str, dict[str, Any]] = {}
        self.remote_messages: dict[str, list[dict[str, Any]]] = {}
        self.requests: list[httpx.Request] = []
        self.saved: list[dict[str, Any]] = []
        self.feedback: list[dict[str, Any]] = []
        self.knowledge_feedback: list[dict[str, Any]] = []
        self.qa_bodies: list[Any] = []
        self.uploads: list[bytes] = []

        self.answer: list[bytes] | bytes = sse(*chunk_frames("Hello", " world"))
        self.stream_error_after: int | None = None
        self.qa_status = 200
        self.save_status = 200
        self.delete_status = 200
        self.feedback_status = 200
        self.list_status = 200
        self.messages_status = 200
        self.reject_auth = False
        # Local id -> durable id assigned on first save
        self.assign_ids: dict[str, str] = {}
        # Set to hold saves until released
        self.save_gate: asyncio.Event | None = None
        self.save_started = asyncio.Event()
        self.active_saves = 0
        self.max_active_saves = 0
        # Set to hold message fetches until released
        self.messages_gate: asyncio.Event | None = None

    @property
    def history_prefix(self) -> str:
        return "/api/chat-history"

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.reject_auth or request.headers.get("Authorization") != f"Bearer {TOKEN}":
            return httpx.Response(401, json={"detail": "Not authenticated"})

        path = request.url.path
        method = request.method
        if path == "/api/chat-history/conversations" and method == "GET":
            if self.list_status != 200:
                return httpx.Response(self.list_status, json={"detail": "list failed"})
            return httpx.Response(200, json=list(self.conversations.values()))
        if path == "/api/chat-history/conversations" and method == "POST":
            return await self._save(request)
        if path.startswith("/api/chat-history/conversations/") and path.endswith("/messages"):
            if self.messages_status != 200:
                return httpx.Response(self.messages_status, json={"detail": "messages failed"})
            conversation_id = path.split("/")[-2]
            if self.messages_gate is not None:
                await self.messages_gate.wait()
            return httpx.Response(200, json=self.remote_messages.get(conversation_id, []))
        if path.startswith("/api/chat-history/conversations/") and method == "DELETE":
            conversation_id = path.rsplit("/", 1)[-1]
            if self.delete_status != 200:
                return httpx.Response(self.delete_status, json={"detail": "delete failed"})
            self.conversations.pop(conversation_id, None)
            return httpx.Response(200, json={"success": True})
        if path == "/api/chat-history/feedback":
            if self.feedback_status != 200:
                return httpx.Response(self.feedback_status, json={"message": "feedback rejected"})
            self.feedback.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True})
        if path == "/api/workflows/knowledge-base/feedback":
            self.knowledge_feedback.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True})
        if path == "/api/workflows/knowledge-qa":
            body = json.loads(request.content)
            self.qa_bodies.append(body)
            return self._answer(streaming=body.get("stream", True))
        if path == "/api/workflows/knowledge-qa/upload":
            await request.aread()
            self.uploads.append(request.content)
            return self._answer(streaming=b'name="stream"\r\n\r\ntrue' in request.content)
        return httpx.Response(404, json={"detail": "not found"})

    async def _save(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.save_started.set()
        self.active_saves += 1
        self.max_active_saves = max(self.max_active_saves, self.active_saves)
        try:
            if self.save_gate is not None:
                await self.save_gate.wait()
        finally:
            self.active_saves -= 1
        if self.save_status != 200:
            return httpx.Response(self.save_status, json={"detail": "save failed"})
        durable_id = self.assign_ids.get(payload["id"], payload["id"])
        payload = {**payload, "id": durable_id}
        self.saved.append(payload)
        self.conversations[durable_id] = {
            "id": durable_id,
            "title": payload.get("title"),
            "created_at": payload.get("created_at"),
            "updated_at": payload.get("updated_at"),
        }
        self.remote_messages[durable_id] = payload.get("messages", [])
        return httpx.Response(200, json={"id": durable_id, "success": True})

    def _answer(self, streaming: bool) -> httpx.Response:
        if self.qa_status != 200:
            return httpx.Response(self.qa_status, json={"detail": "answer failed"})
        if not streaming:
            return httpx.Response(200, json={"success": True, "data": {"answer": "Hello world"}})

        chunks = self.answer if isinstance(self.answer, list) else [self.answer]
        error_after = self.stream_error_after

        async def body():
            for index, chunk in enumerate(chunks):
                if error_after is not None and index >= error_after:
                    raise httpx.ReadError("connection reset")
                yield chunk
                await asyncio.sleep(0)
            if error_after is not None and error_after >= len(chunks):
                raise httpx.ReadError("connection reset")

        return httpx.Response(200, content=body(), headers={"content-type": "text/event-stream"})

    def paths(self, method: str | None = None) -> list[str]:
        return [r.url.path for r in self.requests if method is None or r.method == method]


@pytest.fixture
def chat_config() -> ChatConfig:
    return ChatConfig(
        api_base_url="http://kb.test",
        model="qa",
        kb_name="docs",
        stream=True,
    )


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def storage() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore({"token": TOKEN})


@pytest_asyncio.fixture
async def http_client(backend: FakeBackend):
    client = httpx.AsyncClient(base_url="http://kb.test", transport=httpx.MockTransport(backend))
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def store(chat_config, storage, http_client):
    store = create_store(chat_config=chat_config, storage=storage, client=http_client)
    yield store
    await store.dispose()
