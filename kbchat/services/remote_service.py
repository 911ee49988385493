"""Endpoints of the remote conversation and knowledge-base service."""

from __future__ import annotations

from contextlib import aclosing
from typing import Any, AsyncIterator

from loguru import logger

from ..config.chat_config import ChatConfig
from ..models.attachment import AttachmentPayload
from ..models.chat_request import KnowledgeQARequest
from ..models.enums import FeedbackType
from ..models.stream_event import StreamEvent
from ..utils.api_client import ApiClient
from ..utils.error_handler import TransportError
from .stream_decoder import completion_events, decode_stream


class RemoteConversationService:
    """Typed wrappers over the conversation CRUD and question answering API.

    Conversation history lives under ``ChatConfig.history_prefix`` and
    the question answering workflows under
    ``ChatConfig.workflows_prefix``.  All methods raise the errors of
    :class:`~kbchat.utils.api_client.ApiClient`.
    """

    def __init__(self, api: ApiClient, config: ChatConfig) -> None:
        self.api = api
        self.config = config

    async def aclose(self) -> None:
        await self.api.aclose()

    async def has_token(self) -> bool:
        return await self.api.has_token()

    # ------------------------------------------------------------------
    # Conversation history

    async def list_conversations(self) -> list[dict[str, Any]]:
        result = await self.api.request("GET", f"{self.config.history_prefix}/conversations")
        return self._expect_list(result, "conversation list")

    async def get_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        result = await self.api.request(
            "GET",
            f"{self.config.history_prefix}/conversations/{conversation_id}/messages",
        )
        return self._expect_list(result, "message list")

    async def save_conversation(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Create or update a conversation; the response echoes its id."""
        result = await self.api.request(
            "POST",
            f"{self.config.history_prefix}/conversations",
            json=payload,
        )
        if not isinstance(result, dict):
            raise TransportError("Unexpected response when saving conversation")
        return result

    async def delete_conversation(self, conversation_id: str) -> Any:
        return await self.api.request(
            "DELETE",
            f"{self.config.history_prefix}/conversations/{conversation_id}",
            headers={"Accept": "application/json"},
        )

    # ------------------------------------------------------------------
    # Question answering

    def build_request(
        self,
        query: str,
        history: list[dict[str, str]],
        *,
        stream: bool | None = None,
    ) -> KnowledgeQARequest:
        return KnowledgeQARequest(
            query=query,
            model=self.config.model,
            kb_name=self.config.kb_name,
            use_kb=self.config.use_kb,
            history=history,
            stream=self.config.stream if stream is None else stream,
        )

    async def knowledge_qa(self, request: KnowledgeQARequest) -> Any:
        """Send a question and return the single JSON completion."""
        body = request.model_dump()
        body["stream"] = False
        return await self.api.request("POST", f"{self.config.workflows_prefix}/knowledge-qa", json=body)

    async def stream_knowledge_qa(self, request: KnowledgeQARequest) -> AsyncIterator[StreamEvent]:
        """Send a question and yield the decoded answer stream."""
        body = request.model_dump()
        body["stream"] = True
        async with self.api.stream("POST", f"{self.config.workflows_prefix}/knowledge-qa", json=body) as response:
            async for event in decode_stream(response.aiter_bytes()):
                yield event

    async def knowledge_qa_with_file(self, query: str, payload: AttachmentPayload) -> Any:
        data, files = self._upload_form(query, payload, stream=False)
        return await self.api.request(
            "POST",
            f"{self.config.workflows_prefix}/knowledge-qa/upload",
            data=data,
            files=files,
        )

    async def stream_knowledge_qa_with_file(
        self,
        query: str,
        payload: AttachmentPayload,
    ) -> AsyncIterator[StreamEvent]:
        data, files = self._upload_form(query, payload, stream=True)
        async with self.api.stream(
            "POST",
            f"{self.config.workflows_prefix}/knowledge-qa/upload",
            data=data,
            files=files,
        ) as response:
            async for event in decode_stream(response.aiter_bytes()):
                yield event

    async def ask(
        self,
        request: KnowledgeQARequest,
        payload: AttachmentPayload | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield answer events, streamed or from a single completion."""
        if request.stream:
            if payload is not None:
                events = self.stream_knowledge_qa_with_file(request.query, payload)
            else:
                events = self.stream_knowledge_qa(request)
            async with aclosing(events):
                async for event in events:
                    yield event
            return

        if payload is not None:
            result = await self.knowledge_qa_with_file(request.query, payload)
        else:
            result = await self.knowledge_qa(request)
        for event in completion_events(result):
            yield event

    # ------------------------------------------------------------------
    # Feedback

    async def send_message_feedback(
        self,
        message_id: str,
        feedback: FeedbackType,
        comment: str = "",
    ) -> Any:
        return await self.api.request(
            "POST",
            f"{self.config.history_prefix}/feedback",
            json={
                "message_id": message_id,
                "feedback_type": feedback.value,
                "comment": comment,
            },
        )

    async def send_knowledge_feedback(
        self,
        question: str,
        answer: str,
        correct: bool,
        correction: str = "",
    ) -> Any:
        return await self.api.request(
            "POST",
            f"{self.config.workflows_prefix}/knowledge-base/feedback",
            json={
                "question": question,
                "answer": answer,
                "feedback_type": "correct" if correct else "incorrect",
                "correction": correction,
                "kb_name": self.config.kb_name,
                "vector_store_type": self.config.vector_store_type,
            },
        )

    # ------------------------------------------------------------------
    # Helpers

    def _upload_form(
        self,
        query: str,
        payload: AttachmentPayload,
        *,
        stream: bool,
    ) -> tuple[dict[str, str], dict[str, Any]]:
        data = {
            "query": query,
            "use_kb": "true" if self.config.use_kb else "false",
            "stream": "true" if stream else "false",
            "model": self.config.model,
            "temperature": str(self.config.temperature),
            "max_tokens": str(self.config.max_tokens),
        }
        if self.config.kb_name:
            data["kb_name"] = self.config.kb_name
        if payload.metadata_only:
            data["file_uri"] = payload.uri
        content = payload.content if payload.content is not None else b""
        files = {"file": (payload.name, content, payload.mime_type)}
        logger.debug(
            "Upload form for {}: {} bytes, metadata_only={}",
            payload.name,
            len(content),
            payload.metadata_only,
        )
        return data, files

    @staticmethod
    def _expect_list(result: Any, what: str) -> list[dict[str, Any]]:
        if not isinstance(result, list):
            raise TransportError(f"Unexpected {what} response")
        return [item for item in result if isinstance(item, dict)]
