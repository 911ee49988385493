"""Orchestration of conversations across UI state, local cache and server.

The ConversationStore is the single source of truth for the list of
conversations and for the message list currently on screen.  Every
mutation is applied to memory first, then written to the local cache,
then pushed to the remote store in the background by the
:class:`~kbchat.services.sync_engine.SyncEngine`.  A failed remote write
never rolls local state back; it is reported to the caller instead.
"""

from __future__ import annotations

import asyncio
import re
from contextlib import aclosing
from datetime import datetime
from typing import Any, AsyncIterator, Coroutine

from loguru import logger
from pydantic import ValidationError

from ..config.chat_config import ChatConfig
from ..models.attachment import Attachment
from ..models.chat_message import ChatMessage, welcome_message
from ..models.chat_request import KnowledgeQARequest
from ..models.conversation import Conversation, derive_title
from ..models.enums import AttachmentState, DateBucket, FeedbackType, MessageRole, RemoteDeleteStatus
from ..models.feedback import Feedback
from ..models.outcomes import DeleteOutcome, FeedbackOutcome, SyncOutcome
from ..storage.conversation_cache import ConversationCache
from ..utils.error_handler import (
    AuthenticationError,
    ChatError,
    ConversationNotFoundError,
    FeedbackError,
    MessagesLoadingError,
    StreamInProgressError,
    TransportError,
    handle_sync_error,
)
from ..utils.helpers import (
    group_conversations_by_date,
    next_timestamp,
    sort_by_recency,
    sort_by_timestamp,
)
from .attachment_pipeline import AttachmentPipeline
from .remote_service import RemoteConversationService
from .streaming_session import StreamingSession
from .sync_engine import SyncEngine

_FILE_PREFIX = re.compile(r"^\[File: [^\]]*\]\s*")


class ResponseStream:
    """The answer to one sent message, consumed as an async iterator.

    Iterating yields snapshots of the assistant message after every
    visible change and ends once the answer completed or failed.  The
    stream is finite and single-use; a new message has to be sent to get
    another answer.  Closing it early (``aclose``) ends the exchange with
    whatever content arrived so far.
    """

    def __init__(
        self,
        store: "ConversationStore",
        conversation: Conversation,
        message: ChatMessage,
        request: KnowledgeQARequest,
        attachment: Attachment | None,
    ) -> None:
        self._store = store
        self.conversation = conversation
        self.message = message
        self.request = request
        self.attachment = attachment
        self.session = StreamingSession(message.id)
        self._iterator: AsyncIterator[ChatMessage] | None = None

    @property
    def conversation_id(self) -> str:
        return self.conversation.id

    def __aiter__(self) -> AsyncIterator[ChatMessage]:
        if self._iterator is None:
            self._iterator = self._store._run_stream(self)
        return self._iterator

    async def aclose(self) -> None:
        if self._iterator is None:
            self._store._abandon_stream(self)
            return
        await self._iterator.aclose()  # type: ignore[attr-defined]


class ConversationStore:
    """Coordinates local state, the offline cache and the remote service.

    Stores are created explicitly and passed to whoever needs them; call
    :meth:`start` once to load the cached and remote conversation lists
    and :meth:`dispose` when the owning screen goes away.
    """

    def __init__(
        self,
        config: ChatConfig,
        remote: RemoteConversationService,
        cache: ConversationCache,
        attachments: AttachmentPipeline | None = None,
    ) -> None:
        self.config = config
        self.remote = remote
        self.cache = cache
        self.attachments = attachments or AttachmentPipeline()
        self.sync_engine = SyncEngine(handle_sync_error(self._push_conversation))

        self.conversations: list[Conversation] = []
        self.current_conversation_id: str | None = None
        self.messages: list[ChatMessage] = [self._welcome()]
        self.last_error: str | None = None

        self._active_streams: list[ResponseStream] = []
        self._fetching: list[Conversation] = []
        self._background: set[asyncio.Task[Any]] = set()
        self._disposed = False

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(self) -> None:
        """Load the cached list, then refresh it from the server."""
        self.conversations = sort_by_recency(await self.cache.load())
        await self.load_conversations()

    async def dispose(self) -> None:
        """Stop streams and background pushes; state is no longer mutated."""
        if self._disposed:
            return
        self._disposed = True
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.sync_engine.dispose()
        await self.remote.aclose()
        logger.info("Conversation store disposed")

    @property
    def is_streaming(self) -> bool:
        return bool(self._active_streams)

    @property
    def pending_attachment(self) -> Attachment | None:
        return self.attachments.pending

    def attach(self, attachment: Attachment) -> None:
        self.attachments.attach(attachment)

    def clear_attachment(self) -> None:
        self.attachments.clear()

    # ------------------------------------------------------------------
    # Conversation list

    async def load_conversations(self) -> list[Conversation]:
        """Refresh the conversation list, falling back to the cache.

        Without a token only cached data is used.  Server rows are merged
        with local data: local messages and unsynced local conversations
        survive, confirmed and synced conversations the server no longer
        lists are dropped.
        """
        if not self.conversations:
            self.conversations = sort_by_recency(await self.cache.load())

        if not await self.remote.has_token():
            logger.info("No token; using {} cached conversations", len(self.conversations))
            return self.conversations

        try:
            rows = await self.remote.list_conversations()
        except ChatError as exc:
            logger.warning("Loading conversations from server failed, using cache: {}", exc)
            self.last_error = str(exc)
            return self.conversations

        self.conversations = self._merge_remote(self.conversations, rows)
        logger.info("Loaded {} conversations", len(self.conversations))
        if self.current_conversation_id and self._find(self.current_conversation_id) is None:
            self.create_conversation()
        await self.cache.save(self.conversations)

        for conversation in self.conversations:
            if not conversation.synced and conversation.messages:
                self.sync_engine.schedule(conversation.id)
        return self.conversations

    def grouped_conversations(
        self,
        now: datetime | None = None,
    ) -> list[tuple[DateBucket, list[Conversation]]]:
        return group_conversations_by_date(self.conversations, now)

    def create_conversation(self) -> None:
        """Show an empty conversation; an id is assigned on the first send."""
        self.current_conversation_id = None
        self.messages = [self._welcome()]
        if self.attachments.state == AttachmentState.STAGED:
            self.attachments.clear()
        logger.debug("New conversation started")

    async def select_conversation(self, conversation_id: str) -> list[ChatMessage]:
        """Make ``conversation_id`` the active conversation and return its messages."""
        conversation = self._find(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")

        self.current_conversation_id = conversation.id
        if self.attachments.state == AttachmentState.STAGED:
            self.attachments.clear()

        if conversation.messages or not conversation.remote_confirmed:
            self.messages = self._display(conversation.messages)
            return self.messages

        self.messages = [self._welcome()]
        self._fetching.append(conversation)
        try:
            rows = await self.remote.get_messages(conversation.id)
        except ChatError as exc:
            logger.warning("Loading messages of {} failed, using local data: {}", conversation.id, exc)
            self.last_error = str(exc)
            if self.current_conversation_id == conversation.id:
                self.messages = self._display(conversation.messages)
            return self.messages
        finally:
            self._fetching.remove(conversation)

        fetched = self._parse_remote_messages(rows)
        logger.debug("Fetched {} messages for {}", len(fetched), conversation.id)
        if not conversation.messages:
            conversation.messages = fetched
        if self._find(conversation.id) is conversation:
            await self.cache.save(self.conversations)
        if self.current_conversation_id == conversation.id:
            self.messages = self._display(conversation.messages)
        return self.messages

    async def delete_conversation(self, conversation_id: str) -> DeleteOutcome:
        """Delete locally right away, then best-effort on the server.

        The local deletion is never undone.  A 404 from the server means
        the conversation is already gone and counts as success.
        """
        conversation = self._find(conversation_id)
        self.conversations = [item for item in self.conversations if item.id != conversation_id]
        if self.current_conversation_id == conversation_id:
            self.create_conversation()
        await self.cache.save(self.conversations)
        logger.info("Deleted conversation {} locally", conversation_id)

        await self.sync_engine.discard(conversation_id)
        remote_id = conversation.id if conversation is not None else conversation_id
        if conversation is not None and not conversation.remote_confirmed:
            return DeleteOutcome(conversation_id=remote_id, remote_status=RemoteDeleteStatus.LOCAL_ONLY)
        if not await self.remote.has_token():
            return DeleteOutcome(
                conversation_id=remote_id,
                remote_status=RemoteDeleteStatus.LOCAL_ONLY,
                error="Not logged in; the conversation was only deleted on this device",
            )

        try:
            await self.remote.delete_conversation(remote_id)
        except TransportError as exc:
            if exc.status_code == 404:
                logger.info("Conversation {} was already gone on the server", remote_id)
                return DeleteOutcome(conversation_id=remote_id, remote_status=RemoteDeleteStatus.ALREADY_GONE)
            logger.warning("Remote delete of {} failed: {}", remote_id, exc)
            return DeleteOutcome(conversation_id=remote_id, remote_status=RemoteDeleteStatus.FAILED, error=str(exc))
        except AuthenticationError as exc:
            return DeleteOutcome(conversation_id=remote_id, remote_status=RemoteDeleteStatus.FAILED, error=str(exc))
        return DeleteOutcome(conversation_id=remote_id, remote_status=RemoteDeleteStatus.DELETED)

    async def retry_unsynced(self) -> list[SyncOutcome]:
        """Push every conversation the server has not acknowledged yet."""
        tasks = [
            self.sync_engine.schedule(conversation.id)
            for conversation in self.conversations
            if not conversation.synced
        ]
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))

    # ------------------------------------------------------------------
    # Sending

    def start_stream(self, content: str) -> ResponseStream:
        """Append the question and its answer placeholder; return the answer stream.

        Everything here is synchronous, so a rejected send never reaches
        the network and no observer can see the question without its
        placeholder.
        """
        if self._disposed:
            raise ChatError("The conversation store has been disposed")

        text = content.strip()
        staged = self.attachments.pending if self.attachments.state == AttachmentState.STAGED else None
        if not text and staged is None:
            raise ValueError("Cannot send an empty message")

        conversation = self._find(self.current_conversation_id) if self.current_conversation_id else None
        if conversation is not None and (
            self._stream_for(conversation) is not None or conversation.has_loading_message
        ):
            raise StreamInProgressError("An answer is still being generated for this conversation")
        if conversation is not None and any(item is conversation for item in self._fetching):
            raise MessagesLoadingError("Messages of this conversation are still loading")
        if any(message.loading for message in self.messages):
            raise StreamInProgressError("An answer is still being generated for this conversation")

        if conversation is None:
            title_source = text or (staged.name if staged else "")
            conversation = Conversation(title=derive_title(title_source, self.config.title_max_length))
            self.conversations.insert(0, conversation)
            self.current_conversation_id = conversation.id
            self.messages = [self._welcome()]
            logger.info("Created local conversation {}", conversation.id)

        attachment = self.attachments.begin_upload()
        history = conversation.history()
        display = f"[File: {attachment.name}] {text}".strip() if attachment else text
        query = text or (attachment.name if attachment else "")
        request = self.remote.build_request(query, history)

        user_message = ChatMessage(
            role=MessageRole.USER,
            content=display,
            timestamp=next_timestamp(conversation.messages),
            file_info=attachment.file_info() if attachment else None,
        )
        placeholder = ChatMessage(
            role=MessageRole.ASSISTANT,
            loading=True,
            timestamp=next_timestamp(conversation.messages + [user_message]),
        )
        conversation.add_message(user_message)
        conversation.add_message(placeholder)
        if self.current_conversation_id == conversation.id:
            self.messages.extend([user_message, placeholder])
        self._move_to_front(conversation)

        stream = ResponseStream(self, conversation, placeholder, request, attachment)
        self._active_streams.append(stream)
        logger.info(
            "Sending message in {} (history={}, attachment={})",
            conversation.id,
            len(history),
            attachment.name if attachment else None,
        )
        return stream

    async def send_message(self, content: str) -> ChatMessage:
        """Send ``content`` and wait for the complete answer."""
        stream = self.start_stream(content)
        async for _ in stream:
            pass
        return stream.message

    async def regenerate_answer(self, question: str | None = None) -> ChatMessage:
        """Ask the last question (or ``question``) again as a new exchange."""
        if question is None:
            for message in reversed(self.messages):
                if message.role == MessageRole.USER:
                    question = _FILE_PREFIX.sub("", message.content)
                    break
        if not question:
            raise ChatError("There is no question to ask again")
        return await self.send_message(question)

    async def _run_stream(self, stream: ResponseStream) -> AsyncIterator[ChatMessage]:
        session = stream.session
        placeholder = stream.message
        conversation = stream.conversation
        finished = False
        try:
            await self.cache.save(self.conversations)
            payload = None
            if stream.attachment is not None:
                payload = await self.attachments.resolve_payload(stream.attachment)

            events = self.remote.ask(stream.request, payload)
            async with aclosing(events):
                async for event in events:
                    if self._disposed:
                        logger.info("Store disposed; abandoning answer {}", placeholder.id)
                        return
                    if session.apply(event):
                        self._mirror(session, placeholder)
                        yield placeholder.model_copy(deep=True)
                    if not session.is_active:
                        break

            if self._disposed:
                return
            session.complete()
            self._mirror(session, placeholder)
            if stream.attachment is not None:
                self.attachments.mark_delivered()
            conversation.touch()
            finished = True
            await self._commit(conversation)
        except ChatError as exc:
            if self._disposed:
                return
            self._fail_stream(stream, str(exc))
            finished = True
            await self._commit(conversation)
            yield placeholder.model_copy(deep=True)
        finally:
            if not finished and not self._disposed:
                self._fail_stream(stream, "The answer was interrupted", report=False)
                self._run_in_background(self._commit(conversation))
            if stream.attachment is not None:
                self.attachments.finish()
            if stream in self._active_streams:
                self._active_streams.remove(stream)

    def _abandon_stream(self, stream: ResponseStream) -> None:
        """Close a stream that was never iterated."""
        if stream not in self._active_streams:
            return
        self._fail_stream(stream, "The answer was not requested", report=False)
        if stream.attachment is not None:
            self.attachments.finish()
        self._active_streams.remove(stream)
        self._run_in_background(self._commit(stream.conversation))

    def _fail_stream(self, stream: ResponseStream, error: str, report: bool = True) -> None:
        session = stream.session
        placeholder = stream.message
        conversation = stream.conversation
        logger.error("Answer {} failed: {}", placeholder.id, error)

        session.fail(error)
        if stream.attachment is not None and self._uploading():
            self.attachments.mark_failed(error)
        self._mirror(session, placeholder)
        if not placeholder.content:
            placeholder.content = error
        placeholder.is_error = True
        conversation.touch()

        if report:
            self.last_error = error
            notice = ChatMessage(
                role=MessageRole.SYSTEM,
                content=f"Error: {error}",
                timestamp=next_timestamp(conversation.messages),
                is_error=True,
            )
            conversation.add_message(notice)
            if self.current_conversation_id == conversation.id:
                self.messages.append(notice)

    @staticmethod
    def _mirror(session: StreamingSession, placeholder: ChatMessage) -> None:
        placeholder.content = session.content
        placeholder.thinking = session.thinking
        placeholder.citations = list(session.citations)
        placeholder.loading = session.is_active

    # ------------------------------------------------------------------
    # Feedback

    async def record_feedback(
        self,
        message_id: str,
        feedback_type: FeedbackType | str,
        reason: str | None = None,
    ) -> FeedbackOutcome:
        """Set or clear feedback on an answer and sync its conversation.

        Giving the same feedback again clears it.  A new dislike needs a
        reason.  Remote failures are reported in the outcome, never raised.
        """
        feedback_type = FeedbackType(feedback_type)
        conversation, message = self._locate_message(message_id)
        if message is None or message.role != MessageRole.ASSISTANT or message.loading:
            raise FeedbackError(f"Message {message_id} cannot receive feedback")

        if message.feedback is not None and message.feedback.type == feedback_type:
            feedback = None
        else:
            feedback = Feedback(type=feedback_type, reason=reason)
            if not feedback.complete:
                raise FeedbackError("Please tell us what was wrong with this answer")
        message.feedback = feedback
        logger.info("Feedback on {} set to {}", message_id, feedback.type.value if feedback else None)

        if conversation is None:
            return FeedbackOutcome(message_id=message_id, feedback=feedback)

        conversation.touch()
        await self.cache.save(self.conversations)
        sync_task = self.sync_engine.schedule(conversation.id)

        feedback_error = None
        if feedback is not None:
            try:
                await self.remote.send_message_feedback(message_id, feedback.type, feedback.reason or "")
            except ChatError as exc:
                logger.warning("Sending feedback for {} failed: {}", message_id, exc)
                feedback_error = str(exc)

        sync = await sync_task
        return FeedbackOutcome(
            message_id=message_id,
            feedback=feedback,
            sync=sync,
            feedback_error=feedback_error,
        )

    async def submit_knowledge_feedback(
        self,
        message_id: str,
        correct: bool,
        correction: str = "",
    ) -> Any:
        """Tell the knowledge base whether an answer was right.

        The question sent along is the user message preceding the answer.
        """
        conversation, message = self._locate_message(message_id)
        if message is None or message.role != MessageRole.ASSISTANT:
            raise FeedbackError(f"Message {message_id} is not an answer")

        source = conversation.messages if conversation is not None else self.messages
        question = ""
        for candidate in source:
            if candidate.id == message.id:
                break
            if candidate.role == MessageRole.USER:
                question = candidate.content
        return await self.remote.send_knowledge_feedback(question, message.content, correct, correction)

    # ------------------------------------------------------------------
    # Synchronisation

    async def _push_conversation(self, conversation_id: str) -> str | None:
        """Send the full conversation to the server; return the confirmed id."""
        conversation = self._find(conversation_id)
        if conversation is None:
            logger.debug("Conversation {} no longer exists locally; skipping push", conversation_id)
            return conversation_id

        pushed_state = conversation.updated_at
        result = await self.remote.save_conversation(conversation.to_remote())
        confirmed_id = result.get("id")
        if not confirmed_id:
            raise TransportError("The server did not acknowledge the conversation")

        confirmed_id = str(confirmed_id)
        if confirmed_id != conversation.id:
            self._adopt_id(conversation, confirmed_id)
        conversation.remote_confirmed = True
        if conversation.updated_at == pushed_state:
            conversation.synced = True
        if self._find(conversation.id) is conversation:
            await self.cache.save(self.conversations)
        logger.debug("Conversation {} synced={}", conversation.id, conversation.synced)
        return confirmed_id

    def _adopt_id(self, conversation: Conversation, new_id: str) -> None:
        old_id = conversation.id
        conversation.id = new_id
        self.sync_engine.rekey(old_id, new_id)
        if self.current_conversation_id == old_id:
            self.current_conversation_id = new_id
        logger.info("Conversation {} is now {}", old_id, new_id)

    async def _commit(self, conversation: Conversation) -> None:
        """Persist the list locally and queue a push of ``conversation``."""
        if self._find(conversation.id) is not conversation:
            logger.debug("Conversation {} was deleted; not persisting", conversation.id)
            return
        await self.cache.save(self.conversations)
        if not self._disposed:
            self.sync_engine.schedule(conversation.id)

    def _run_in_background(self, coroutine: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Helpers

    def _welcome(self) -> ChatMessage:
        return welcome_message(self.config.welcome_message)

    def _display(self, messages: list[ChatMessage]) -> list[ChatMessage]:
        """Messages as shown on screen: the welcome message, then by timestamp."""
        return [self._welcome()] + sort_by_timestamp(message for message in messages if not message.is_welcome)

    def _find(self, conversation_id: str | None) -> Conversation | None:
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def _locate_message(self, message_id: str) -> tuple[Conversation | None, ChatMessage | None]:
        current = self._find(self.current_conversation_id)
        candidates = ([current] if current is not None else []) + [
            conversation for conversation in self.conversations if conversation is not current
        ]
        for conversation in candidates:
            message = conversation.find_message(message_id)
            if message is not None:
                return conversation, message
        for message in self.messages:
            if message.id == message_id:
                return None, message
        return None, None

    def _stream_for(self, conversation: Conversation) -> ResponseStream | None:
        for stream in self._active_streams:
            if stream.conversation is conversation:
                return stream
        return None

    def _move_to_front(self, conversation: Conversation) -> None:
        self.conversations = [conversation] + [item for item in self.conversations if item is not conversation]

    def _uploading(self) -> bool:
        return self.attachments.state == AttachmentState.UPLOADING

    def _merge_remote(
        self,
        local: list[Conversation],
        rows: list[dict[str, Any]],
    ) -> list[Conversation]:
        by_id = {conversation.id: conversation for conversation in local}
        merged: list[Conversation] = []
        seen: set[str] = set()
        for row in rows:
            try:
                remote = Conversation.from_remote_summary(row)
            except (KeyError, ValidationError) as exc:
                logger.warning("Skipping invalid conversation row: {}", exc)
                continue
            if remote.id in seen:
                continue
            seen.add(remote.id)
            existing = by_id.get(remote.id)
            if existing is None:
                merged.append(remote)
                continue
            existing.remote_confirmed = True
            if existing.synced:
                existing.title = remote.title or existing.title
                existing.updated_at = max(existing.updated_at, remote.updated_at)
            merged.append(existing)

        for conversation in local:
            if conversation.id in seen:
                continue
            if conversation.remote_confirmed and conversation.synced:
                logger.debug("Conversation {} was removed on the server", conversation.id)
                continue
            merged.append(conversation)
        return sort_by_recency(merged)

    def _parse_remote_messages(self, rows: list[dict[str, Any]]) -> list[ChatMessage]:
        markers = self.config.suppressed_system_texts
        messages: list[ChatMessage] = []
        for row in rows:
            try:
                message = ChatMessage.model_validate(row)
            except ValidationError as exc:
                logger.warning("Skipping invalid message row: {}", exc)
                continue
            if message.is_welcome:
                continue
            if message.role == MessageRole.SYSTEM and any(marker in message.content for marker in markers):
                continue
            message.loading = False
            messages.append(message)
        return sort_by_timestamp(messages)
