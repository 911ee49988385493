from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from kbchat.models import ChatMessage, Conversation, Feedback, FeedbackType, KnowledgeQARequest, MessageRole
from kbchat.models.chat_message import welcome_message
from kbchat.models.conversation import derive_title
from kbchat.models.enums import DateBucket
from kbchat.utils.helpers import date_bucket, group_conversations_by_date, next_timestamp


def test_legacy_type_field_collapses_into_role() -> None:
    bot = ChatMessage.model_validate({"type": "bot", "content": "hi"})
    user = ChatMessage.model_validate({"type": "user", "content": "q"})
    assert bot.role == MessageRole.ASSISTANT
    assert user.role == MessageRole.USER
    assert "type" not in bot.model_dump()


def test_role_wins_over_legacy_type() -> None:
    message = ChatMessage.model_validate({"role": "system", "type": "bot", "content": "x"})
    assert message.role == MessageRole.SYSTEM


def test_remote_row_with_created_at_and_string_feedback() -> None:
    message = ChatMessage.model_validate(
        {
            "id": "m1",
            "role": "assistant",
            "content": None,
            "created_at": "2024-05-01T10:00:00",
            "feedback": "like",
            "thinking": None,
            "citations": None,
        }
    )
    assert message.timestamp == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
    assert message.feedback == Feedback(type=FeedbackType.LIKE)
    assert message.content == ""
    assert message.thinking == ""
    assert message.citations == []


def test_camel_case_cache_entries_are_migrated() -> None:
    conversation = Conversation.model_validate(
        {
            "id": "c1",
            "title": "Old",
            "createdAt": "2024-01-01T00:00:00Z",
            "updatedAt": "2024-01-02T00:00:00Z",
            "messages": [{"type": "user", "content": "q", "fileInfo": {"name": "a.txt"}, "isError": False}],
        }
    )
    assert conversation.updated_at.day == 2
    assert conversation.messages[0].file_info.name == "a.txt"


def test_derive_title_truncates() -> None:
    assert derive_title("  short  ") == "short"
    assert derive_title("x" * 40) == "x" * 30 + "..."
    assert derive_title("abcdef", max_length=3) == "abc..."


def test_dislike_needs_reason_to_be_complete() -> None:
    assert Feedback(type=FeedbackType.LIKE).complete
    assert not Feedback(type=FeedbackType.DISLIKE, reason="   ").complete
    assert Feedback(type=FeedbackType.DISLIKE, reason="wrong source").complete


def test_to_remote_excludes_welcome_and_loading_messages() -> None:
    conversation = Conversation(id="c1", title="t")
    conversation.add_message(welcome_message("Welcome"))
    conversation.add_message(ChatMessage(role=MessageRole.USER, content="q"))
    conversation.add_message(ChatMessage(role=MessageRole.ASSISTANT, loading=True))
    payload = conversation.to_remote()
    assert [m["role"] for m in payload["messages"]] == ["user"]
    assert payload["messages"][0]["conversation_id"] == "c1"


def test_history_skips_system_and_error_messages() -> None:
    conversation = Conversation()
    conversation.add_message(welcome_message("Welcome"))
    conversation.add_message(ChatMessage(role=MessageRole.USER, content="q1"))
    conversation.add_message(ChatMessage(role=MessageRole.ASSISTANT, content="a1"))
    conversation.add_message(ChatMessage(role=MessageRole.SYSTEM, content="Error: x", is_error=True))
    assert conversation.history() == [
        {"role": "user", "content": "q1"},
        {"role": "assistant", "content": "a1"},
    ]


def test_add_message_clears_synced() -> None:
    conversation = Conversation(synced=True)
    before = conversation.updated_at
    conversation.add_message(ChatMessage(role=MessageRole.USER, content="q"))
    assert not conversation.synced
    assert conversation.updated_at >= before


def test_query_must_not_be_empty() -> None:
    with pytest.raises(ValidationError):
        KnowledgeQARequest(query="")


def test_next_timestamp_is_strictly_increasing() -> None:
    future = datetime.now(timezone.utc) + timedelta(seconds=5)
    previous = [ChatMessage(role=MessageRole.USER, timestamp=future)]
    assert next_timestamp(previous) > future
    assert next_timestamp([]) <= datetime.now(timezone.utc)


def test_date_buckets() -> None:
    now = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc).astimezone()
    assert date_bucket(now, now) == DateBucket.TODAY
    assert date_bucket(now - timedelta(days=1), now) == DateBucket.YESTERDAY
    assert date_bucket(now - timedelta(days=5), now) == DateBucket.THIS_WEEK
    assert date_bucket(now - timedelta(days=30), now) == DateBucket.EARLIER


def test_group_conversations_by_date_drops_empty_buckets() -> None:
    now = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc).astimezone()
    recent = Conversation(title="recent", updated_at=now)
    old = Conversation(title="old", updated_at=now - timedelta(days=60))
    older = Conversation(title="older", updated_at=now - timedelta(days=90))
    groups = group_conversations_by_date([older, recent, old], now)
    assert [bucket for bucket, _ in groups] == [DateBucket.TODAY, DateBucket.EARLIER]
    assert [c.title for c in groups[1][1]] == ["old", "older"]


def test_touch_always_moves_updated_at_forward() -> None:
    conversation = Conversation(updated_at=datetime(2999, 1, 1, tzinfo=timezone.utc))
    before = conversation.updated_at
    conversation.touch()
    assert conversation.updated_at > before
    assert not conversation.synced
