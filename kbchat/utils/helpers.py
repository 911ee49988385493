"""General helper functions used across the engine."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, Sequence

from ..models.chat_message import ChatMessage, utc_now
from ..models.conversation import Conversation
from ..models.enums import DateBucket


def sort_by_recency(conversations: Iterable[Conversation]) -> list[Conversation]:
    """Return conversations ordered by ``updated_at``, newest first."""
    return sorted(conversations, key=lambda conversation: conversation.updated_at, reverse=True)


def sort_by_timestamp(messages: Iterable[ChatMessage]) -> list[ChatMessage]:
    """Stable ascending sort; messages with equal timestamps keep their order."""
    return sorted(messages, key=lambda message: message.timestamp)


def next_timestamp(previous: Sequence[ChatMessage]) -> datetime:
    """Return "now", nudged past the newest timestamp in ``previous``.

    Two messages appended within the same clock tick would otherwise
    share a timestamp and lose their relative order when re-sorted.
    """
    now = utc_now()
    if previous:
        latest = max(message.timestamp for message in previous)
        if now <= latest:
            now = latest + timedelta(microseconds=1)
    return now


def date_bucket(moment: datetime, now: datetime | None = None) -> DateBucket:
    """Classify ``moment`` relative to ``now`` in the local timezone."""
    now = (now or datetime.now(timezone.utc)).astimezone()
    local = moment.astimezone(now.tzinfo)
    today = now.date()
    day = local.date()
    if day == today:
        return DateBucket.TODAY
    if day == today - timedelta(days=1):
        return DateBucket.YESTERDAY
    if day >= today - timedelta(days=7):
        return DateBucket.THIS_WEEK
    return DateBucket.EARLIER


def group_conversations_by_date(
    conversations: Iterable[Conversation],
    now: datetime | None = None,
) -> list[tuple[DateBucket, list[Conversation]]]:
    """Group conversations into recency buckets, dropping empty buckets.

    Conversations inside a bucket are ordered newest first.
    """
    groups: dict[DateBucket, list[Conversation]] = {bucket: [] for bucket in DateBucket}
    for conversation in sort_by_recency(conversations):
        groups[date_bucket(conversation.updated_at, now)].append(conversation)
    return [(bucket, items) for bucket, items in groups.items() if items]
