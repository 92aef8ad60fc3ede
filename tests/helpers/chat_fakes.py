# tests/helpers/chat_fakes.py
"""
In-memory fakes for the chat layer.

FakeTransport stands in for the broadcaster-backed transport and lets tests
drive channel status and inbound events by hand. FakeChatBackend is an
in-memory ChatBackend. FakeClock is a millisecond clock that only moves when
told to.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from itertools import count
from typing import Any, Dict, List, Optional

from topicchat.core.exceptions import NetworkError, NotFoundException
from topicchat.domain.chat import Author, PrivateChatSummary
from topicchat.services.messaging.events import MessageRecord
from topicchat.services.messaging.transport import (
    ChannelHandle,
    ChannelStatus,
    EventCallback,
    RealtimeTransport,
    StatusCallback,
)

BASE_TIME_MS = 1_700_000_000_000.0


class FakeClock:
    def __init__(self, now: float = BASE_TIME_MS) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> float:
        self.now += ms
        return self.now


class FakeChannelHandle(ChannelHandle):
    def __init__(
        self,
        channel: str,
        on_event: EventCallback,
        on_status: StatusCallback,
        yield_on_close: bool = False,
    ) -> None:
        super().__init__(channel)
        self.on_event = on_event
        self.on_status = on_status
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self.fail_send = False
        self.yield_on_close = yield_on_close

    async def send(self, event: Dict[str, Any]) -> None:
        if self.closed or self.fail_send:
            raise NetworkError(f"send on {self.channel} failed")
        self.sent.append(event)

    async def close(self) -> None:
        # The broadcaster handle waits for its reader task here.
        if self.yield_on_close:
            await asyncio.sleep(0)
        self.closed = True


class FakeTransport(RealtimeTransport):
    def __init__(self, auto_subscribe: bool = True) -> None:
        self.auto_subscribe = auto_subscribe
        self.handles: List[FakeChannelHandle] = []
        self.open_attempts = 0
        self.fail_open = False
        self.fail_open_times = 0
        self.yield_on_close = False

    async def open_channel(
        self,
        channel: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> ChannelHandle:
        self.open_attempts += 1
        if self.fail_open or self.fail_open_times > 0:
            self.fail_open_times = max(0, self.fail_open_times - 1)
            raise NetworkError("connection refused")
        handle = FakeChannelHandle(channel, on_event, on_status, self.yield_on_close)
        self.handles.append(handle)
        if self.auto_subscribe:
            on_status(ChannelStatus.SUBSCRIBED, None)
        return handle

    def latest(self, channel: str) -> FakeChannelHandle:
        return [h for h in self.handles if h.channel == channel][-1]

    def open_channels(self) -> List[str]:
        return [h.channel for h in self.handles if not h.closed]

    def emit_status(self, channel: str, status: ChannelStatus, error: Optional[BaseException] = None) -> None:
        self.latest(channel).on_status(status, error)

    async def deliver(self, channel: str, raw: Any) -> None:
        await self.latest(channel).on_event(raw)


def make_record(
    message_id: str,
    conversation_id: str = "topic-1",
    user_id: str = "user-2",
    message: str = "hello",
    created_at: Optional[datetime] = None,
    author: Optional[Author] = None,
) -> MessageRecord:
    return MessageRecord(
        id=message_id,
        conversation_id=conversation_id,
        user_id=user_id,
        message=message,
        created_at=created_at or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
        author=author,
    )


class FakeChatBackend:
    """In-memory ChatBackend; set ``*_error`` attributes to make calls fail."""

    def __init__(self) -> None:
        self.authors: Dict[str, Author] = {}
        self.topic_messages: Dict[str, List[MessageRecord]] = {}
        self.private_messages: Dict[str, List[MessageRecord]] = {}
        self.private_chats: Dict[str, List[PrivateChatSummary]] = {}
        self.topic_ids: Dict[str, List[str]] = {}
        self.updated_bodies: Dict[str, str] = {}
        self.unread: Dict[str, int] = {}
        self.unread_calls: List[tuple] = []
        self.author_lookups: List[str] = []
        self.marked_read: List[tuple] = []

        self.insert_error: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.author_error: Optional[Exception] = None
        self.send_private_error: Optional[Exception] = None

        self._ids = count(1)
        self._clock = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def add_author(self, user_id: str, name: str) -> Author:
        author = Author(id=user_id, name=name)
        self.authors[user_id] = author
        return author

    def _next_id(self) -> str:
        return f"msg-{next(self._ids)}"

    async def insert_topic_message(self, topic_id: str, user_id: str, body: str) -> MessageRecord:
        if self.insert_error is not None:
            raise self.insert_error
        record = make_record(
            self._next_id(), topic_id, user_id, body, author=self.authors.get(user_id)
        )
        self.topic_messages.setdefault(topic_id, []).append(record)
        return record

    async def fetch_topic_messages(self, topic_id: str, limit: int = 50, offset: int = 0) -> List[MessageRecord]:
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.topic_messages.get(topic_id, []))[offset : offset + limit]

    async def update_message_body(self, message_id: str, body: str) -> bool:
        self.updated_bodies[message_id] = body
        return True

    async def count_unread_since(self, topic_id: str, user_id: str, since: datetime) -> int:
        self.unread_calls.append((topic_id, user_id, since))
        return self.unread.get(topic_id, 0)

    async def get_author(self, user_id: str) -> Optional[Author]:
        self.author_lookups.append(user_id)
        if self.author_error is not None:
            raise self.author_error
        return self.authors.get(user_id)

    async def get_participating_topic_ids(self, user_id: str) -> List[str]:
        return list(self.topic_ids.get(user_id, []))

    async def fetch_private_chats(self, user_id: str) -> List[PrivateChatSummary]:
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.private_chats.get(user_id, []))

    async def get_or_create_private_chat(self, user_id: str, other_user_id: str) -> str:
        if other_user_id not in self.authors:
            raise NotFoundException(f"User {other_user_id} not found")
        return "chat-" + "-".join(sorted((user_id, other_user_id)))

    async def fetch_private_messages(self, chat_id: str, limit: int = 50, offset: int = 0) -> List[MessageRecord]:
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.private_messages.get(chat_id, []))[offset : offset + limit]

    async def send_private_message(self, chat_id: str, sender_id: str, body: str) -> MessageRecord:
        if self.send_private_error is not None:
            raise self.send_private_error
        record = make_record(
            self._next_id(), chat_id, sender_id, body, author=self.authors.get(sender_id)
        )
        self.private_messages.setdefault(chat_id, []).append(record)
        return record

    async def mark_private_messages_read(self, chat_id: str, user_id: str) -> int:
        self.marked_read.append((chat_id, user_id))
        return 1


async def drain(iterations: int = 50) -> None:
    """Let pending tasks (zero-delay reconnects, spawned closes) run."""
    for _ in range(iterations):
        await asyncio.sleep(0)
