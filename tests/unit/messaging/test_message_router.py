from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, Mock

import pytest

from tests.helpers.chat_fakes import make_record
from topicchat.core import crypto
from topicchat.core.crypto import encrypt_message
from topicchat.core.exceptions import NetworkError
from topicchat.domain.chat import Author, Message
from topicchat.services.messaging.message_router import MessageRouter


class RecordingSink:
    def __init__(self, current_topic_id: Optional[str] = None) -> None:
        self.current_topic_id = current_topic_id
        self.messages: Dict[str, List[Message]] = {}
        self.unread: Dict[str, int] = {}
        self.sounds = 0

    def has_message(self, conversation_id: str, message_id: str) -> bool:
        return any(m.id == message_id for m in self.messages.get(conversation_id, ()))

    def insert_routed_message(self, message: Message) -> bool:
        if self.has_message(message.conversation_id, message.id):
            return False
        self.messages.setdefault(message.conversation_id, []).append(message)
        return True

    def increment_unread(self, conversation_id: str) -> None:
        self.unread[conversation_id] = self.unread.get(conversation_id, 0) + 1

    async def play_notification_sound(self) -> None:
        self.sounds += 1


BOB = Author(id="user-2", name="Bob")


@pytest.fixture
def lookup() -> AsyncMock:
    return AsyncMock(return_value=BOB)


class TestRoute:
    @pytest.mark.asyncio
    async def test_decrypts_and_inserts(self, lookup) -> None:
        sink = RecordingSink(current_topic_id="topic-1")
        router = MessageRouter(lookup)

        message = await router.route(make_record("m1", message=encrypt_message("hi there")), sink)

        assert message.text == "hi there"
        assert message.author == BOB
        assert sink.messages["topic-1"] == [message]

    @pytest.mark.asyncio
    async def test_uses_embedded_author_without_lookup(self, lookup) -> None:
        sink = RecordingSink()
        embedded = Author(id="user-3", name="Carol")

        message = await MessageRouter(lookup).route(make_record("m1", author=embedded), sink)

        assert message.author == embedded
        lookup.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_same_record_twice_is_inserted_once(self, lookup) -> None:
        sink = RecordingSink()
        router = MessageRouter(lookup)
        record = make_record("m1")

        first = await router.route(record, sink)
        second = await router.route(record, sink)

        assert first is not None
        assert second is None
        assert len(sink.messages["topic-1"]) == 1
        assert sink.unread["topic-1"] == 1
        assert lookup.await_count == 1

    @pytest.mark.asyncio
    async def test_unread_and_sound_only_for_background_topics(self, lookup) -> None:
        sink = RecordingSink(current_topic_id="topic-1")
        router = MessageRouter(lookup)

        await router.route(make_record("m1", conversation_id="topic-1"), sink)
        await router.route(make_record("m2", conversation_id="topic-2"), sink)
        await router.route(make_record("m3", conversation_id="topic-2"), sink)

        assert sink.unread == {"topic-2": 2}
        assert sink.sounds == 2

    @pytest.mark.asyncio
    async def test_unknown_author_drops_message(self) -> None:
        sink = RecordingSink()

        result = await MessageRouter(AsyncMock(return_value=None)).route(make_record("m1"), sink)

        assert result is None
        assert sink.messages == {}
        assert sink.unread == {}

    @pytest.mark.asyncio
    async def test_lookup_failure_after_retries_drops_message(self, monkeypatch) -> None:
        monkeypatch.setattr("topicchat.core.retry._sleep", AsyncMock())
        sink = RecordingSink()
        failing = AsyncMock(side_effect=NetworkError("timeout"))

        result = await MessageRouter(failing).route(make_record("m1"), sink)

        assert result is None
        assert sink.messages == {}
        assert failing.await_count > 1

    @pytest.mark.asyncio
    async def test_naive_timestamps_become_utc(self, lookup) -> None:
        sink = RecordingSink()
        naive = datetime(2024, 1, 1, 12, 0) + timedelta(minutes=5)

        message = await MessageRouter(lookup).route(make_record("m1", created_at=naive), sink)

        assert message.created_at.tzinfo == timezone.utc
        assert message.created_at.hour == 12

    @pytest.mark.asyncio
    async def test_deprecated_ciphertext_schedules_upgrade(self, lookup) -> None:
        scheduler = Mock()
        legacy = crypto._encrypt_legacy("old format")
        sink = RecordingSink()

        message = await MessageRouter(lookup, scheduler).route(make_record("m1", message=legacy), sink)

        assert message.text == "old format"
        scheduler.assert_called_once_with("m1", legacy)

    @pytest.mark.asyncio
    async def test_current_ciphertext_is_not_upgraded(self, lookup) -> None:
        scheduler = Mock()

        await MessageRouter(lookup, scheduler).route(
            make_record("m1", message=encrypt_message("new")), RecordingSink()
        )

        scheduler.assert_not_called()
