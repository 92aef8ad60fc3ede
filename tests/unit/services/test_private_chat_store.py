from __future__ import annotations

from datetime import datetime, timedelta, timezone
import re

import pytest

from tests.helpers.chat_fakes import drain, make_record
from topicchat.core.exceptions import NotFoundException, ValidationException
from topicchat.domain.chat import (
    PLACEHOLDER_AUTHOR_NAME,
    UNKNOWN_AUTHOR_NAME,
    Author,
    DeliveryState,
    PrivateChatSummary,
)
from topicchat.services.messaging.events import build_message_inserted_event
from topicchat.services.messaging.transport import ChannelStatus
from topicchat.services.private_chat_store import (
    FETCH_CHATS_ERROR_MESSAGE,
    SEND_ERROR_MESSAGE,
    PrivateChatStore,
    generate_temp_id,
)

CHAT = "chat-1"
T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(backend, transport, clock) -> PrivateChatStore:
    return PrivateChatStore(backend, transport, clock=clock)


def test_temp_ids_are_unique_and_prefixed(clock) -> None:
    first, second = generate_temp_id(clock), generate_temp_id(clock)

    assert re.fullmatch(r"temp_\d+_[0-9a-f]{9}", first)
    assert first != second


class TestOptimisticSend:
    @pytest.mark.asyncio
    async def test_placeholder_is_replaced_by_echo(self, store, backend) -> None:
        placeholder = await store.send_private_message(CHAT, "user-1", "hello")

        assert placeholder.delivery_state == DeliveryState.SENT
        assert placeholder.author.name == PLACEHOLDER_AUTHOR_NAME
        assert placeholder.id.startswith("temp_")

        record = backend.private_messages[CHAT][0]
        await store.handle_private_message_insert(record)

        [message] = store.get_messages(CHAT)
        assert message.id == record.id
        assert message.text == "hello"
        assert message.temp_id is None
        assert message.author.name == "Alice"

    @pytest.mark.asyncio
    async def test_echo_arriving_before_send_returns(self, store, backend) -> None:
        original_send = backend.send_private_message

        async def send_with_early_echo(chat_id, sender_id, body):
            record = await original_send(chat_id, sender_id, body)
            await store.handle_private_message_insert(record)
            return record

        backend.send_private_message = send_with_early_echo

        await store.send_private_message(CHAT, "user-1", "hello")

        messages = store.get_messages(CHAT)
        assert [m.id for m in messages] == ["msg-1"]
        assert messages[0].temp_id is None

    @pytest.mark.asyncio
    async def test_echo_does_not_replace_placeholder_with_different_text(self, store, backend) -> None:
        await store.send_private_message(CHAT, "user-1", "hello")
        other = make_record("other", CHAT, "user-1", "something else", created_at=T0 + timedelta(seconds=1))

        await store.handle_private_message_insert(other)

        assert [m.text for m in store.get_messages(CHAT)] == ["hello", "something else"]

    @pytest.mark.asyncio
    async def test_failed_send_marks_placeholder(self, store, backend) -> None:
        backend.send_private_error = ValueError("insert failed")

        placeholder = await store.send_private_message(CHAT, "user-1", "hello")

        assert placeholder.delivery_state == DeliveryState.FAILED
        assert store.get_messages(CHAT) == [placeholder]
        assert store.error == SEND_ERROR_MESSAGE
        assert store.is_sending_message is False

    @pytest.mark.asyncio
    async def test_retry_failed_message(self, store, backend) -> None:
        backend.send_private_error = ValueError("insert failed")
        failed = await store.send_private_message(CHAT, "user-1", "hello")
        backend.send_private_error = None

        retried = await store.retry_failed_message(CHAT, failed.temp_id)

        assert retried.delivery_state == DeliveryState.SENT
        assert store.get_messages(CHAT) == [retried]
        assert store.error is None

    @pytest.mark.asyncio
    async def test_retry_ignores_unknown_or_sent_messages(self, store) -> None:
        sent = await store.send_private_message(CHAT, "user-1", "hello")

        assert await store.retry_failed_message(CHAT, "temp_missing") is None
        assert await store.retry_failed_message(CHAT, sent.temp_id) is None

    @pytest.mark.asyncio
    async def test_text_is_trimmed_and_validated(self, store, backend) -> None:
        placeholder = await store.send_private_message(CHAT, "user-1", "  hi  ")
        assert placeholder.text == "hi"
        assert backend.private_messages[CHAT][0].message == "hi"

        with pytest.raises(ValidationException):
            await store.send_private_message(CHAT, "user-1", "   ")
        with pytest.raises(ValidationException):
            await store.send_private_message(CHAT, "user-1", "x" * 1001)


class TestRealtimeInserts:
    @pytest.mark.asyncio
    async def test_duplicate_insert_is_ignored(self, store) -> None:
        record = make_record("m1", CHAT, "user-2")

        first = await store.handle_private_message_insert(record)
        second = await store.handle_private_message_insert(record)

        assert first is not None
        assert second is None
        assert len(store.get_messages(CHAT)) == 1

    @pytest.mark.asyncio
    async def test_unknown_sender_gets_placeholder_name(self, store, backend) -> None:
        message = await store.handle_private_message_insert(make_record("m1", CHAT, "ghost"))

        assert message.author.name == UNKNOWN_AUTHOR_NAME

    @pytest.mark.asyncio
    async def test_sender_lookup_failure_gets_placeholder_name(self, store, backend) -> None:
        backend.author_error = RuntimeError("lookup failed")

        message = await store.handle_private_message_insert(make_record("m1", CHAT, "user-2"))

        assert message.author.name == UNKNOWN_AUTHOR_NAME

    @pytest.mark.asyncio
    async def test_channel_events_are_applied(self, store, transport) -> None:
        await store.subscribe_to_private_chat(CHAT)
        await store.subscribe_to_private_chat(CHAT)

        await transport.deliver(f"private:{CHAT}", build_message_inserted_event(make_record("m1", CHAT)))
        await transport.deliver(f"private:{CHAT}", "not json")

        assert store.is_subscribed(CHAT)
        assert transport.open_attempts == 1
        assert [m.id for m in store.get_messages(CHAT)] == ["m1"]

        await store.unsubscribe_from_private_chat(CHAT)
        assert not store.is_subscribed(CHAT)
        assert transport.open_channels() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [ChannelStatus.CHANNEL_ERROR, ChannelStatus.TIMED_OUT])
    async def test_failed_channel_is_reopened_on_next_subscribe(self, store, transport, status) -> None:
        await store.subscribe_to_private_chat(CHAT)

        transport.emit_status(f"private:{CHAT}", status)
        await drain()

        assert not store.is_subscribed(CHAT)
        assert transport.open_channels() == []

        await store.subscribe_to_private_chat(CHAT)

        assert store.is_subscribed(CHAT)
        assert transport.open_attempts == 2
        assert transport.open_channels() == [f"private:{CHAT}"]


class TestFetching:
    @pytest.mark.asyncio
    async def test_first_page_replaces_and_older_pages_prepend(self, store, backend) -> None:
        backend.private_messages[CHAT] = [
            make_record(f"m{i}", CHAT, "user-2", f"text {i}", created_at=T0 + timedelta(minutes=i))
            for i in range(4)
        ]
        store.private_messages[CHAT] = []

        await store.fetch_private_messages(CHAT, limit=2, offset=2)
        assert [m.id for m in store.get_messages(CHAT)] == ["m2", "m3"]

        await store.fetch_private_messages(CHAT, limit=2, offset=0)
        assert [m.id for m in store.get_messages(CHAT)] == ["m0", "m1"]

        await store.fetch_private_messages(CHAT, limit=2, offset=2)
        assert [m.id for m in store.get_messages(CHAT)] == ["m2", "m3", "m0", "m1"]

    @pytest.mark.asyncio
    async def test_fetch_chats_and_lookup(self, store, backend) -> None:
        summary = PrivateChatSummary(id=CHAT, other_user=Author(id="user-2", name="Bob"), unread_count=3)
        backend.private_chats["user-1"] = [summary]

        await store.fetch_private_chats("user-1")

        assert store.get_private_chat_by_id(CHAT) is summary
        assert store.get_unread_count(CHAT) == 3
        assert store.get_unread_count("missing") == 0
        assert store.is_loading is False

    @pytest.mark.asyncio
    async def test_fetch_chats_failure_sets_error(self, store, backend) -> None:
        backend.fetch_error = ValueError("boom")

        await store.fetch_private_chats("user-1")

        assert store.error == FETCH_CHATS_ERROR_MESSAGE
        assert store.is_loading is False

    @pytest.mark.asyncio
    async def test_get_or_create_propagates_errors(self, store) -> None:
        assert await store.get_or_create_private_chat("user-1", "user-2") == "chat-user-1-user-2"

        with pytest.raises(NotFoundException):
            await store.get_or_create_private_chat("user-1", "nobody")

    @pytest.mark.asyncio
    async def test_mark_messages_as_read(self, store, backend) -> None:
        backend.private_chats["user-1"] = [
            PrivateChatSummary(id=CHAT, other_user=Author(id="user-2", name="Bob"), unread_count=2)
        ]
        await store.fetch_private_chats("user-1")
        await store.handle_private_message_insert(make_record("m1", CHAT, "user-2"))

        await store.mark_messages_as_read(CHAT, "user-1")

        assert backend.marked_read == [(CHAT, "user-1")]
        assert store.get_messages(CHAT)[0].is_read is True
        assert store.get_unread_count(CHAT) == 0
