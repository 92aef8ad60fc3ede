# topicchat/services/private_chat_store.py
"""
State for private 1:1 chats.

Sends are optimistic: a placeholder with a ``temp_`` id is appended at once
in ``sending`` state, flips to ``sent`` or ``failed`` when the backend
answers, and is replaced in place when the realtime echo of the same message
arrives (same sender, identical text, placeholder already ``sent``).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
import uuid

from topicchat.core.config import settings
from topicchat.core.crypto import decrypt_message
from topicchat.core.exceptions import ValidationException
from topicchat.core.retry import with_network_retry
from topicchat.domain.chat import (
    PLACEHOLDER_AUTHOR_NAME,
    UNKNOWN_AUTHOR_NAME,
    Author,
    DeliveryState,
    Message,
    PrivateChatSummary,
)
from topicchat.services.chat_backend import ChatBackend
from topicchat.services.messaging.events import MessageInserted, MessageRecord, decode_event
from topicchat.services.messaging.transport import (
    BroadcastRealtimeTransport,
    ChannelHandle,
    ChannelStatus,
    RawEvent,
    RealtimeTransport,
    private_channel,
)
from topicchat.utils.time_utils import Clock, ensure_utc, ms_to_datetime, now_ms

logger = logging.getLogger(__name__)

FETCH_CHATS_ERROR_MESSAGE = "Failed to load private chats"
FETCH_MESSAGES_ERROR_MESSAGE = "Failed to load messages"
SEND_ERROR_MESSAGE = "Failed to send message"

ChangeListener = Callable[[str, Optional[str]], None]


def generate_temp_id(clock: Clock = now_ms) -> str:
    return f"temp_{int(clock())}_{uuid.uuid4().hex[:9]}"


class PrivateChatStore:
    def __init__(
        self,
        backend: ChatBackend,
        transport: Optional[RealtimeTransport] = None,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self._backend = backend
        self._transport = transport or BroadcastRealtimeTransport()
        self._clock = clock or now_ms

        self.private_chats: List[PrivateChatSummary] = []
        self.private_messages: Dict[str, List[Message]] = {}
        self.current_chat_id: Optional[str] = None
        self.is_loading = False
        self.is_loading_messages = False
        self.is_sending_message = False
        self.error: Optional[str] = None

        self._channels: Dict[str, ChannelHandle] = {}
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._listeners: List[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, change: str, chat_id: Optional[str] = None) -> None:
        for listener in list(self._listeners):
            try:
                listener(change, chat_id)
            except Exception:
                logger.exception("[PRIVATE_CHAT] Change listener failed for %s", change)

    # ------------------------------------------------------------------ #
    # Chats
    # ------------------------------------------------------------------ #

    async def fetch_private_chats(self, user_id: str) -> None:
        self.is_loading = True
        self.error = None
        try:
            self.private_chats = await with_network_retry(
                "fetch_private_chats", lambda: self._backend.fetch_private_chats(user_id)
            )
            self._notify("chats")
        except Exception as exc:
            logger.error("[PRIVATE_CHAT] Fetching chats for %s failed: %s", user_id, exc)
            self.error = FETCH_CHATS_ERROR_MESSAGE
            self._notify("error")
        finally:
            self.is_loading = False

    async def get_or_create_private_chat(self, user_id: str, other_user_id: str) -> str:
        """Chat id for the pair. Errors propagate to the caller."""
        return await with_network_retry(
            "get_or_create_private_chat",
            lambda: self._backend.get_or_create_private_chat(user_id, other_user_id),
        )

    def get_private_chat_by_id(self, chat_id: str) -> Optional[PrivateChatSummary]:
        return next((chat for chat in self.private_chats if chat.id == chat_id), None)

    def get_unread_count(self, chat_id: str) -> int:
        chat = self.get_private_chat_by_id(chat_id)
        return chat.unread_count if chat else 0

    def set_current_chat_id(self, chat_id: Optional[str]) -> None:
        self.current_chat_id = chat_id

    def clear_error(self) -> None:
        self.error = None

    # ------------------------------------------------------------------ #
    # Messages
    # ------------------------------------------------------------------ #

    def get_messages(self, chat_id: str) -> List[Message]:
        return list(self.private_messages.get(chat_id, ()))

    def _message_from_record(self, record: MessageRecord, author: Author) -> Message:
        return Message(
            id=record.id,
            conversation_id=record.conversation_id,
            text=decrypt_message(record.message),
            created_at=ensure_utc(record.created_at),
            author=author,
            kind="private",
            delivery_state=DeliveryState.SENT,
            is_read=record.is_read,
        )

    async def fetch_private_messages(self, chat_id: str, limit: int = 50, offset: int = 0) -> None:
        """
        Load a page, oldest first. Offset 0 replaces the list; later pages are
        older history and are prepended.
        """
        self.is_loading_messages = True
        self.error = None
        try:
            records = await with_network_retry(
                "fetch_private_messages",
                lambda: self._backend.fetch_private_messages(chat_id, limit=limit, offset=offset),
            )
        except Exception as exc:
            logger.error("[PRIVATE_CHAT] Fetching messages for %s failed: %s", chat_id, exc)
            self.error = FETCH_MESSAGES_ERROR_MESSAGE
            self._notify("error", chat_id)
            return
        finally:
            self.is_loading_messages = False

        page = sorted(
            (
                self._message_from_record(
                    record, record.author or Author(id=record.user_id, name=UNKNOWN_AUTHOR_NAME)
                )
                for record in records
            ),
            key=lambda message: message.created_at,
        )
        if offset == 0:
            self.private_messages[chat_id] = page
        else:
            self.private_messages[chat_id] = page + self.private_messages.get(chat_id, [])
        self._notify("messages", chat_id)

    def _find_by_temp_id(self, chat_id: str, temp_id: str) -> Optional[Message]:
        return next(
            (m for m in self.private_messages.get(chat_id, ()) if m.temp_id == temp_id),
            None,
        )

    def _remove(self, chat_id: str, message: Message) -> None:
        bucket = self.private_messages.get(chat_id, [])
        for index, candidate in enumerate(bucket):
            if candidate is message:
                del bucket[index]
                return

    async def send_private_message(
        self,
        chat_id: str,
        sender_id: str,
        text: str,
        sender: Optional[Author] = None,
    ) -> Message:
        """
        Append an optimistic placeholder and send it.

        Backend failures do not raise: the placeholder is marked ``failed``
        and ``error`` is set. Returns the placeholder.
        """
        body = text.strip()
        if not body:
            raise ValidationException("Message cannot be empty", code="EMPTY_MESSAGE")
        if len(body) > settings.message_max_length:
            raise ValidationException(
                f"Message exceeds {settings.message_max_length} characters",
                code="MESSAGE_TOO_LONG",
            )

        self.is_sending_message = True
        self.error = None

        temp_id = generate_temp_id(self._clock)
        placeholder = Message(
            id=temp_id,
            conversation_id=chat_id,
            text=body,
            created_at=ms_to_datetime(self._clock()),
            author=sender or Author(id=sender_id, name=PLACEHOLDER_AUTHOR_NAME),
            kind="private",
            delivery_state=DeliveryState.SENDING,
            temp_id=temp_id,
            is_read=True,
        )
        self.private_messages.setdefault(chat_id, []).append(placeholder)
        self._notify("messages", chat_id)

        try:
            record = await with_network_retry(
                "send_private_message",
                lambda: self._backend.send_private_message(chat_id, sender_id, body),
            )
        except Exception as exc:
            logger.error(
                "[PRIVATE_CHAT] Sending message failed",
                extra={"chat_id": chat_id, "sender_id": sender_id, "temp_id": temp_id, "error": str(exc)},
            )
            placeholder.delivery_state = DeliveryState.FAILED
            self.error = SEND_ERROR_MESSAGE
            self._notify("error", chat_id)
            return placeholder
        finally:
            self.is_sending_message = False

        placeholder.delivery_state = DeliveryState.SENT
        if any(m.id == record.id for m in self.private_messages.get(chat_id, ())):
            # The echo was applied before the send returned.
            self._remove(chat_id, placeholder)
        self._notify("messages", chat_id)
        return placeholder

    async def retry_failed_message(self, chat_id: str, temp_id: str) -> Optional[Message]:
        """Resend a ``failed`` placeholder. Returns the new placeholder, or None if not found."""
        failed = self._find_by_temp_id(chat_id, temp_id)
        if failed is None or failed.delivery_state != DeliveryState.FAILED:
            return None
        self._remove(chat_id, failed)
        sender = failed.author if failed.author.name != PLACEHOLDER_AUTHOR_NAME else None
        return await self.send_private_message(chat_id, failed.author.id, failed.text, sender)

    async def mark_messages_as_read(self, chat_id: str, user_id: str) -> None:
        try:
            await with_network_retry(
                "mark_private_messages_read",
                lambda: self._backend.mark_private_messages_read(chat_id, user_id),
            )
        except Exception as exc:
            logger.error("[PRIVATE_CHAT] Marking %s read failed: %s", chat_id, exc)
            return

        for message in self.private_messages.get(chat_id, ()):
            if message.author.id != user_id:
                message.is_read = True
        chat = self.get_private_chat_by_id(chat_id)
        if chat is not None:
            chat.unread_count = 0
        self._notify("messages", chat_id)

    # ------------------------------------------------------------------ #
    # Realtime
    # ------------------------------------------------------------------ #

    async def handle_private_message_insert(self, record: MessageRecord) -> Optional[Message]:
        """
        Apply a realtime insert: drop duplicates, replace a matching sent
        placeholder in place, otherwise append.
        """
        chat_id = record.conversation_id
        if any(m.id == record.id for m in self.private_messages.get(chat_id, ())):
            return None

        author = record.author
        if author is None:
            try:
                author = await self._backend.get_author(record.user_id)
            except Exception as exc:
                logger.warning("[PRIVATE_CHAT] Sender lookup failed for %s: %s", record.user_id, exc)
                author = None
        if author is None:
            author = Author(id=record.user_id, name=UNKNOWN_AUTHOR_NAME)

        message = self._message_from_record(record, author)

        # State may have changed while the lookup awaited.
        bucket = self.private_messages.setdefault(chat_id, [])
        if any(m.id == record.id for m in bucket):
            return None
        for index, candidate in enumerate(bucket):
            if (
                candidate.temp_id is not None
                and candidate.author.id == record.user_id
                and candidate.text == message.text
                and candidate.delivery_state == DeliveryState.SENT
            ):
                bucket[index] = message
                break
        else:
            bucket.append(message)

        self._notify("messages", chat_id)
        return message

    async def subscribe_to_private_chat(self, chat_id: str) -> None:
        """Open ``private:{chat_id}`` once; a channel that errors is released so the next call reopens it."""
        if chat_id in self._channels:
            return

        handle: Optional[ChannelHandle] = None
        failed = False

        async def on_event(raw: RawEvent) -> None:
            await self._handle_raw_event(chat_id, raw)

        def on_status(status: ChannelStatus, error: Optional[BaseException] = None) -> None:
            nonlocal failed
            if status == ChannelStatus.SUBSCRIBED:
                logger.debug("[PRIVATE_CHAT] Subscribed to %s", chat_id)
            elif status in (ChannelStatus.CHANNEL_ERROR, ChannelStatus.TIMED_OUT):
                logger.warning("[PRIVATE_CHAT] Subscription %s reported %s: %s", chat_id, status.value, error)
                failed = True
                if handle is not None and self._channels.get(chat_id) is handle:
                    del self._channels[chat_id]
                    self._spawn(self._close_handle(handle))

        handle = await self._transport.open_channel(private_channel(chat_id), on_event, on_status)
        if failed:
            await self._close_handle(handle)
            return
        self._channels[chat_id] = handle

    async def _handle_raw_event(self, chat_id: str, raw: RawEvent) -> None:
        try:
            event = decode_event(raw)
        except ValidationException as exc:
            logger.warning("[PRIVATE_CHAT] Dropping invalid event on %s: %s", chat_id, exc.message)
            return
        if isinstance(event, MessageInserted):
            await self.handle_private_message_insert(event.record)

    async def unsubscribe_from_private_chat(self, chat_id: str) -> None:
        handle = self._channels.pop(chat_id, None)
        if handle is not None:
            await handle.close()

    def is_subscribed(self, chat_id: str) -> bool:
        return chat_id in self._channels

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _close_handle(self, handle: ChannelHandle) -> None:
        try:
            await handle.close()
        except Exception as exc:
            logger.debug("[PRIVATE_CHAT] Closing %s failed: %s", handle.channel, exc)

    async def close(self) -> None:
        for chat_id in list(self._channels):
            await self.unsubscribe_from_private_chat(chat_id)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
