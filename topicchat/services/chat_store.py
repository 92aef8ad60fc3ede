# topicchat/services/chat_store.py
"""
Observable state for topic conversations.

The store is the single owner of per-conversation state: ordered message
lists with an id index, typing and presence entries, unread counters and
last-read timestamps, reactions, search results and the aggregated
connection status. Inbound realtime events reach it through the connection
manager and are routed by ``MessageRouter``; UI code reads through the
``get_*`` queries and listens via ``subscribe``.

Typing entries expire after ``typing_ttl_ms`` and presence entries after
``presence_ttl_ms``. Both are filtered (and pruned) lazily on read.
"""

from __future__ import annotations

import asyncio
from bisect import bisect_right
from datetime import datetime
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from topicchat.core.config import settings
from topicchat.core.crypto import decrypt_message, encrypt_message, needs_upgrade, upgrade_encryption
from topicchat.core.exceptions import ValidationException
from topicchat.core.local_storage import KeyValueStorage, last_read_key, open_local_storage
from topicchat.core.retry import is_network_error, with_database_retry, with_network_retry
from topicchat.domain.chat import UNKNOWN_AUTHOR_NAME, Author, Message, PresenceUser
from topicchat.services.chat_backend import ChatBackend
from topicchat.services.event_bus import EventBus, EventName, event_bus as default_event_bus
from topicchat.services.messaging.connection_manager import AggregateStatus, RealtimeConnectionManager
from topicchat.services.messaging.events import (
    EventType,
    MessageInserted,
    MessageRecord,
    PresenceJoin,
    PresenceLeave,
    PresenceSync,
    RealtimeEvent,
    StopTyping,
    Typing,
    build_presence_event,
    build_stop_typing_event,
    build_typing_event,
)
from topicchat.services.messaging.message_router import MessageRouter
from topicchat.services.messaging.transport import BroadcastRealtimeTransport
from topicchat.utils.time_utils import (
    Clock,
    datetime_to_ms,
    ensure_utc,
    ms_to_datetime,
    now_ms,
    one_year_before,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

NETWORK_ERROR_MESSAGE = "Please check your network connection"
SEND_ERROR_MESSAGE = "Failed to send message"
FETCH_ERROR_MESSAGE = "Failed to load messages"

ChangeListener = Callable[[str, Optional[str]], None]
SoundPlayer = Callable[[], Awaitable[None]]


def _created_at_key(message: Message) -> datetime:
    return message.created_at


class ChatStore:
    def __init__(
        self,
        backend: ChatBackend,
        connection_manager: Optional[RealtimeConnectionManager] = None,
        *,
        storage: Optional[KeyValueStorage] = None,
        events: Optional[EventBus] = None,
        sound_player: Optional[SoundPlayer] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._backend = backend
        self._clock = clock or now_ms
        self._storage: KeyValueStorage = storage if storage is not None else open_local_storage()
        self._events = events if events is not None else default_event_bus
        self._sound_player = sound_player
        self._connection = connection_manager or RealtimeConnectionManager(
            BroadcastRealtimeTransport(),
            self._discover_topics,
            clock=self._clock,
        )
        self._router = MessageRouter(backend.get_author, self.schedule_encryption_upgrade)

        self.messages: Dict[str, List[Message]] = {}
        self._message_ids: Dict[str, Set[str]] = {}
        self.current_topic_id: Optional[str] = None
        self.current_user_id: Optional[str] = None
        self.is_loading = False
        self.is_sending = False
        self.error: Optional[str] = None

        self.typing_users: Dict[str, Dict[str, PresenceUser]] = {}
        self.online_users: Dict[str, Dict[str, PresenceUser]] = {}
        self.unread_counts: Dict[str, int] = {}
        self.last_read_timestamps: Dict[str, datetime] = {}
        self.message_reactions: Dict[str, Dict[str, List[str]]] = {}
        self.sound_enabled = settings.notification_sound_enabled
        self.quoted_message: Optional[Message] = None
        self.search_query = ""
        self.search_results: List[Message] = []
        self.connection_status = AggregateStatus.DISCONNECTED

        self._listeners: List[ChangeListener] = []
        self._connection_unsubscribers: List[Callable[[], None]] = []
        self._tasks: Set[asyncio.Task[Any]] = set()

    @property
    def connection_manager(self) -> RealtimeConnectionManager:
        return self._connection

    # ------------------------------------------------------------------ #
    # Observation
    # ------------------------------------------------------------------ #

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register ``listener(change, conversation_id)``; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, change: str, conversation_id: Optional[str] = None) -> None:
        for listener in list(self._listeners):
            try:
                listener(change, conversation_id)
            except Exception:
                logger.exception("[CHAT_STORE] Change listener failed for %s", change)

    # ------------------------------------------------------------------ #
    # Message list bookkeeping
    # ------------------------------------------------------------------ #

    def has_message(self, conversation_id: str, message_id: str) -> bool:
        return message_id in self._message_ids.get(conversation_id, ())

    def _insert_ordered(self, message: Message) -> bool:
        conversation_id = message.conversation_id
        ids = self._message_ids.setdefault(conversation_id, set())
        if message.id in ids:
            return False
        bucket = self.messages.setdefault(conversation_id, [])
        bucket.insert(bisect_right(bucket, message.created_at, key=_created_at_key), message)
        ids.add(message.id)
        return True

    def insert_routed_message(self, message: Message) -> bool:
        inserted = self._insert_ordered(message)
        if inserted:
            self._notify("messages", message.conversation_id)
        return inserted

    def increment_unread(self, conversation_id: str) -> None:
        self.unread_counts[conversation_id] = self.unread_counts.get(conversation_id, 0) + 1
        self._notify("unread", conversation_id)

    def get_messages_for_topic(self, topic_id: str) -> List[Message]:
        return list(self.messages.get(topic_id, ()))

    def get_message_count(self, topic_id: str) -> int:
        return len(self.messages.get(topic_id, ()))

    def clear_messages(self, topic_id: str) -> None:
        self.messages.pop(topic_id, None)
        self._message_ids.pop(topic_id, None)
        self._notify("messages", topic_id)

    def clear_all_messages(self) -> None:
        self.messages.clear()
        self._message_ids.clear()
        self._notify("messages")

    def clear_error(self) -> None:
        self.error = None

    # ------------------------------------------------------------------ #
    # Fetch / send
    # ------------------------------------------------------------------ #

    def _message_from_record(self, record: MessageRecord) -> Message:
        author = record.author or Author(id=record.user_id, name=UNKNOWN_AUTHOR_NAME)
        return Message(
            id=record.id,
            conversation_id=record.conversation_id,
            text=decrypt_message(record.message),
            created_at=ensure_utc(record.created_at),
            author=author,
            kind="topic",
            is_read=record.is_read,
        )

    async def fetch_messages(self, topic_id: str) -> None:
        """
        Load the latest page for ``topic_id`` and merge it into local state.

        Failures set ``error`` and leave existing messages untouched.
        """
        self.is_loading = True
        self.error = None

        try:
            await self._connection.add_current_topic_id(topic_id)
        except Exception as exc:
            logger.warning("[CHAT_STORE] Could not prioritize subscription for %s: %s", topic_id, exc)

        try:
            records = await with_network_retry(
                "fetch_messages",
                lambda: self._backend.fetch_topic_messages(topic_id, limit=settings.messages_page_size),
            )
        except Exception as exc:
            logger.error("[CHAT_STORE] Fetching messages for %s failed: %s", topic_id, exc)
            self.error = NETWORK_ERROR_MESSAGE if is_network_error(exc) else FETCH_ERROR_MESSAGE
            self.is_loading = False
            self._notify("error", topic_id)
            return

        fetched = sorted((self._message_from_record(r) for r in records), key=_created_at_key)
        fetched_ids = {message.id for message in fetched}
        # Keep realtime arrivals that landed while the page was loading.
        kept = [m for m in self.messages.get(topic_id, ()) if m.id not in fetched_ids]
        self.messages[topic_id] = fetched
        self._message_ids[topic_id] = fetched_ids
        for message in kept:
            self._insert_ordered(message)

        for record in records:
            if needs_upgrade(record.message):
                self.schedule_encryption_upgrade(record.id, record.message)

        self.is_loading = False
        self._notify("messages", topic_id)

    async def send_message(self, topic_id: str, text: str, user_id: str) -> Message:
        """
        Encrypt and persist ``text``; append it once the backend confirms.

        Raises:
            ValidationException: empty or over-long text
            Exception: the backend failure after retries; ``error`` is set
        """
        if not text or not text.strip():
            raise ValidationException("Message cannot be empty", code="EMPTY_MESSAGE")
        if len(text) > settings.message_max_length:
            raise ValidationException(
                f"Message exceeds {settings.message_max_length} characters",
                code="MESSAGE_TOO_LONG",
            )

        self.is_sending = True
        self.error = None
        try:
            stored = encrypt_message(text)
            record = await with_database_retry(
                "send_message",
                lambda: self._backend.insert_topic_message(topic_id, user_id, stored),
            )
        except Exception as exc:
            logger.error(
                "[CHAT_STORE] Sending message failed",
                extra={"topic_id": topic_id, "user_id": user_id, "error": str(exc)},
            )
            self.error = NETWORK_ERROR_MESSAGE if is_network_error(exc) else SEND_ERROR_MESSAGE
            self.is_sending = False
            self._notify("error", topic_id)
            raise

        message = Message(
            id=record.id,
            conversation_id=topic_id,
            text=text,
            created_at=ensure_utc(record.created_at),
            author=record.author or Author(id=user_id, name=UNKNOWN_AUTHOR_NAME),
            kind="topic",
        )
        self.insert_routed_message(message)
        self.is_sending = False

        self._events.emit(
            EventName.MESSAGE_SENT,
            {"topic_id": topic_id, "user_id": user_id, "message_time": message.created_at.isoformat()},
        )
        return message

    # ------------------------------------------------------------------ #
    # Encryption upgrades
    # ------------------------------------------------------------------ #

    def schedule_encryption_upgrade(self, message_id: str, stored: str) -> None:
        """Rewrite a deprecated-format body with the current format in the background."""
        self._spawn(self._upgrade_message(message_id, stored))

    async def _upgrade_message(self, message_id: str, stored: str) -> None:
        await asyncio.sleep(settings.encryption_upgrade_delay_ms / 1000.0)
        upgraded = upgrade_encryption(stored)
        if upgraded == stored:
            return
        try:
            await with_database_retry(
                "upgrade_encryption",
                lambda: self._backend.update_message_body(message_id, upgraded),
            )
            logger.info("[CHAT_STORE] Upgraded message encryption", extra={"message_id": message_id})
        except Exception as exc:
            logger.error("[CHAT_STORE] Encryption upgrade failed for %s: %s", message_id, exc)

    async def wait_for_pending_upgrades(self) -> None:
        """Block until every scheduled encryption upgrade has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------ #
    # Realtime
    # ------------------------------------------------------------------ #

    async def _discover_topics(self, user_id: str) -> List[str]:
        return await with_database_retry(
            "discover_topics",
            lambda: self._backend.get_participating_topic_ids(user_id),
        )

    def _attach_connection_listeners(self) -> None:
        if self._connection_unsubscribers:
            return
        self._connection_unsubscribers = [
            self._connection.add_status_listener(self._on_connection_status),
            self._connection.add_event_listener(self.handle_realtime_event),
        ]

    def _detach_connection_listeners(self) -> None:
        for unsubscribe in self._connection_unsubscribers:
            unsubscribe()
        self._connection_unsubscribers = []

    def _on_connection_status(self, status: AggregateStatus) -> None:
        self.connection_status = status
        self._notify("connection")

    async def initialize_connection(self, user_id: str) -> None:
        self.current_user_id = user_id
        self._attach_connection_listeners()
        try:
            await self._connection.initialize(user_id)
        except Exception as exc:
            logger.error("[CHAT_STORE] Realtime initialization failed: %s", exc)
            self.connection_status = AggregateStatus.ERROR
            self._notify("connection")
            return
        self.connection_status = self._connection.get_status()

    async def disconnect_connection(self) -> None:
        await self._connection.disconnect_all()
        self._detach_connection_listeners()
        self.connection_status = AggregateStatus.DISCONNECTED
        self._notify("connection")

    async def force_reconnect(self) -> None:
        try:
            await self._connection.force_reconnect()
        except Exception as exc:
            logger.error("[CHAT_STORE] Forced reconnect failed: %s", exc)

    async def update_user_topics(self, user_id: str) -> None:
        try:
            await self._connection.update_topics(user_id)
        except Exception as exc:
            logger.error("[CHAT_STORE] Updating realtime topics failed: %s", exc)

    async def handle_realtime_event(self, topic_id: str, event: RealtimeEvent) -> None:
        if isinstance(event, MessageInserted):
            await self._router.route(event.record, self)
        elif isinstance(event, Typing):
            if event.user_id != self.current_user_id:
                self.typing_users.setdefault(topic_id, {})[event.user_id] = PresenceUser(
                    event.user_id, event.user_name, self._clock()
                )
                self._notify("typing", topic_id)
        elif isinstance(event, StopTyping):
            self._remove_entry(self.typing_users, topic_id, event.user_id)
            self._notify("typing", topic_id)
        elif isinstance(event, PresenceJoin):
            self.online_users.setdefault(topic_id, {})[event.user_id] = PresenceUser(
                event.user_id, event.user_name, self._clock()
            )
            self._notify("presence", topic_id)
        elif isinstance(event, PresenceLeave):
            self._remove_entry(self.online_users, topic_id, event.user_id)
            self._notify("presence", topic_id)
        elif isinstance(event, PresenceSync):
            now = self._clock()
            self.online_users[topic_id] = {
                member.user_id: PresenceUser(member.user_id, member.user_name, now)
                for member in event.users
            }
            self._notify("presence", topic_id)

    async def set_current_topic(self, topic_id: Optional[str]) -> None:
        """Make ``topic_id`` the open conversation; entering a new one emits ``chat:topic_joined``."""
        previous, self.current_topic_id = self.current_topic_id, topic_id
        try:
            await self._connection.set_current_topic(topic_id)
        except Exception as exc:
            logger.warning("[CHAT_STORE] Could not switch current subscription: %s", exc)
        self._notify("current_topic", topic_id)
        if topic_id and topic_id != previous:
            self._events.emit(
                EventName.TOPIC_JOINED,
                {"topic_id": topic_id, "user_id": self.current_user_id},
            )

    def is_connected(self) -> bool:
        return self._connection.is_connected()

    def get_connection_status(self) -> AggregateStatus:
        return self._connection.get_status()

    def get_connection_stats(self) -> Dict[str, Any]:
        return self._connection.get_stats()

    def get_connection_debug_info(self) -> Dict[str, Any]:
        return self._connection.get_debug_info()

    # ------------------------------------------------------------------ #
    # Typing and presence
    # ------------------------------------------------------------------ #

    @staticmethod
    def _remove_entry(table: Dict[str, Dict[str, PresenceUser]], topic_id: str, user_id: str) -> None:
        entries = table.get(topic_id)
        if not entries:
            return
        entries.pop(user_id, None)
        if not entries:
            del table[topic_id]

    def _live_entries(
        self, table: Dict[str, Dict[str, PresenceUser]], topic_id: str, ttl_ms: float
    ) -> List[PresenceUser]:
        entries = table.get(topic_id)
        if not entries:
            return []
        now = self._clock()
        for user_id in [uid for uid, entry in entries.items() if now - entry.timestamp >= ttl_ms]:
            del entries[user_id]
        if not entries:
            del table[topic_id]
            return []
        return list(entries.values())

    def get_typing_users(self, topic_id: str) -> List[PresenceUser]:
        return self._live_entries(self.typing_users, topic_id, settings.typing_ttl_ms)

    def get_online_users(self, topic_id: str) -> List[PresenceUser]:
        return self._live_entries(self.online_users, topic_id, settings.presence_ttl_ms)

    async def send_typing_indicator(self, topic_id: str, user_id: str, user_name: str) -> bool:
        if not self._connection.is_connected():
            return False
        sent = await self._connection.send_broadcast(
            topic_id, build_typing_event(user_id, user_name, self._clock())
        )
        if not sent:
            logger.debug("[CHAT_STORE] Typing indicator not delivered for %s", topic_id)
        return sent

    async def stop_typing_indicator(self, topic_id: str, user_id: str) -> bool:
        sent = False
        if self._connection.is_connected():
            sent = await self._connection.send_broadcast(topic_id, build_stop_typing_event(user_id))
        self._remove_entry(self.typing_users, topic_id, user_id)
        self._notify("typing", topic_id)
        return sent

    async def update_user_presence(self, topic_id: str, user_id: str, user_name: str) -> bool:
        sent = await self._connection.send_broadcast(
            topic_id, build_presence_event(EventType.PRESENCE_JOIN, user_id, user_name)
        )
        self.online_users.setdefault(topic_id, {})[user_id] = PresenceUser(user_id, user_name, self._clock())
        self._notify("presence", topic_id)
        return sent

    async def remove_user_presence(self, topic_id: str, user_id: str, user_name: str = "") -> bool:
        sent = await self._connection.send_broadcast(
            topic_id, build_presence_event(EventType.PRESENCE_LEAVE, user_id, user_name)
        )
        self._remove_entry(self.online_users, topic_id, user_id)
        self._notify("presence", topic_id)
        return sent

    # ------------------------------------------------------------------ #
    # Unread counts
    # ------------------------------------------------------------------ #

    def get_unread_count(self, topic_id: str) -> int:
        return self.unread_counts.get(topic_id, 0)

    def mark_as_read(self, topic_id: str) -> bool:
        """
        Reset unread for ``topic_id`` and record the read time.

        A repeat call within ``mark_read_debounce_ms`` of the previous one is
        ignored; returns False in that case.
        """
        now = self._clock()
        previous = self.last_read_timestamps.get(topic_id)
        if previous is not None and now - datetime_to_ms(previous) < settings.mark_read_debounce_ms:
            return False

        read_at = ms_to_datetime(now)
        self.last_read_timestamps[topic_id] = read_at
        self.unread_counts[topic_id] = 0
        try:
            self._storage.set_item(last_read_key(topic_id), read_at.isoformat())
        except OSError as exc:
            logger.warning("[CHAT_STORE] Could not persist last read time for %s: %s", topic_id, exc)
        self._notify("unread", topic_id)
        return True

    def _stored_last_read(self, topic_id: str) -> Optional[datetime]:
        raw = self._storage.get_item(last_read_key(topic_id))
        if not raw:
            return None
        try:
            return parse_timestamp(raw)
        except ValueError:
            logger.warning("[CHAT_STORE] Ignoring malformed last read time for %s: %r", topic_id, raw)
            return None

    async def refresh_unread_counts(self) -> None:
        """Recompute unread counts from locally held messages."""
        for topic_id, messages in self.messages.items():
            last_read = self.last_read_timestamps.get(topic_id)
            self.unread_counts[topic_id] = sum(
                1
                for message in messages
                if message.author.id != self.current_user_id
                and (last_read is None or message.created_at > last_read)
            )
        self._notify("unread")

    async def fetch_unread_counts_for_topics(self, topic_ids: List[str], user_id: str) -> Dict[str, int]:
        """
        Ask the backend for unread counts since each topic's last read time.

        Last read comes from memory, then local storage, then one year ago.
        Topics whose count cannot be fetched keep their current value.
        """
        fetched: Dict[str, int] = {}
        for topic_id in topic_ids:
            since = self.last_read_timestamps.get(topic_id)
            if since is None:
                since = self._stored_last_read(topic_id)
                if since is not None:
                    self.last_read_timestamps[topic_id] = since
            if since is None:
                since = one_year_before(ms_to_datetime(self._clock()))

            try:
                fetched[topic_id] = await with_database_retry(
                    "count_unread",
                    lambda topic_id=topic_id, since=since: self._backend.count_unread_since(
                        topic_id, user_id, since
                    ),
                )
            except Exception as exc:
                logger.warning("[CHAT_STORE] Unread count for %s unavailable: %s", topic_id, exc)

        self.unread_counts.update(fetched)
        self._notify("unread")
        return fetched

    # ------------------------------------------------------------------ #
    # Reactions, quoting, search, sound
    # ------------------------------------------------------------------ #

    def add_reaction(self, message_id: str, emoji: str, user_id: str) -> None:
        users = self.message_reactions.setdefault(message_id, {}).setdefault(emoji, [])
        if user_id not in users:
            users.append(user_id)
        self._notify("reactions")

    def remove_reaction(self, message_id: str, emoji: str, user_id: str) -> None:
        reactions = self.message_reactions.get(message_id)
        if not reactions or emoji not in reactions:
            return
        reactions[emoji] = [uid for uid in reactions[emoji] if uid != user_id]
        if not reactions[emoji]:
            del reactions[emoji]
        if not reactions:
            del self.message_reactions[message_id]
        self._notify("reactions")

    def get_message_reactions(self, message_id: str) -> Dict[str, List[str]]:
        return {emoji: list(users) for emoji, users in self.message_reactions.get(message_id, {}).items()}

    def set_quoted_message(self, message: Optional[Message]) -> None:
        self.quoted_message = message
        self._notify("quote")

    def search_messages(self, topic_id: str, query: str) -> List[Message]:
        """Case-insensitive substring match on body or author name; blank query clears."""
        if not query.strip():
            self.clear_search()
            return []
        needle = query.lower()
        self.search_query = query
        self.search_results = [
            message
            for message in self.messages.get(topic_id, ())
            if needle in message.text.lower() or needle in message.author.name.lower()
        ]
        self._notify("search", topic_id)
        return list(self.search_results)

    def clear_search(self) -> None:
        self.search_query = ""
        self.search_results = []
        self._notify("search")

    def set_sound_enabled(self, enabled: bool) -> None:
        self.sound_enabled = enabled

    async def play_notification_sound(self) -> None:
        if not self.sound_enabled or self._sound_player is None:
            return
        try:
            await self._sound_player()
        except Exception as exc:
            logger.warning("[CHAT_STORE] Notification sound failed: %s", exc)

    # ------------------------------------------------------------------ #
    # Shutdown
    # ------------------------------------------------------------------ #

    async def close(self) -> None:
        """Cancel background upgrades and tear down realtime subscriptions."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        await self.disconnect_connection()
