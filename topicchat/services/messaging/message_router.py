# topicchat/services/messaging/message_router.py
"""
Turns change-feed message records into store messages.

Pipeline for one record: dedupe -> resolve author -> decrypt -> schedule
an encryption upgrade for deprecated formats -> insert -> unread/sound when
the conversation is not on screen.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Protocol

from topicchat.core.crypto import decrypt_message, needs_upgrade
from topicchat.core.retry import with_network_retry
from topicchat.domain.chat import Author, Message
from topicchat.services.messaging.events import MessageRecord
from topicchat.utils.time_utils import ensure_utc

logger = logging.getLogger(__name__)

AuthorLookup = Callable[[str], Awaitable[Optional[Author]]]
UpgradeScheduler = Callable[[str, str], None]


class MessageSink(Protocol):
    """What the router needs from a chat store."""

    @property
    def current_topic_id(self) -> Optional[str]:
        ...

    def has_message(self, conversation_id: str, message_id: str) -> bool:
        ...

    def insert_routed_message(self, message: Message) -> bool:
        """Insert in order; False when the id was already present."""
        ...

    def increment_unread(self, conversation_id: str) -> None:
        ...

    async def play_notification_sound(self) -> None:
        ...


class MessageRouter:
    def __init__(
        self,
        author_lookup: AuthorLookup,
        upgrade_scheduler: Optional[UpgradeScheduler] = None,
    ) -> None:
        self._author_lookup = author_lookup
        self._upgrade_scheduler = upgrade_scheduler

    async def _resolve_author(self, record: MessageRecord) -> Optional[Author]:
        if record.author is not None:
            return record.author
        return await with_network_retry(
            "resolve_author",
            lambda: self._author_lookup(record.user_id),
        )

    async def route(self, record: MessageRecord, sink: MessageSink) -> Optional[Message]:
        """
        Deliver ``record`` to ``sink``.

        Returns the inserted message, or None when the record was a duplicate
        or its author could not be resolved.
        """
        conversation_id = record.conversation_id
        if sink.has_message(conversation_id, record.id):
            logger.debug("[ROUTER] Duplicate message %s ignored", record.id)
            return None

        try:
            author = await self._resolve_author(record)
        except Exception as exc:
            logger.warning(
                "[ROUTER] Author lookup failed, dropping message",
                extra={"message_id": record.id, "user_id": record.user_id, "error": str(exc)},
            )
            return None
        if author is None:
            logger.warning(
                "[ROUTER] Unknown author, dropping message",
                extra={"message_id": record.id, "user_id": record.user_id},
            )
            return None

        text = decrypt_message(record.message)
        if self._upgrade_scheduler is not None and needs_upgrade(record.message):
            self._upgrade_scheduler(record.id, record.message)

        message = Message(
            id=record.id,
            conversation_id=conversation_id,
            text=text,
            created_at=ensure_utc(record.created_at),
            author=author,
            kind="topic",
            is_read=record.is_read,
        )

        # The lookup awaited; another delivery of the same id may have won.
        if not sink.insert_routed_message(message):
            return None

        if sink.current_topic_id != conversation_id:
            sink.increment_unread(conversation_id)
            await sink.play_notification_sound()

        return message
