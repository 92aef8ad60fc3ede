# topicchat/services/chat_backend.py
"""
Async persistence seam used by the chat stores.

``ChatBackend`` is what the stores and router depend on; tests substitute an
in-memory fake. ``SqlAlchemyChatBackend`` runs ``ChatService`` calls in a
worker thread with one session per call, then publishes committed messages
on their conversation channel.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
import logging
from typing import Callable, List, Optional, Protocol, TypeVar

from sqlalchemy.orm import Session

from ..domain.chat import Author, PrivateChatSummary
from .chat_service import ChatService
from .messaging.events import MessageRecord
from .messaging.publisher import publish_private_message_inserted, publish_topic_message_inserted

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChatBackend(Protocol):
    async def insert_topic_message(self, topic_id: str, user_id: str, body: str) -> MessageRecord:
        ...

    async def fetch_topic_messages(self, topic_id: str, limit: int = 50, offset: int = 0) -> List[MessageRecord]:
        ...

    async def update_message_body(self, message_id: str, body: str) -> bool:
        ...

    async def count_unread_since(self, topic_id: str, user_id: str, since: datetime) -> int:
        ...

    async def get_author(self, user_id: str) -> Optional[Author]:
        ...

    async def get_participating_topic_ids(self, user_id: str) -> List[str]:
        ...

    async def fetch_private_chats(self, user_id: str) -> List[PrivateChatSummary]:
        ...

    async def get_or_create_private_chat(self, user_id: str, other_user_id: str) -> str:
        ...

    async def fetch_private_messages(self, chat_id: str, limit: int = 50, offset: int = 0) -> List[MessageRecord]:
        ...

    async def send_private_message(self, chat_id: str, sender_id: str, body: str) -> MessageRecord:
        ...

    async def mark_private_messages_read(self, chat_id: str, user_id: str) -> int:
        ...


class SqlAlchemyChatBackend:
    """
    ``ChatBackend`` over the SQLAlchemy service layer.

    Sessions are synchronous; every call is wrapped in ``asyncio.to_thread()``
    so the event loop never blocks on the database.
    """

    def __init__(self, session_factory: Callable[[], Session], *, publish: bool = True) -> None:
        self._session_factory = session_factory
        self._publish = publish

    def _run_sync(self, func: Callable[[ChatService], T]) -> T:
        db = self._session_factory()
        try:
            return func(ChatService(db))
        finally:
            db.close()

    async def _run(self, func: Callable[[ChatService], T]) -> T:
        return await asyncio.to_thread(self._run_sync, func)

    async def insert_topic_message(self, topic_id: str, user_id: str, body: str) -> MessageRecord:
        record = await self._run(lambda svc: svc.send_topic_message(topic_id, user_id, body))
        if self._publish:
            await publish_topic_message_inserted(record)
        return record

    async def fetch_topic_messages(self, topic_id: str, limit: int = 50, offset: int = 0) -> List[MessageRecord]:
        return await self._run(lambda svc: svc.get_topic_messages(topic_id, limit=limit, offset=offset))

    async def update_message_body(self, message_id: str, body: str) -> bool:
        return await self._run(lambda svc: svc.update_message_body(message_id, body))

    async def count_unread_since(self, topic_id: str, user_id: str, since: datetime) -> int:
        return await self._run(lambda svc: svc.count_unread_since(topic_id, user_id, since))

    async def get_author(self, user_id: str) -> Optional[Author]:
        return await self._run(lambda svc: svc.get_author(user_id))

    async def get_participating_topic_ids(self, user_id: str) -> List[str]:
        return await self._run(lambda svc: svc.get_participating_topic_ids(user_id))

    async def fetch_private_chats(self, user_id: str) -> List[PrivateChatSummary]:
        return await self._run(lambda svc: svc.list_private_chats(user_id))

    async def get_or_create_private_chat(self, user_id: str, other_user_id: str) -> str:
        return await self._run(lambda svc: svc.get_or_create_private_chat(user_id, other_user_id))

    async def fetch_private_messages(self, chat_id: str, limit: int = 50, offset: int = 0) -> List[MessageRecord]:
        return await self._run(lambda svc: svc.get_private_messages(chat_id, limit=limit, offset=offset))

    async def send_private_message(self, chat_id: str, sender_id: str, body: str) -> MessageRecord:
        record = await self._run(lambda svc: svc.send_private_message(chat_id, sender_id, body))
        if self._publish:
            await publish_private_message_inserted(record)
        return record

    async def mark_private_messages_read(self, chat_id: str, user_id: str) -> int:
        return await self._run(lambda svc: svc.mark_private_messages_read(chat_id, user_id))
