# topicchat/services/chat_service.py
"""
Chat persistence service.

Synchronous, one instance per session. Message bodies pass through
untouched: callers encrypt before ``send_topic_message`` and decrypt after
reads. Results are returned as ``MessageRecord``/domain objects so nothing
outside this module holds ORM instances.
"""

from datetime import datetime
import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import ForbiddenException, NotFoundException, RepositoryException, ValidationException
from ..domain.chat import Author, PrivateChatSummary
from ..models.chat_message import ChatMessage
from ..models.private_chat import PrivateMessage
from ..models.user import User
from ..repositories.chat_message_repository import ChatMessageRepository
from ..repositories.private_chat_repository import PrivateChatRepository
from ..repositories.topic_repository import TopicRepository
from ..repositories.user_repository import UserRepository
from ..utils.time_utils import ensure_utc, utc_now
from .base import BaseService
from .messaging.events import MessageRecord

logger = logging.getLogger(__name__)


def author_from_user(user: User) -> Author:
    return Author(
        id=str(user.id),
        name=user.nickname,
        avatar_url=user.avatar_url,
        email=user.email,
    )


def record_from_chat_message(row: ChatMessage) -> MessageRecord:
    return MessageRecord(
        id=str(row.id),
        conversation_id=str(row.topic_id),
        user_id=str(row.user_id),
        message=row.message,
        created_at=ensure_utc(row.created_at),
        author=author_from_user(row.author) if row.author is not None else None,
    )


def record_from_private_message(row: PrivateMessage) -> MessageRecord:
    return MessageRecord(
        id=str(row.id),
        conversation_id=str(row.chat_id),
        user_id=str(row.sender_id),
        message=row.message,
        created_at=ensure_utc(row.created_at),
        is_read=bool(row.is_read),
        author=author_from_user(row.sender) if row.sender is not None else None,
    )


class ChatService(BaseService):
    def __init__(self, db: Session):
        super().__init__(db)
        self.message_repository = ChatMessageRepository(db)
        self.topic_repository = TopicRepository(db)
        self.user_repository = UserRepository(db)
        self.private_chat_repository = PrivateChatRepository(db)

    # ------------------------------------------------------------------ #
    # Users / topics
    # ------------------------------------------------------------------ #

    def get_author(self, user_id: str) -> Optional[Author]:
        user = self.user_repository.get_by_id(user_id)
        return author_from_user(user) if user else None

    def get_participating_topic_ids(self, user_id: str) -> List[str]:
        return self.topic_repository.get_participating_topic_ids(user_id)

    def _require_user(self, user_id: str) -> User:
        user = self.user_repository.get_by_id(user_id)
        if not user:
            raise NotFoundException(f"User {user_id} not found", code="USER_NOT_FOUND")
        return user

    # ------------------------------------------------------------------ #
    # Topic messages
    # ------------------------------------------------------------------ #

    def get_topic_messages(self, topic_id: str, limit: int = 50, offset: int = 0) -> List[MessageRecord]:
        rows = self.message_repository.get_topic_messages(topic_id, limit=limit, offset=offset)
        return [record_from_chat_message(row) for row in rows]

    @BaseService.measure_operation("send_topic_message")
    def send_topic_message(self, topic_id: str, user_id: str, body: str) -> MessageRecord:
        """
        Insert a topic message and mark the sender as an active participant.

        Raises:
            NotFoundException: unknown topic or user
        """
        if not self.topic_repository.exists(id=topic_id):
            raise NotFoundException(f"Topic {topic_id} not found", code="TOPIC_NOT_FOUND")
        self._require_user(user_id)

        with self.transaction():
            row = self.message_repository.create(topic_id=topic_id, user_id=user_id, message=body)
            self.topic_repository.upsert_participant(topic_id, user_id)
            self.topic_repository.touch(topic_id, row.created_at or utc_now())

        self.logger.info(
            "[CHAT] Topic message stored",
            extra={"topic_id": topic_id, "user_id": user_id, "message_id": row.id},
        )
        return record_from_chat_message(row)

    def update_message_body(self, message_id: str, body: str) -> bool:
        with self.transaction():
            return self.message_repository.update_body(message_id, body)

    def count_unread_since(self, topic_id: str, user_id: str, since: datetime) -> int:
        return self.message_repository.count_unread_since(topic_id, user_id, since)

    # ------------------------------------------------------------------ #
    # Private chats
    # ------------------------------------------------------------------ #

    def list_private_chats(self, user_id: str) -> List[PrivateChatSummary]:
        chats = self.private_chat_repository.list_for_user(user_id)
        chat_ids = [str(chat.id) for chat in chats]
        last_messages = self.private_chat_repository.get_last_messages(chat_ids)
        unread = self.private_chat_repository.get_unread_counts(chat_ids, user_id)
        users = self.user_repository.get_many(chat.get_other_user_id(user_id) for chat in chats)

        summaries: List[PrivateChatSummary] = []
        for chat in chats:
            other_id = chat.get_other_user_id(user_id)
            other = users.get(other_id)
            last = last_messages.get(str(chat.id))
            summaries.append(
                PrivateChatSummary(
                    id=str(chat.id),
                    other_user=author_from_user(other) if other else Author(id=other_id, name="Unknown"),
                    last_message=last.message if last else None,
                    last_message_at=ensure_utc(chat.last_message_at) if chat.last_message_at else None,
                    unread_count=unread.get(str(chat.id), 0),
                    created_at=ensure_utc(chat.created_at) if chat.created_at else None,
                )
            )
        return summaries

    def get_or_create_private_chat(self, user_id: str, other_user_id: str) -> str:
        """
        Return the chat id for the unordered pair, creating the chat if needed.

        Raises:
            ValidationException: both ids are the same user
            NotFoundException: either user does not exist
        """
        if user_id == other_user_id:
            raise ValidationException("Cannot start a private chat with yourself", code="SELF_CHAT")

        existing = self.private_chat_repository.find_by_pair(user_id, other_user_id)
        if existing:
            return str(existing.id)

        self._require_user(user_id)
        self._require_user(other_user_id)
        try:
            with self.transaction():
                chat = self.private_chat_repository.create_for_pair(user_id, other_user_id)
        except RepositoryException:
            # Lost a create race; the winner's row satisfies the request.
            existing = self.private_chat_repository.find_by_pair(user_id, other_user_id)
            if existing is None:
                raise
            return str(existing.id)
        return str(chat.id)

    def _require_participant(self, chat_id: str, user_id: str) -> None:
        chat = self.private_chat_repository.get_by_id(chat_id)
        if not chat:
            raise NotFoundException(f"Private chat {chat_id} not found", code="CHAT_NOT_FOUND")
        if not chat.is_participant(user_id):
            raise ForbiddenException("Not a participant of this chat", code="NOT_PARTICIPANT")

    def get_private_messages(self, chat_id: str, limit: int = 50, offset: int = 0) -> List[MessageRecord]:
        rows = self.private_chat_repository.get_messages(chat_id, limit=limit, offset=offset)
        return [record_from_private_message(row) for row in rows]

    @BaseService.measure_operation("send_private_message")
    def send_private_message(self, chat_id: str, sender_id: str, body: str) -> MessageRecord:
        """
        Raises:
            NotFoundException: unknown chat
            ForbiddenException: sender is not part of the chat
        """
        self._require_participant(chat_id, sender_id)
        with self.transaction():
            row = self.private_chat_repository.add_message(chat_id, sender_id, body)
            self.private_chat_repository.touch(chat_id, row.created_at or utc_now())
        return record_from_private_message(row)

    def mark_private_messages_read(self, chat_id: str, user_id: str) -> int:
        with self.transaction():
            return self.private_chat_repository.mark_read(chat_id, user_id)

    def unread_counts_for_chats(self, chat_ids: List[str], user_id: str) -> Dict[str, int]:
        return self.private_chat_repository.get_unread_counts(chat_ids, user_id)
