# topicchat/repositories/private_chat_repository.py
"""
Private Chat Repository.

Pair lookup, chat listing with last message and unread counts, and private
message reads and writes.
"""

from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from ..models.private_chat import PrivateChat, PrivateMessage
from .base_repository import BaseRepository


def ordered_pair(user_a: str, user_b: str) -> Tuple[str, str]:
    return (user_a, user_b) if user_a <= user_b else (user_b, user_a)


class PrivateChatRepository(BaseRepository[PrivateChat]):
    def __init__(self, db: Session):
        super().__init__(db, PrivateChat)

    def find_by_pair(self, user_a: str, user_b: str) -> Optional[PrivateChat]:
        first, second = ordered_pair(user_a, user_b)
        return (
            self.db.query(PrivateChat)
            .filter(and_(PrivateChat.user1_id == first, PrivateChat.user2_id == second))
            .first()
        )

    def create_for_pair(self, user_a: str, user_b: str) -> PrivateChat:
        first, second = ordered_pair(user_a, user_b)
        return self.create(user1_id=first, user2_id=second)

    def list_for_user(self, user_id: str) -> List[PrivateChat]:
        return (
            self.db.query(PrivateChat)
            .filter(or_(PrivateChat.user1_id == user_id, PrivateChat.user2_id == user_id))
            .order_by(PrivateChat.last_message_at.desc().nullslast(), PrivateChat.created_at.desc())
            .all()
        )

    def get_last_messages(self, chat_ids: List[str]) -> Dict[str, PrivateMessage]:
        if not chat_ids:
            return {}
        latest = (
            self.db.query(
                PrivateMessage.chat_id.label("chat_id"),
                func.max(PrivateMessage.created_at).label("created_at"),
            )
            .filter(PrivateMessage.chat_id.in_(chat_ids))
            .group_by(PrivateMessage.chat_id)
            .subquery()
        )
        rows = (
            self.db.query(PrivateMessage)
            .join(
                latest,
                and_(
                    PrivateMessage.chat_id == latest.c.chat_id,
                    PrivateMessage.created_at == latest.c.created_at,
                ),
            )
            .all()
        )
        return {str(row.chat_id): row for row in rows}

    def get_unread_counts(self, chat_ids: List[str], user_id: str) -> Dict[str, int]:
        if not chat_ids:
            return {}
        rows = (
            self.db.query(PrivateMessage.chat_id, func.count(PrivateMessage.id))
            .filter(
                PrivateMessage.chat_id.in_(chat_ids),
                PrivateMessage.sender_id != user_id,
                PrivateMessage.is_read.is_(False),
            )
            .group_by(PrivateMessage.chat_id)
            .all()
        )
        return {str(chat_id): int(count) for chat_id, count in rows}

    def get_messages(self, chat_id: str, limit: int = 50, offset: int = 0) -> List[PrivateMessage]:
        """Newest ``limit`` messages (skipping ``offset``), returned oldest first."""
        rows = (
            self.db.query(PrivateMessage)
            .filter(PrivateMessage.chat_id == chat_id)
            .order_by(PrivateMessage.created_at.desc(), PrivateMessage.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        rows.reverse()
        return rows

    def add_message(self, chat_id: str, sender_id: str, body: str) -> PrivateMessage:
        message = PrivateMessage(chat_id=chat_id, sender_id=sender_id, message=body)
        self.db.add(message)
        self.db.flush()
        return message

    def touch(self, chat_id: str, when: datetime) -> None:
        self.db.query(PrivateChat).filter(PrivateChat.id == chat_id).update(
            {PrivateChat.last_message_at: when}, synchronize_session=False
        )

    def mark_read(self, chat_id: str, reader_id: str) -> int:
        """Mark messages from the other participant as read; returns rows changed."""
        return (
            self.db.query(PrivateMessage)
            .filter(
                PrivateMessage.chat_id == chat_id,
                PrivateMessage.sender_id != reader_id,
                PrivateMessage.is_read.is_(False),
            )
            .update({PrivateMessage.is_read: True})
        )
