# topicchat/repositories/chat_message_repository.py
"""
Chat Message Repository.

Topic message reads and writes. Bodies are stored and returned exactly as
given; encryption happens above this layer.
"""

from datetime import datetime
from typing import Dict, List

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.chat_message import ChatMessage
from .base_repository import BaseRepository


class ChatMessageRepository(BaseRepository[ChatMessage]):
    def __init__(self, db: Session):
        super().__init__(db, ChatMessage)

    def get_topic_messages(self, topic_id: str, limit: int = 50, offset: int = 0) -> List[ChatMessage]:
        """
        Newest ``limit`` messages (skipping ``offset``), returned oldest first.
        """
        rows = (
            self.db.query(ChatMessage)
            .filter(ChatMessage.topic_id == topic_id)
            .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        rows.reverse()
        return rows

    def update_body(self, message_id: str, body: str) -> bool:
        updated = (
            self.db.query(ChatMessage)
            .filter(ChatMessage.id == message_id)
            .update({ChatMessage.message: body})
        )
        return bool(updated)

    def count_unread_since(self, topic_id: str, user_id: str, since: datetime) -> int:
        """Messages by other users posted after ``since``."""
        return (
            self.db.query(func.count(ChatMessage.id))
            .filter(
                ChatMessage.topic_id == topic_id,
                ChatMessage.user_id != user_id,
                ChatMessage.created_at > since,
            )
            .scalar()
            or 0
        )

    def count_unread_for_topics(self, since_by_topic: Dict[str, datetime], user_id: str) -> Dict[str, int]:
        return {
            topic_id: self.count_unread_since(topic_id, user_id, since)
            for topic_id, since in since_by_topic.items()
        }

    def get_batch_with_prefix(self, prefix: str, limit: int, after_id: str = "") -> List[ChatMessage]:
        """Rows whose body starts with ``prefix``, in id order, for batch migrations."""
        return (
            self.db.query(ChatMessage)
            .filter(ChatMessage.message.startswith(prefix, autoescape=True), ChatMessage.id > after_id)
            .order_by(ChatMessage.id.asc())
            .limit(limit)
            .all()
        )
