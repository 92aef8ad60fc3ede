# topicchat/models/chat_message.py
"""
Topic chat message model.

``message`` holds the stored body: AES-GCM ``v2:`` ciphertext for new rows,
older formats or plaintext for rows written before encryption.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import relationship
import ulid

from ..database import Base


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    topic_id = Column(String(26), ForeignKey("topics.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    author = relationship("User", foreign_keys=[user_id], lazy="joined")

    __table_args__ = (Index("idx_chat_messages_topic_created", "topic_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<ChatMessage(id={self.id}, topic={self.topic_id}, user={self.user_id})>"
