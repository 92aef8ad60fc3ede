# topicchat/models/private_chat.py
"""
Private 1:1 chat models.

One ``private_chats`` row per unordered user pair; ``user1_id`` always holds
the lexicographically smaller id so the pair is unique regardless of who
started the chat. Private bodies are stored as sent.
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
import ulid

from ..database import Base


class PrivateChat(Base):
    __tablename__ = "private_chats"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    user1_id = Column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    user2_id = Column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    last_message_at = Column(DateTime(timezone=True), nullable=True)

    user1 = relationship("User", foreign_keys=[user1_id])
    user2 = relationship("User", foreign_keys=[user2_id])
    messages = relationship(
        "PrivateMessage",
        back_populates="chat",
        order_by="PrivateMessage.created_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("user1_id", "user2_id", name="uq_private_chats_pair"),
        Index("idx_private_chats_last_message", "last_message_at"),
    )

    def get_other_user_id(self, current_user_id: str) -> str:
        if current_user_id == self.user1_id:
            return str(self.user2_id)
        return str(self.user1_id)

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.user1_id, self.user2_id)


class PrivateMessage(Base):
    __tablename__ = "private_messages"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    chat_id = Column(String(26), ForeignKey("private_chats.id", ondelete="CASCADE"), nullable=False)
    sender_id = Column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    chat = relationship("PrivateChat", back_populates="messages")
    sender = relationship("User", foreign_keys=[sender_id], lazy="joined")

    __table_args__ = (Index("idx_private_messages_chat_created", "chat_id", "created_at"),)
