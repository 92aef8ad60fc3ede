# topicchat/models/topic.py
"""
Topic and participation models.

A user participates in a topic if they created it or hold an active
``topic_participants`` row; posting a message upserts that row.
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import relationship
import ulid

from ..database import Base


class Topic(Base):
    __tablename__ = "topics"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    title = Column(String(200), nullable=False)
    created_by = Column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    last_activity_at = Column(DateTime(timezone=True), nullable=True)

    creator = relationship("User", foreign_keys=[created_by])
    participants = relationship(
        "TopicParticipant", back_populates="topic", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Topic(id={self.id}, title={self.title})>"


class TopicParticipant(Base):
    __tablename__ = "topic_participants"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    topic_id = Column(String(26), ForeignKey("topics.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    joined_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    topic = relationship("Topic", back_populates="participants")

    __table_args__ = (
        UniqueConstraint("topic_id", "user_id", name="uq_topic_participants_topic_user"),
        Index("idx_topic_participants_user", "user_id"),
    )
