# topicchat/models/user.py
"""
User model.

Only the fields chat needs to render an author: nickname, avatar and email.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String
import ulid

from ..database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    nickname = Column(String(100), nullable=False)
    email = Column(String(255), nullable=True, unique=True)
    avatar_url = Column(String(500), nullable=True)
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, nickname={self.nickname})>"
