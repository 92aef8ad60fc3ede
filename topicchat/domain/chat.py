"""Chat domain records shared by the stores, router and services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal, Optional
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict

PLACEHOLDER_AUTHOR_NAME = "Sending..."
UNKNOWN_AUTHOR_NAME = "Unknown"


class DeliveryState(str, Enum):
    """Delivery state of a locally originated message."""

    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class Author(BaseModel):
    """Display metadata of a message author."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    avatar_url: Optional[str] = None
    email: Optional[str] = None

    @property
    def avatar(self) -> str:
        if self.avatar_url:
            return self.avatar_url
        return f"https://ui-avatars.com/api/?name={quote(self.name)}&background=random"


@dataclass
class Message:
    """A decrypted message as held in a store."""

    id: str
    conversation_id: str
    text: str
    created_at: datetime
    author: Author
    kind: Literal["topic", "private"] = "topic"
    delivery_state: DeliveryState = DeliveryState.SENT
    temp_id: Optional[str] = None
    is_read: bool = False

    @property
    def is_pending(self) -> bool:
        return self.temp_id is not None and self.id == self.temp_id


@dataclass
class PrivateChatSummary:
    """One row of a user's private chat list."""

    id: str
    other_user: Author
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    unread_count: int = 0
    created_at: Optional[datetime] = None


@dataclass
class PresenceUser:
    user_id: str
    name: str
    timestamp: float = field(default=0.0)
