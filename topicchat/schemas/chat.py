# topicchat/schemas/chat.py
"""
Request and response schemas for the chat API.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import Field, field_validator

from ..core.config import settings
from ._strict_base import StrictModel, StrictRequestModel


class AuthorResponse(StrictModel):
    id: str
    name: str
    avatar: str
    email: Optional[str] = None


class ChatMessageResponse(StrictModel):
    id: str
    conversation_id: str
    user_id: str
    text: str = Field(..., description="Decrypted message body")
    created_at: datetime
    is_read: bool = False
    author: Optional[AuthorResponse] = None


class MessageListResponse(StrictModel):
    messages: List[ChatMessageResponse]
    limit: int
    offset: int


def _check_body(value: str) -> str:
    if not value.strip():
        raise ValueError("Message cannot be blank")
    if len(value) > settings.message_max_length:
        raise ValueError(f"Message exceeds {settings.message_max_length} characters")
    return value


class SendTopicMessageRequest(StrictRequestModel):
    user_id: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)

    @field_validator("message")
    @classmethod
    def validate_message(cls, value: str) -> str:
        return _check_body(value)


class SendPrivateMessageRequest(StrictRequestModel):
    sender_id: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)

    @field_validator("message")
    @classmethod
    def validate_message(cls, value: str) -> str:
        return _check_body(value).strip()


class CreatePrivateChatRequest(StrictRequestModel):
    user_id: str = Field(..., min_length=1)
    other_user_id: str = Field(..., min_length=1)


class MarkPrivateChatReadRequest(StrictRequestModel):
    user_id: str = Field(..., min_length=1)


class PrivateChatResponse(StrictModel):
    id: str
    other_user: AuthorResponse
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    unread_count: int = 0
    created_at: Optional[datetime] = None


class PrivateChatListResponse(StrictModel):
    chats: List[PrivateChatResponse]


class PrivateChatIdResponse(StrictModel):
    chat_id: str


class MarkReadResponse(StrictModel):
    success: bool = True
    updated: int = 0


class UserTopicsResponse(StrictModel):
    topic_ids: List[str]


# Ensure models are fully built for FastAPI dependency resolution in tests.
SendTopicMessageRequest.model_rebuild()
SendPrivateMessageRequest.model_rebuild()
