# topicchat/schemas/__init__.py
"""Pydantic schemas for the chat API."""

from .chat import (
    AuthorResponse,
    ChatMessageResponse,
    CreatePrivateChatRequest,
    MarkPrivateChatReadRequest,
    MarkReadResponse,
    MessageListResponse,
    PrivateChatIdResponse,
    PrivateChatListResponse,
    PrivateChatResponse,
    SendPrivateMessageRequest,
    SendTopicMessageRequest,
    UserTopicsResponse,
)

__all__ = [
    "AuthorResponse",
    "ChatMessageResponse",
    "CreatePrivateChatRequest",
    "MarkPrivateChatReadRequest",
    "MarkReadResponse",
    "MessageListResponse",
    "PrivateChatIdResponse",
    "PrivateChatListResponse",
    "PrivateChatResponse",
    "SendPrivateMessageRequest",
    "SendTopicMessageRequest",
    "UserTopicsResponse",
]
