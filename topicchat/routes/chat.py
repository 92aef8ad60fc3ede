# topicchat/routes/chat.py
"""
Chat routes - API v1

Versioned chat endpoints under /api/v1/chat.
All persistence delegated to ChatService; bodies are encrypted on the way in
and decrypted on the way out here, at the HTTP edge.

Endpoints:
    GET  /topics/{topic_id}/messages          - Latest page, oldest first
    POST /topics/{topic_id}/messages          - Send a topic message
    GET  /users/{user_id}/topics              - Participating topic ids
    GET  /users/{user_id}/private-chats       - Private chat list
    POST /private-chats                       - Get or create a private chat
    GET  /private-chats/{chat_id}/messages    - Private message page
    POST /private-chats/{chat_id}/messages    - Send a private message
    POST /private-chats/{chat_id}/read        - Mark the other side's messages read
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.crypto import decrypt_message, encrypt_message
from ..core.exceptions import DomainException
from ..database import get_db
from ..domain.chat import Author, PrivateChatSummary
from ..schemas.chat import (
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
from ..services.chat_service import ChatService
from ..services.messaging import (
    MessageRecord,
    publish_private_message_inserted,
    publish_topic_message_inserted,
)

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["chat-v1"])


def get_chat_service(db: Session = Depends(get_db)) -> ChatService:
    """Get chat service instance."""
    return ChatService(db)


def _author_response(author: Author) -> AuthorResponse:
    return AuthorResponse(id=author.id, name=author.name, avatar=author.avatar, email=author.email)


def _message_response(record: MessageRecord) -> ChatMessageResponse:
    return ChatMessageResponse(
        id=record.id,
        conversation_id=record.conversation_id,
        user_id=record.user_id,
        text=decrypt_message(record.message),
        created_at=record.created_at,
        is_read=record.is_read,
        author=_author_response(record.author) if record.author else None,
    )


def _chat_response(chat: PrivateChatSummary) -> PrivateChatResponse:
    return PrivateChatResponse(
        id=chat.id,
        other_user=_author_response(chat.other_user),
        last_message=decrypt_message(chat.last_message) if chat.last_message else None,
        last_message_at=chat.last_message_at,
        unread_count=chat.unread_count,
        created_at=chat.created_at,
    )


# ============================================================================
# Topic chat
# ============================================================================


@router.get("/topics/{topic_id}/messages", response_model=MessageListResponse)
def get_topic_messages(
    topic_id: str,
    limit: int = Query(settings.messages_page_size, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: ChatService = Depends(get_chat_service),
) -> MessageListResponse:
    """
    Get the newest page of topic messages, returned oldest first.
    """
    records = service.get_topic_messages(topic_id, limit=limit, offset=offset)
    return MessageListResponse(
        messages=[_message_response(record) for record in records],
        limit=limit,
        offset=offset,
    )


@router.post(
    "/topics/{topic_id}/messages",
    response_model=ChatMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_topic_message(
    topic_id: str,
    request: SendTopicMessageRequest,
    service: ChatService = Depends(get_chat_service),
) -> ChatMessageResponse:
    """
    Send a message to a topic.

    The body is stored encrypted; subscribers of ``topic:{topic_id}`` receive
    a message_inserted event after commit.
    """
    try:
        record = await asyncio.to_thread(
            service.send_topic_message,
            topic_id,
            request.user_id,
            encrypt_message(request.message),
        )
    except DomainException as e:
        raise e.to_http_exception()

    await publish_topic_message_inserted(record)
    return _message_response(record)


@router.get("/users/{user_id}/topics", response_model=UserTopicsResponse)
def get_user_topics(
    user_id: str,
    service: ChatService = Depends(get_chat_service),
) -> UserTopicsResponse:
    return UserTopicsResponse(topic_ids=service.get_participating_topic_ids(user_id))


# ============================================================================
# Private chat
# ============================================================================


@router.get("/users/{user_id}/private-chats", response_model=PrivateChatListResponse)
def get_private_chats(
    user_id: str,
    service: ChatService = Depends(get_chat_service),
) -> PrivateChatListResponse:
    chats = service.list_private_chats(user_id)
    return PrivateChatListResponse(chats=[_chat_response(chat) for chat in chats])


@router.post("/private-chats", response_model=PrivateChatIdResponse)
def get_or_create_private_chat(
    request: CreatePrivateChatRequest,
    service: ChatService = Depends(get_chat_service),
) -> PrivateChatIdResponse:
    """
    Get the private chat for a user pair, creating it if needed.
    """
    try:
        chat_id = service.get_or_create_private_chat(request.user_id, request.other_user_id)
    except DomainException as e:
        raise e.to_http_exception()
    return PrivateChatIdResponse(chat_id=chat_id)


@router.get("/private-chats/{chat_id}/messages", response_model=MessageListResponse)
def get_private_messages(
    chat_id: str,
    limit: int = Query(settings.messages_page_size, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: ChatService = Depends(get_chat_service),
) -> MessageListResponse:
    records = service.get_private_messages(chat_id, limit=limit, offset=offset)
    return MessageListResponse(
        messages=[_message_response(record) for record in records],
        limit=limit,
        offset=offset,
    )


@router.post(
    "/private-chats/{chat_id}/messages",
    response_model=ChatMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_private_message(
    chat_id: str,
    request: SendPrivateMessageRequest,
    service: ChatService = Depends(get_chat_service),
) -> ChatMessageResponse:
    """
    Send a private message. Private bodies are stored as sent.
    """
    try:
        record = await asyncio.to_thread(
            service.send_private_message, chat_id, request.sender_id, request.message
        )
    except DomainException as e:
        raise e.to_http_exception()

    await publish_private_message_inserted(record)
    return _message_response(record)


@router.post("/private-chats/{chat_id}/read", response_model=MarkReadResponse)
def mark_private_chat_read(
    chat_id: str,
    request: MarkPrivateChatReadRequest,
    service: ChatService = Depends(get_chat_service),
) -> MarkReadResponse:
    updated = service.mark_private_messages_read(chat_id, request.user_id)
    return MarkReadResponse(success=True, updated=updated)
