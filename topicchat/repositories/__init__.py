# topicchat/repositories/__init__.py
"""
Repository layer for topicchat.

Repositories encapsulate data access; services own transactions.
"""

from .base_repository import BaseRepository
from .chat_message_repository import ChatMessageRepository
from .private_chat_repository import PrivateChatRepository
from .topic_repository import TopicRepository
from .user_repository import UserRepository

__all__ = [
    "BaseRepository",
    "ChatMessageRepository",
    "PrivateChatRepository",
    "TopicRepository",
    "UserRepository",
]
