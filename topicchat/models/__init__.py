# topicchat/models/__init__.py
"""
SQLAlchemy models for topicchat.
"""

from .chat_message import ChatMessage
from .private_chat import PrivateChat, PrivateMessage
from .topic import Topic, TopicParticipant
from .user import User

__all__ = [
    "User",
    "Topic",
    "TopicParticipant",
    "ChatMessage",
    "PrivateChat",
    "PrivateMessage",
]
