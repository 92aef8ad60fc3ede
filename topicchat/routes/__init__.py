# topicchat/routes/__init__.py
"""HTTP routes for topicchat."""

from .chat import router as chat_router

__all__ = ["chat_router"]
