# topicchat/core/broadcast.py
"""
Process-wide Broadcaster for conversation channels.

Every ``topic:{id}`` and ``private:{id}`` subscription in the process shares
one backend connection: Redis pub/sub when ``REDIS_URL`` is set, the
in-memory backend otherwise (local runs and tests).
"""
import logging
from typing import Optional

from broadcaster import Broadcast

from .config import settings

logger = logging.getLogger(__name__)

MEMORY_BACKEND_URL = "memory://"

_broadcast: Optional[Broadcast] = None


def _display_url(url: str) -> str:
    # Drop credentials before logging.
    scheme, _, rest = url.partition("://")
    return f"{scheme}://{rest.rsplit('@', 1)[-1]}"


def get_broadcast() -> Broadcast:
    """
    Raises:
        RuntimeError: ``connect_broadcast`` has not run (or the app shut down)
    """
    if _broadcast is None:
        raise RuntimeError("Realtime broadcaster is not connected")
    return _broadcast


def is_broadcast_initialized() -> bool:
    return _broadcast is not None


async def connect_broadcast(url: Optional[str] = None) -> Broadcast:
    """Connect once during startup; later calls return the live instance."""
    global _broadcast

    if _broadcast is not None:
        return _broadcast

    backend_url = url or settings.redis_url or MEMORY_BACKEND_URL
    instance = Broadcast(backend_url)
    await instance.connect()
    _broadcast = instance
    logger.info("[BROADCAST] Connected to %s", _display_url(backend_url))
    return instance


async def disconnect_broadcast() -> None:
    global _broadcast

    instance, _broadcast = _broadcast, None
    if instance is None:
        return
    await instance.disconnect()
    logger.info("[BROADCAST] Disconnected")
