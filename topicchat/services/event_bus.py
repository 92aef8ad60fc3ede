# topicchat/services/event_bus.py
"""
In-process publish/subscribe for cross-store notifications.

Handlers are plain callables invoked synchronously in registration order.
A failing handler is logged and does not stop the others. Emitting an event
from inside one of its own handlers is skipped, as is nesting deeper than
``MAX_EMISSION_DEPTH`` distinct events.
"""

from __future__ import annotations

import asyncio
from enum import Enum
import logging
from typing import Any, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]

MAX_EMISSION_DEPTH = 10
DEFAULT_DEBOUNCE_SECONDS = 0.3


class EventName(str, Enum):
    MESSAGE_SENT = "chat:message_sent"
    TOPIC_JOINED = "chat:topic_joined"


class EventBus:
    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = {}
        self._debounced: Dict[str, asyncio.TimerHandle] = {}
        self._emitting: Set[str] = set()

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler``; returns a function that removes it again."""
        key = _key(event)
        handlers = self._handlers.setdefault(key, [])
        if handler not in handlers:
            handlers.append(handler)

        def unsubscribe() -> None:
            current = self._handlers.get(key)
            if current is None or handler not in current:
                return
            current.remove(handler)
            if not current:
                del self._handlers[key]
                self._cancel_debounced(key)

        return unsubscribe

    def off(self, event: str) -> None:
        key = _key(event)
        self._handlers.pop(key, None)
        self._cancel_debounced(key)

    def emit(self, event: str, payload: Any = None) -> None:
        key = _key(event)
        if not self._may_emit(key):
            return
        self._dispatch(key, payload)

    def emit_debounced(
        self,
        event: str,
        payload: Any = None,
        delay: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        """Emit after ``delay`` seconds; a newer call replaces a pending one."""
        key = _key(event)
        if not self._may_emit(key):
            return
        self._cancel_debounced(key)
        loop = asyncio.get_running_loop()
        self._debounced[key] = loop.call_later(delay, self._fire_debounced, key, payload)

    def _fire_debounced(self, key: str, payload: Any) -> None:
        self._debounced.pop(key, None)
        self._dispatch(key, payload)

    def _may_emit(self, key: str) -> bool:
        if key in self._emitting:
            logger.warning("[EVENT_BUS] Circular emission of %s skipped", key)
            return False
        if len(self._emitting) >= MAX_EMISSION_DEPTH:
            logger.warning("[EVENT_BUS] Emission depth limit reached for %s", key)
            return False
        return True

    def _dispatch(self, key: str, payload: Any) -> None:
        handlers = list(self._handlers.get(key, ()))
        if not handlers:
            return
        self._emitting.add(key)
        try:
            for handler in handlers:
                try:
                    handler(payload)
                except Exception:
                    logger.exception("[EVENT_BUS] Handler for %s failed", key)
        finally:
            self._emitting.discard(key)

    def _cancel_debounced(self, key: str) -> None:
        pending: Optional[asyncio.TimerHandle] = self._debounced.pop(key, None)
        if pending is not None:
            pending.cancel()

    def clear(self) -> None:
        for pending in self._debounced.values():
            pending.cancel()
        self._debounced.clear()
        self._handlers.clear()
        self._emitting.clear()

    def get_debug_info(self) -> Dict[str, Any]:
        return {
            "active_events": list(self._handlers),
            "debounced_events": list(self._debounced),
            "emitting": list(self._emitting),
            "total_listeners": sum(len(h) for h in self._handlers.values()),
        }


def _key(event: str) -> str:
    return event.value if isinstance(event, EventName) else str(event)


event_bus = EventBus()
