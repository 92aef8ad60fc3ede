# topicchat/services/messaging/transport.py
"""
Realtime transport abstraction.

The connection manager never talks to a pub/sub client directly. It opens
channels through a ``RealtimeTransport`` and reacts to two callbacks:

- ``on_event(raw)``: one raw wire event (str or dict), awaited in arrival order
- ``on_status(status, error)``: SUBSCRIBED / CHANNEL_ERROR / TIMED_OUT / CLOSED

``BroadcastRealtimeTransport`` implements this over the shared Broadcaster
(Redis pub/sub in deployed environments). Tests inject a fake.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from enum import Enum
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from broadcaster import Broadcast

from topicchat.core.broadcast import get_broadcast
from topicchat.core.exceptions import NetworkError

logger = logging.getLogger(__name__)

RawEvent = Union[str, bytes, Dict[str, Any]]
EventCallback = Callable[[RawEvent], Awaitable[None]]
StatusCallback = Callable[["ChannelStatus", Optional[BaseException]], None]


class ChannelStatus(str, Enum):
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


def topic_channel(topic_id: str) -> str:
    return f"topic:{topic_id}"


def private_channel(chat_id: str) -> str:
    return f"private:{chat_id}"


class ChannelHandle(ABC):
    """An open (or opening) subscription to one channel."""

    def __init__(self, channel: str) -> None:
        self.channel = channel

    @abstractmethod
    async def send(self, event: Dict[str, Any]) -> None:
        """Broadcast ``event`` to every subscriber of the channel."""

    @abstractmethod
    async def close(self) -> None:
        """Tear the subscription down. Safe to call more than once."""


class RealtimeTransport(ABC):
    @abstractmethod
    async def open_channel(
        self,
        channel: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> ChannelHandle:
        """
        Start subscribing to ``channel``.

        Returns immediately; the outcome is reported through ``on_status``.
        """


class BroadcastChannelHandle(ChannelHandle):
    def __init__(self, broadcast: Broadcast, channel: str) -> None:
        super().__init__(channel)
        self._broadcast = broadcast
        self._task: Optional[asyncio.Task[None]] = None
        self._closed = False

    async def send(self, event: Dict[str, Any]) -> None:
        if self._closed:
            raise NetworkError(f"Channel {self.channel} is closed", code="CHANNEL_CLOSED")
        await self._broadcast.publish(channel=self.channel, message=json.dumps(event))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


class BroadcastRealtimeTransport(RealtimeTransport):
    """
    Conversation channels over the process-wide Broadcaster.

    Each channel gets a reader task. A subscribe that does not complete within
    ``subscribe_timeout`` seconds reports TIMED_OUT; any reader failure reports
    CHANNEL_ERROR; the subscription ending on its own reports CLOSED.
    """

    def __init__(
        self,
        broadcast: Optional[Broadcast] = None,
        *,
        subscribe_timeout: float = 10.0,
    ) -> None:
        self._broadcast = broadcast
        self._subscribe_timeout = subscribe_timeout

    def _resolve_broadcast(self) -> Broadcast:
        if self._broadcast is not None:
            return self._broadcast
        return get_broadcast()

    async def open_channel(
        self,
        channel: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> ChannelHandle:
        try:
            broadcast = self._resolve_broadcast()
        except RuntimeError as exc:
            raise NetworkError("Realtime broadcaster unavailable", code="BROADCAST_UNAVAILABLE") from exc

        handle = BroadcastChannelHandle(broadcast, channel)
        handle._task = asyncio.create_task(
            self._read_channel(broadcast, channel, on_event, on_status),
            name=f"realtime-reader:{channel}",
        )
        return handle

    async def _read_channel(
        self,
        broadcast: Broadcast,
        channel: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> None:
        subscription = broadcast.subscribe(channel=channel)
        try:
            subscriber = await asyncio.wait_for(subscription.__aenter__(), self._subscribe_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("[REALTIME] Subscribe to %s timed out", channel)
            on_status(ChannelStatus.TIMED_OUT, exc)
            return
        except asyncio.CancelledError:
            on_status(ChannelStatus.CLOSED, None)
            raise
        except Exception as exc:
            logger.error("[REALTIME] Subscribe to %s failed: %s", channel, exc)
            on_status(ChannelStatus.CHANNEL_ERROR, exc)
            return

        on_status(ChannelStatus.SUBSCRIBED, None)
        error: Optional[BaseException] = None
        try:
            async for event in subscriber:
                await on_event(event.message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("[REALTIME] Reader for %s failed: %s", channel, exc, exc_info=True)
            error = exc
        finally:
            try:
                await subscription.__aexit__(None, None, None)
            except Exception as exc:
                logger.debug("[REALTIME] Unsubscribe from %s failed: %s", channel, exc)
            if error is not None:
                on_status(ChannelStatus.CHANNEL_ERROR, error)
            else:
                on_status(ChannelStatus.CLOSED, None)
