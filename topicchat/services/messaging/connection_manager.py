# topicchat/services/messaging/connection_manager.py
"""
Bounded pool of per-conversation realtime subscriptions.

Each conversation the user cares about gets a ConnectionSlot:

    disconnected -> connecting -> connected
    connected -> error -> (scheduled reconnect) -> connecting
    connected -> disconnected            (explicit teardown)

Rules:
- At most ``max_active_connections`` slots occupy the active set at once.
- The current conversation holds MAX_PRIORITY and cannot be displaced by a
  lower-priority request. When the pool is full the lowest-priority slot
  (least recently active on ties, then oldest) is torn down, and the
  replacement opens after ``eviction_delay``.
- A failed slot reconnects after min(base * 2**attempts, max). At most one
  reconnect is pending per slot. After ``max_reconnect_attempts`` reconnects
  the slot stays in ``error`` and leaves the active set until it is
  activated again explicitly.

All background work (reconnect timers, eviction delays, health checks,
handle teardown) runs in tasks owned by the manager and is cancelled by
``disconnect_all``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from itertools import count
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from topicchat.core.config import settings
from topicchat.core.exceptions import ValidationException
from topicchat.services.messaging.events import (
    RealtimeEvent,
    build_ping_event,
    decode_event,
)
from topicchat.services.messaging.transport import (
    ChannelHandle,
    ChannelStatus,
    RawEvent,
    RealtimeTransport,
    topic_channel,
)
from topicchat.utils.time_utils import Clock, now_ms

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 1
MAX_PRIORITY = 10

TopicDiscovery = Callable[[str], Awaitable[List[str]]]
EventListener = Callable[[str, RealtimeEvent], Awaitable[None]]
StatusListener = Callable[["AggregateStatus"], None]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class AggregateStatus(str, Enum):
    """Overall status surfaced to the UI."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class ConnectionSlot:
    topic_id: str
    priority: int = DEFAULT_PRIORITY
    state: ConnectionState = ConnectionState.DISCONNECTED
    reconnect_attempts: int = 0
    handle: Optional[ChannelHandle] = None
    reconnect_task: Optional[asyncio.Task[None]] = None
    last_activity: float = 0.0
    order: int = 0
    # Reassigned on every open or release; callbacks carrying an older value are ignored.
    generation: int = 0

    @property
    def reconnect_pending(self) -> bool:
        return self.reconnect_task is not None and not self.reconnect_task.done()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topic_id": self.topic_id,
            "priority": self.priority,
            "state": self.state.value,
            "reconnect_attempts": self.reconnect_attempts,
            "reconnect_pending": self.reconnect_pending,
            "last_activity": self.last_activity,
        }


@dataclass
class ConnectionStats:
    total_connections: int = 0
    failed_connections: int = 0
    total_reconnects: int = 0
    evictions: int = 0
    last_connection_time: Optional[float] = None
    invalid_events: int = 0


class RealtimeConnectionManager:
    """Owns conversation subscriptions; never holds message content."""

    def __init__(
        self,
        transport: RealtimeTransport,
        discover_topics: Optional[TopicDiscovery] = None,
        *,
        max_active_connections: Optional[int] = None,
        reconnect_base_delay: Optional[float] = None,
        reconnect_max_delay: Optional[float] = None,
        max_reconnect_attempts: Optional[int] = None,
        eviction_delay: Optional[float] = None,
        health_check_interval: Optional[float] = None,
        channel_name: Callable[[str], str] = topic_channel,
        clock: Optional[Clock] = None,
    ) -> None:
        self._transport = transport
        self._discover_topics = discover_topics
        self._max_active = (
            max_active_connections
            if max_active_connections is not None
            else settings.max_active_connections
        )
        self._base_delay = (
            reconnect_base_delay
            if reconnect_base_delay is not None
            else settings.reconnect_base_delay_ms / 1000.0
        )
        self._max_delay = (
            reconnect_max_delay
            if reconnect_max_delay is not None
            else settings.reconnect_max_delay_ms / 1000.0
        )
        self._max_attempts = (
            max_reconnect_attempts
            if max_reconnect_attempts is not None
            else settings.max_reconnect_attempts
        )
        self._eviction_delay = (
            eviction_delay if eviction_delay is not None else settings.eviction_delay_ms / 1000.0
        )
        self._health_interval = (
            health_check_interval
            if health_check_interval is not None
            else settings.health_check_interval_seconds
        )
        self._channel_name = channel_name
        self._clock = clock or now_ms

        self._active: Dict[str, ConnectionSlot] = {}
        self._failed: Dict[str, ConnectionSlot] = {}
        self._order = count()
        self._generations = count(1)
        self._user_id: Optional[str] = None
        self._current_topic_id: Optional[str] = None
        self._paused = False
        self._status = AggregateStatus.DISCONNECTED
        self._stats = ConnectionStats()
        self._event_listeners: List[EventListener] = []
        self._status_listeners: List[StatusListener] = []
        self._background: Set[asyncio.Task[Any]] = set()
        self._health_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------ #
    # Properties / queries
    # ------------------------------------------------------------------ #

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def current_topic_id(self) -> Optional[str]:
        return self._current_topic_id

    @property
    def max_active_connections(self) -> int:
        return self._max_active

    @property
    def active_topic_ids(self) -> List[str]:
        return list(self._active)

    def get_slot(self, topic_id: str) -> Optional[ConnectionSlot]:
        return self._active.get(topic_id) or self._failed.get(topic_id)

    def get_connection_state(self, topic_id: str) -> ConnectionState:
        slot = self.get_slot(topic_id)
        return slot.state if slot else ConnectionState.DISCONNECTED

    def open_subscription_count(self) -> int:
        return sum(1 for slot in self._active.values() if slot.handle is not None)

    def get_status(self) -> AggregateStatus:
        return self._status

    def is_connected(self) -> bool:
        return self._status == AggregateStatus.CONNECTED

    def reconnect_delay(self, attempt: int) -> float:
        """Seconds to wait before reconnect number ``attempt + 1``."""
        return min(self._base_delay * (2**attempt), self._max_delay)

    # ------------------------------------------------------------------ #
    # Listeners
    # ------------------------------------------------------------------ #

    def add_event_listener(self, listener: EventListener) -> Callable[[], None]:
        self._event_listeners.append(listener)
        return lambda: self.remove_event_listener(listener)

    def remove_event_listener(self, listener: EventListener) -> None:
        if listener in self._event_listeners:
            self._event_listeners.remove(listener)

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        self._status_listeners.append(listener)
        return lambda: self.remove_status_listener(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        if listener in self._status_listeners:
            self._status_listeners.remove(listener)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def initialize(self, user_id: str) -> None:
        """
        Discover the user's conversations and open subscriptions up to capacity.

        The current conversation (if any) is opened first at MAX_PRIORITY.
        Discovery failures are logged; the current conversation is still opened.
        """
        if self._user_id is not None and self._user_id != user_id:
            await self.disconnect_all()

        self._user_id = user_id
        topic_ids = await self._discover(user_id)

        if self._current_topic_id:
            await self.subscribe_to_topic(self._current_topic_id, MAX_PRIORITY)

        opened = await self.subscribe_to_multiple_topics(topic_ids)
        logger.info(
            "[REALTIME] Initialized subscriptions",
            extra={
                "user_id": user_id,
                "discovered": len(topic_ids),
                "opened": opened,
                "active": len(self._active),
            },
        )
        self._refresh_status()

    async def update_topics(self, user_id: str) -> None:
        """Re-run discovery: open new conversations, release ones the user left."""
        if self._user_id != user_id:
            await self.initialize(user_id)
            return

        topic_ids = await self._discover(user_id)
        keep = set(topic_ids)
        if self._current_topic_id:
            keep.add(self._current_topic_id)
        await self.cleanup_unused_subscriptions(keep)
        await self.subscribe_to_multiple_topics(topic_ids)

    async def _discover(self, user_id: str) -> List[str]:
        if self._discover_topics is None:
            return []
        try:
            topic_ids = await self._discover_topics(user_id)
        except Exception as exc:
            logger.error("[REALTIME] Topic discovery failed for user %s: %s", user_id, exc)
            return []
        return list(dict.fromkeys(topic_ids))

    async def add_current_topic_id(self, topic_id: str) -> bool:
        """Promote ``topic_id`` to the current conversation (maximum priority)."""
        previous = self._current_topic_id
        self._current_topic_id = topic_id
        if previous and previous != topic_id:
            previous_slot = self._active.get(previous)
            if previous_slot is not None:
                previous_slot.priority = DEFAULT_PRIORITY
        return await self.subscribe_to_topic(topic_id, MAX_PRIORITY)

    async def set_current_topic(self, topic_id: Optional[str]) -> bool:
        if topic_id is None:
            previous_slot = self._active.get(self._current_topic_id or "")
            if previous_slot is not None:
                previous_slot.priority = DEFAULT_PRIORITY
            self._current_topic_id = None
            return False
        return await self.add_current_topic_id(topic_id)

    async def subscribe_to_topic(self, topic_id: str, priority: int = DEFAULT_PRIORITY) -> bool:
        """
        Ensure ``topic_id`` holds a slot at (at least) ``priority``.

        Returns True when the topic is (or is becoming) subscribed, False when
        the pool is full of equal-or-higher priority slots.
        """
        if not topic_id:
            return False

        slot = self._active.get(topic_id)
        if slot is not None:
            slot.priority = max(slot.priority, priority)
            if slot.state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING) or slot.reconnect_pending:
                return True
            slot.reconnect_attempts = 0
            await self._open(slot)
            return True

        if len(self._active) >= self._max_active:
            victim = self._select_eviction_candidate(priority, exclude=topic_id)
            if victim is None:
                logger.info(
                    "[REALTIME] Connection limit reached; %s not subscribed",
                    topic_id,
                    extra={"topic_id": topic_id, "priority": priority, "limit": self._max_active},
                )
                return False
            await self._evict_and_replace(victim, topic_id, priority)
            return True

        slot = self._new_slot(topic_id, priority)
        await self._open(slot)
        return True

    def _new_slot(self, topic_id: str, priority: int) -> ConnectionSlot:
        slot = self._failed.pop(topic_id, None) or ConnectionSlot(topic_id=topic_id)
        slot.priority = priority
        slot.reconnect_attempts = 0
        slot.order = next(self._order)
        slot.last_activity = self._clock()
        self._active[topic_id] = slot
        return slot

    def _select_eviction_candidate(self, priority: int, *, exclude: str) -> Optional[str]:
        candidates = [
            slot
            for slot in self._active.values()
            if slot.topic_id != exclude
            and slot.topic_id != self._current_topic_id
            and slot.priority < priority
        ]
        if not candidates:
            return None
        victim = min(candidates, key=lambda s: (s.priority, s.last_activity, s.order))
        return victim.topic_id

    async def _evict_and_replace(self, victim_id: str, topic_id: str, priority: int) -> None:
        logger.info(
            "[REALTIME] Evicting lower priority subscription",
            extra={"evicted": victim_id, "replacement": topic_id, "priority": priority},
        )
        self._stats.evictions += 1
        victim = self._active.pop(victim_id)
        self._cancel_reconnect(victim)
        self._invalidate(victim)
        victim.state = ConnectionState.DISCONNECTED
        old_handle, victim.handle = victim.handle, None

        # The replacement takes the freed slot before the first await.
        slot = self._new_slot(topic_id, priority)
        slot.state = ConnectionState.CONNECTING
        self._refresh_status()
        if old_handle is not None:
            await self._close_handle(old_handle)
        if self._eviction_delay > 0:
            await asyncio.sleep(self._eviction_delay)
        if self._active.get(topic_id) is not slot:
            return
        await self._open(slot)

    async def subscribe_to_multiple_topics(self, topic_ids: Iterable[str]) -> int:
        """Open default-priority subscriptions into free slots only. Returns how many opened."""
        opened = 0
        for topic_id in topic_ids:
            if topic_id in self._active:
                continue
            if len(self._active) >= self._max_active:
                break
            slot = self._new_slot(topic_id, DEFAULT_PRIORITY)
            await self._open(slot)
            opened += 1
        return opened

    async def unsubscribe_from_topic(self, topic_id: str) -> None:
        slot = self._active.pop(topic_id, None)
        if slot is None:
            slot = self._failed.pop(topic_id, None)
            if slot is None:
                return
        self._cancel_reconnect(slot)
        handle = slot.handle
        slot.handle = None
        self._invalidate(slot)
        slot.state = ConnectionState.DISCONNECTED
        if handle is not None:
            await self._close_handle(handle)
        logger.debug("[REALTIME] Unsubscribed from %s", topic_id)
        self._refresh_status()

    async def cleanup_unused_subscriptions(self, keep_topic_ids: Iterable[str]) -> List[str]:
        """Unsubscribe every slot not in ``keep_topic_ids``; the current topic is always kept."""
        keep = set(keep_topic_ids)
        if self._current_topic_id:
            keep.add(self._current_topic_id)
        removed = [topic_id for topic_id in list(self._active) if topic_id not in keep]
        for topic_id in removed:
            await self.unsubscribe_from_topic(topic_id)
        return removed

    async def cleanup_idle_connections(self, max_idle_seconds: Optional[float] = None) -> List[str]:
        limit_ms = (
            max_idle_seconds if max_idle_seconds is not None else settings.max_idle_time_seconds
        ) * 1000.0
        now = self._clock()
        idle = [
            slot.topic_id
            for slot in self._active.values()
            if slot.topic_id != self._current_topic_id and now - slot.last_activity > limit_ms
        ]
        for topic_id in idle:
            await self.unsubscribe_from_topic(topic_id)
        return idle

    async def disconnect_all(self) -> None:
        """Cancel every timer, close every subscription, forget all bookkeeping."""
        await self.stop_health_checks()
        slots = list(self._active.values()) + list(self._failed.values())
        self._active.clear()
        self._failed.clear()

        handles: List[ChannelHandle] = []
        for slot in slots:
            self._cancel_reconnect(slot)
            self._invalidate(slot)
            slot.state = ConnectionState.DISCONNECTED
            if slot.handle is not None:
                handles.append(slot.handle)
                slot.handle = None

        background = list(self._background)
        for task in background:
            task.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)
        self._background.clear()

        for handle in handles:
            await self._close_handle(handle)

        self._paused = False
        self._refresh_status()
        logger.info("[REALTIME] Disconnected all subscriptions (%d)", len(slots))

    async def force_reconnect(self) -> None:
        """Tear everything down and initialize again for the same user and topic."""
        user_id = self._user_id
        current = self._current_topic_id
        await self.disconnect_all()
        self._current_topic_id = current
        if user_id:
            self._user_id = None
            await self.initialize(user_id)

    async def pause(self) -> None:
        """Close subscriptions while keeping the active set (app backgrounded)."""
        self._paused = True
        for slot in list(self._active.values()):
            if self._active.get(slot.topic_id) is not slot:
                continue
            self._cancel_reconnect(slot)
            self._invalidate(slot)
            slot.state = ConnectionState.DISCONNECTED
            handle, slot.handle = slot.handle, None
            if handle is not None:
                await self._close_handle(handle)
        self._refresh_status()

    async def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        for slot in list(self._active.values()):
            slot.reconnect_attempts = 0
            await self._open(slot)

    # ------------------------------------------------------------------ #
    # Opening, status handling, reconnect
    # ------------------------------------------------------------------ #

    async def _open(self, slot: ConnectionSlot) -> None:
        generation = self._invalidate(slot)
        topic_id = slot.topic_id
        old_handle, slot.handle = slot.handle, None
        if old_handle is not None:
            self._spawn(self._close_handle(old_handle))

        slot.state = ConnectionState.CONNECTING
        self._refresh_status()

        async def on_event(raw: RawEvent) -> None:
            await self._handle_event(topic_id, generation, raw)

        def on_status(status: ChannelStatus, error: Optional[BaseException] = None) -> None:
            self._handle_status(topic_id, generation, status, error)

        try:
            handle = await self._transport.open_channel(self._channel_name(topic_id), on_event, on_status)
        except Exception as exc:
            if self._active.get(topic_id) is not slot or slot.generation != generation:
                return
            logger.warning("[REALTIME] Opening %s failed: %s", topic_id, exc)
            self._mark_failed(slot)
            self.schedule_reconnect(topic_id)
            return

        if self._active.get(topic_id) is not slot or slot.generation != generation:
            # Slot was released while the channel was opening.
            await self._close_handle(handle)
            return
        slot.handle = handle

    def _handle_status(
        self,
        topic_id: str,
        generation: int,
        status: ChannelStatus,
        error: Optional[BaseException],
    ) -> None:
        slot = self._active.get(topic_id)
        if slot is None or slot.generation != generation:
            return

        if status == ChannelStatus.SUBSCRIBED:
            slot.state = ConnectionState.CONNECTED
            slot.reconnect_attempts = 0
            slot.last_activity = self._clock()
            self._stats.total_connections += 1
            self._stats.last_connection_time = slot.last_activity
            logger.debug("[REALTIME] Subscribed to %s", topic_id)
        elif status in (ChannelStatus.CHANNEL_ERROR, ChannelStatus.TIMED_OUT):
            logger.warning(
                "[REALTIME] Subscription %s reported %s",
                topic_id,
                status.value,
                extra={"topic_id": topic_id, "error": str(error) if error else None},
            )
            self._mark_failed(slot)
            self.schedule_reconnect(topic_id)
        elif status == ChannelStatus.CLOSED:
            slot.state = ConnectionState.DISCONNECTED
            handle, slot.handle = slot.handle, None
            if handle is not None:
                self._spawn(self._close_handle(handle))
            if not self._paused:
                self.schedule_reconnect(topic_id)
        self._refresh_status()

    def _mark_failed(self, slot: ConnectionSlot) -> None:
        slot.state = ConnectionState.ERROR
        self._stats.failed_connections += 1
        handle, slot.handle = slot.handle, None
        if handle is not None:
            self._spawn(self._close_handle(handle))

    def schedule_reconnect(self, topic_id: str) -> None:
        """
        Schedule a reconnect for an active slot.

        No-op when one is already pending. When the attempt budget is spent the
        slot moves to ``error`` and leaves the active set.
        """
        slot = self._active.get(topic_id)
        if slot is None or slot.reconnect_pending:
            return

        if slot.reconnect_attempts >= self._max_attempts:
            slot.state = ConnectionState.ERROR
            self._drop_exhausted(slot)
            return

        delay = self.reconnect_delay(slot.reconnect_attempts)
        logger.info(
            "[REALTIME] Scheduling reconnect",
            extra={
                "event": "realtime_reconnect",
                "topic_id": topic_id,
                "attempt": slot.reconnect_attempts + 1,
                "delay": delay,
            },
        )
        slot.reconnect_task = asyncio.create_task(
            self._reconnect_after(slot, delay),
            name=f"realtime-reconnect:{topic_id}",
        )

    async def _reconnect_after(self, slot: ConnectionSlot, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._active.get(slot.topic_id) is not slot or self._paused:
            return
        slot.reconnect_task = None
        slot.reconnect_attempts += 1
        self._stats.total_reconnects += 1
        await self._open(slot)

    def _drop_exhausted(self, slot: ConnectionSlot) -> None:
        self._active.pop(slot.topic_id, None)
        self._failed[slot.topic_id] = slot
        self._invalidate(slot)
        handle, slot.handle = slot.handle, None
        if handle is not None:
            self._spawn(self._close_handle(handle))
        logger.error(
            "[REALTIME] Giving up on subscription after %d reconnect attempts",
            slot.reconnect_attempts,
            extra={"topic_id": slot.topic_id},
        )
        self._refresh_status()

    def _cancel_reconnect(self, slot: ConnectionSlot) -> None:
        task = slot.reconnect_task
        slot.reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------ #
    # Inbound events
    # ------------------------------------------------------------------ #

    async def _handle_event(self, topic_id: str, generation: int, raw: RawEvent) -> None:
        slot = self._active.get(topic_id)
        if slot is None or slot.generation != generation:
            return

        try:
            event = decode_event(raw)
        except ValidationException as exc:
            self._stats.invalid_events += 1
            logger.warning("[REALTIME] Dropping invalid event on %s: %s", topic_id, exc.message)
            return

        slot.last_activity = self._clock()
        for listener in list(self._event_listeners):
            try:
                await listener(topic_id, event)
            except Exception:
                logger.exception("[REALTIME] Event listener failed for %s", topic_id)

    # ------------------------------------------------------------------ #
    # Outbound broadcast + health
    # ------------------------------------------------------------------ #

    async def send_broadcast(self, topic_id: str, event: Dict[str, Any]) -> bool:
        """Best-effort broadcast on a connected slot. Returns False if not delivered."""
        slot = self._active.get(topic_id)
        if slot is None or slot.state != ConnectionState.CONNECTED or slot.handle is None:
            logger.debug("[REALTIME] Broadcast skipped, %s not connected", topic_id)
            return False
        try:
            await slot.handle.send(event)
        except Exception as exc:
            logger.warning("[REALTIME] Broadcast on %s failed: %s", topic_id, exc)
            return False
        slot.last_activity = self._clock()
        return True

    async def check_connection_health(self) -> None:
        """
        Probe every connected slot.

        Probe failures go through reconnect scheduling; slots that have spent
        their reconnect budget are dropped from the active set.
        """
        for slot in list(self._active.values()):
            if (
                slot.state == ConnectionState.ERROR
                and slot.reconnect_attempts >= self._max_attempts
                and not slot.reconnect_pending
            ):
                self._drop_exhausted(slot)

        for slot in list(self._active.values()):
            if slot.state != ConnectionState.CONNECTED or slot.handle is None:
                continue
            try:
                await slot.handle.send(build_ping_event())
            except Exception as exc:
                logger.warning("[REALTIME] Health probe failed for %s: %s", slot.topic_id, exc)
                if self._active.get(slot.topic_id) is slot:
                    self._mark_failed(slot)
                    self.schedule_reconnect(slot.topic_id)
        self._refresh_status()

    def start_health_checks(self) -> None:
        if self._health_task is not None and not self._health_task.done():
            return
        self._health_task = asyncio.create_task(self._health_loop(), name="realtime-health")

    async def stop_health_checks(self) -> None:
        task, self._health_task = self._health_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._health_interval)
            await self.check_connection_health()

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _invalidate(self, slot: ConnectionSlot) -> int:
        slot.generation = next(self._generations)
        return slot.generation

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _close_handle(self, handle: ChannelHandle) -> None:
        try:
            await handle.close()
        except Exception as exc:
            logger.debug("[REALTIME] Closing %s failed: %s", handle.channel, exc)

    def _compute_status(self) -> AggregateStatus:
        states = [slot.state for slot in self._active.values()]
        if any(state == ConnectionState.CONNECTED for state in states):
            return AggregateStatus.CONNECTED
        if any(state == ConnectionState.CONNECTING for state in states):
            return AggregateStatus.CONNECTING
        if any(state == ConnectionState.ERROR for state in states) or self._failed:
            return AggregateStatus.ERROR
        return AggregateStatus.DISCONNECTED

    def _refresh_status(self) -> None:
        status = self._compute_status()
        if status == self._status:
            return
        self._status = status
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("[REALTIME] Status listener failed")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_connections": self._stats.total_connections,
            "active_connections": sum(
                1 for slot in self._active.values() if slot.state == ConnectionState.CONNECTED
            ),
            "subscribed_topics": len(self._active),
            "failed_topics": len(self._failed),
            "failed_connections": self._stats.failed_connections,
            "total_reconnects": self._stats.total_reconnects,
            "evictions": self._stats.evictions,
            "invalid_events": self._stats.invalid_events,
            "last_connection_time": self._stats.last_connection_time,
            "max_active_connections": self._max_active,
        }

    def get_debug_info(self) -> Dict[str, Any]:
        return {
            "status": self._status.value,
            "user_id": self._user_id,
            "current_topic_id": self._current_topic_id,
            "paused": self._paused,
            "active": [slot.to_dict() for slot in self._active.values()],
            "failed": [slot.to_dict() for slot in self._failed.values()],
            "stats": self.get_stats(),
            "config": {
                "max_active_connections": self._max_active,
                "reconnect_base_delay": self._base_delay,
                "reconnect_max_delay": self._max_delay,
                "max_reconnect_attempts": self._max_attempts,
                "eviction_delay": self._eviction_delay,
                "health_check_interval": self._health_interval,
            },
        }
