# topicchat/services/messaging/__init__.py
"""
Realtime messaging package.

- events: wire envelope, typed event models and the single inbound decoder
- transport: channel abstraction, Broadcaster-backed implementation
- connection_manager: bounded, prioritized pool of conversation subscriptions
- message_router: change-feed record -> store message pipeline
- publisher: server-side publishing of committed messages
"""

from topicchat.services.messaging.connection_manager import (
    MAX_PRIORITY,
    AggregateStatus,
    ConnectionState,
    RealtimeConnectionManager,
)
from topicchat.services.messaging.events import (
    SCHEMA_VERSION,
    EventType,
    MessageRecord,
    RealtimeEvent,
    build_event,
    decode_event,
)
from topicchat.services.messaging.message_router import MessageRouter
from topicchat.services.messaging.publisher import (
    publish_private_message_inserted,
    publish_to_channel,
    publish_topic_message_inserted,
)
from topicchat.services.messaging.transport import (
    BroadcastRealtimeTransport,
    ChannelHandle,
    ChannelStatus,
    RealtimeTransport,
    private_channel,
    topic_channel,
)

__all__ = [
    # Connections
    "RealtimeConnectionManager",
    "ConnectionState",
    "AggregateStatus",
    "MAX_PRIORITY",
    # Transport
    "RealtimeTransport",
    "BroadcastRealtimeTransport",
    "ChannelHandle",
    "ChannelStatus",
    "topic_channel",
    "private_channel",
    # Routing
    "MessageRouter",
    # Publishers
    "publish_to_channel",
    "publish_topic_message_inserted",
    "publish_private_message_inserted",
    # Events
    "EventType",
    "SCHEMA_VERSION",
    "MessageRecord",
    "RealtimeEvent",
    "build_event",
    "decode_event",
]
