# topicchat/services/messaging/publisher.py
"""
Publishing of change-feed events to conversation channels.

Publishing is best-effort: the message row is already committed when these
run, so a broadcaster failure is logged and never surfaces to the sender.
Subscribers that miss an event recover it on their next fetch.
"""

import json
import logging
from typing import Any, Dict

from topicchat.core.broadcast import get_broadcast
from topicchat.services.messaging.events import MessageRecord, build_message_inserted_event
from topicchat.services.messaging.transport import private_channel, topic_channel

logger = logging.getLogger(__name__)


async def publish_to_channel(channel: str, event: Dict[str, Any]) -> None:
    """
    Publish an event dict to ``channel`` via the shared Broadcaster.

    Args:
        channel: Channel name (``topic:{id}`` or ``private:{id}``)
        event: Event dict (will be JSON serialized)
    """
    try:
        broadcast = get_broadcast()
        await broadcast.publish(channel=channel, message=json.dumps(event))
        logger.debug(f"[PUBLISHER] Published {event.get('type')} to {channel}")
    except RuntimeError as e:
        # Broadcast not initialized
        logger.warning(f"[PUBLISHER] Broadcast not initialized, cannot publish: {e}")
    except Exception as e:
        logger.error(f"[PUBLISHER] Failed to publish to {channel}: {e}")


async def publish_topic_message_inserted(record: MessageRecord) -> None:
    """Announce a committed topic message on ``topic:{topic_id}``."""
    await publish_to_channel(
        topic_channel(record.conversation_id),
        build_message_inserted_event(record),
    )


async def publish_private_message_inserted(record: MessageRecord) -> None:
    """Announce a committed private message on ``private:{chat_id}``."""
    await publish_to_channel(
        private_channel(record.conversation_id),
        build_message_inserted_event(record),
    )
