# topicchat/services/messaging/events.py
"""
Realtime event type definitions, builders and the inbound decoder.

All events on a conversation channel follow this structure:
{
    "type": str,           # Event type identifier
    "schema_version": int, # Schema version (currently 1)
    "timestamp": str,      # ISO 8601 timestamp
    "payload": dict        # Event-specific data
}

Inbound events are decoded exactly once, in ``decode_event``, into one of the
typed models below. Nothing downstream inspects raw payload dicts.
"""

from datetime import datetime, timezone
from enum import Enum
import json
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from topicchat.core.exceptions import ValidationException
from topicchat.domain.chat import Author


class EventType(str, Enum):
    """Valid realtime event types."""

    MESSAGE_INSERTED = "message_inserted"
    TYPING = "typing"
    STOP_TYPING = "stop_typing"
    PRESENCE_JOIN = "presence_join"
    PRESENCE_LEAVE = "presence_leave"
    PRESENCE_SYNC = "presence_sync"
    PING = "ping"


# Current schema version - increment when payload structure changes
SCHEMA_VERSION = 1


class MessageRecord(BaseModel):
    """
    A persisted message row as delivered by the change feed.

    Accepts both topic rows (``topic_id``/``user_id``) and private rows
    (``chat_id``/``sender_id``). ``message`` is the stored body, usually
    ciphertext. ``author`` is present when the producer joined the user row.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    conversation_id: str = Field(
        validation_alias=AliasChoices("conversation_id", "topic_id", "chat_id")
    )
    user_id: str = Field(validation_alias=AliasChoices("user_id", "sender_id", "author_id"))
    message: str = Field(validation_alias=AliasChoices("message", "body"))
    created_at: datetime
    is_read: bool = False
    author: Optional[Author] = None


class PresenceMember(BaseModel):
    user_id: str
    user_name: str = ""


class MessageInserted(BaseModel):
    type: Literal["message_inserted"]
    record: MessageRecord


class Typing(BaseModel):
    type: Literal["typing"]
    user_id: str
    user_name: str = ""
    timestamp: Optional[float] = None


class StopTyping(BaseModel):
    type: Literal["stop_typing"]
    user_id: str


class PresenceJoin(BaseModel):
    type: Literal["presence_join"]
    user_id: str
    user_name: str = ""


class PresenceLeave(BaseModel):
    type: Literal["presence_leave"]
    user_id: str
    user_name: str = ""


class PresenceSync(BaseModel):
    type: Literal["presence_sync"]
    users: List[PresenceMember] = Field(default_factory=list)


class Ping(BaseModel):
    type: Literal["ping"]


RealtimeEvent = Annotated[
    Union[MessageInserted, Typing, StopTyping, PresenceJoin, PresenceLeave, PresenceSync, Ping],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(RealtimeEvent)


def decode_event(raw: Union[str, bytes, Mapping[str, Any]]) -> RealtimeEvent:
    """
    Decode a wire event into its typed model.

    Raises:
        ValidationException: malformed JSON, unknown type or invalid payload
    """
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationException("Realtime event is not valid JSON", code="INVALID_EVENT") from exc
    else:
        data = raw

    if not isinstance(data, Mapping):
        raise ValidationException("Realtime event must be an object", code="INVALID_EVENT")

    payload = data.get("payload")
    flattened: Dict[str, Any] = dict(payload) if isinstance(payload, Mapping) else {}
    flattened["type"] = data.get("type")

    try:
        return _EVENT_ADAPTER.validate_python(flattened)
    except ValidationError as exc:
        raise ValidationException(
            "Realtime event failed validation",
            code="INVALID_EVENT",
            details={"type": data.get("type"), "errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def build_event(event_type: EventType, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build a properly structured event.

    Args:
        event_type: The type of event
        payload: Event-specific payload data

    Returns:
        Complete event dict ready for publishing
    """
    return {
        "type": event_type.value,
        "schema_version": SCHEMA_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }


def build_message_inserted_event(record: MessageRecord) -> Dict[str, Any]:
    """Build a message_inserted event; the body is published as stored."""
    return build_event(
        EventType.MESSAGE_INSERTED,
        {"record": record.model_dump(mode="json", exclude_none=True)},
    )


def build_typing_event(user_id: str, user_name: str, timestamp: float) -> Dict[str, Any]:
    return build_event(
        EventType.TYPING,
        {"user_id": user_id, "user_name": user_name, "timestamp": timestamp},
    )


def build_stop_typing_event(user_id: str) -> Dict[str, Any]:
    return build_event(EventType.STOP_TYPING, {"user_id": user_id})


def build_presence_event(event_type: EventType, user_id: str, user_name: str) -> Dict[str, Any]:
    if event_type not in (EventType.PRESENCE_JOIN, EventType.PRESENCE_LEAVE):
        raise ValueError(f"Not a presence event type: {event_type}")
    return build_event(event_type, {"user_id": user_id, "user_name": user_name})


def build_presence_sync_event(members: List[PresenceMember]) -> Dict[str, Any]:
    return build_event(
        EventType.PRESENCE_SYNC,
        {"users": [member.model_dump() for member in members]},
    )


def build_ping_event() -> Dict[str, Any]:
    return build_event(EventType.PING, {})
