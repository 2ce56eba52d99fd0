"""
Push event types for the realtime stream.

Every frame on the push channel is one JSON object:

    {"type": "<tag>", "data": {...}}

Each tag maps to one frozen dataclass below, so producers (the server-side
publisher) and consumers (the client synchronizer and notifier) share a
single, exhaustive set of event shapes instead of passing untyped dicts.

Payloads carry ids as strings and timestamps as ISO-8601 strings, which is
what both the REST surface and the push stream put on the wire.

Design Decisions:
    - Pure Python (no Django imports): chat.client depends on this module
    - Payloads carry sender name/avatar so a receiver can render an alert
      without a round trip
    - ConversationPayload.unread_count is None in pushes; the count is
      per-viewer and the receiving client derives it locally

Usage:
    from chat.events import NewMessage, decode_event, encode_event

    frame = encode_event(NewMessage(message=payload))
    event = decode_event(frame)
    match event:
        case NewMessage(message=message):
            ...
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Union

from core.exceptions import ValidationError


class EventDecodeError(ValidationError):
    """Raised when a push frame has an unknown tag or a malformed payload."""

    default_error_code = "INVALID_EVENT"


# =============================================================================
# Payloads
# =============================================================================


@dataclass(frozen=True)
class ReactionPayload:
    user_id: str
    emoji: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReactionPayload:
        return cls(user_id=str(data["user_id"]), emoji=str(data["emoji"]))


@dataclass(frozen=True)
class MessagePayload:
    """
    Denormalized message as delivered to clients.

    ``client_id`` is the sender's temporary id (empty for messages created
    without one). ``read_by`` only ever grows.
    """

    id: str
    conversation_id: str
    sender_id: str | None
    content: str
    created_at: str
    sender_name: str = ""
    sender_avatar: str = ""
    message_type: str = "text"
    reply_to_id: str | None = None
    client_id: str = ""
    reactions: tuple[ReactionPayload, ...] = ()
    read_by: tuple[str, ...] = ()
    is_edited: bool = False
    edited_at: str | None = None
    is_pinned: bool = False
    is_deleted: bool = False
    is_pending: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessagePayload:
        sender_id = data.get("sender_id")
        reply_to_id = data.get("reply_to_id")
        return cls(
            id=str(data["id"]),
            conversation_id=str(data["conversation_id"]),
            sender_id=str(sender_id) if sender_id is not None else None,
            content=str(data.get("content", "")),
            created_at=str(data["created_at"]),
            sender_name=data.get("sender_name") or "",
            sender_avatar=data.get("sender_avatar") or "",
            message_type=data.get("message_type", "text"),
            reply_to_id=str(reply_to_id) if reply_to_id is not None else None,
            client_id=data.get("client_id") or "",
            reactions=tuple(
                ReactionPayload.from_dict(item) for item in data.get("reactions", ())
            ),
            read_by=tuple(str(user_id) for user_id in data.get("read_by", ())),
            is_edited=bool(data.get("is_edited", False)),
            edited_at=data.get("edited_at"),
            is_pinned=bool(data.get("is_pinned", False)),
            is_deleted=bool(data.get("is_deleted", False)),
        )


@dataclass(frozen=True)
class ParticipantPayload:
    user_id: str
    name: str = ""
    avatar_url: str = ""
    role: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ParticipantPayload:
        return cls(
            user_id=str(data["user_id"]),
            name=data.get("name") or "",
            avatar_url=data.get("avatar_url") or "",
            role=data.get("role"),
        )


@dataclass(frozen=True)
class ConversationPayload:
    """
    Denormalized conversation as delivered to clients.

    ``unread_count`` is None when the sender of the frame cannot know the
    receiving viewer's count (every push); REST responses fill it in.
    """

    id: str
    kind: str
    updated_at: str
    name: str = ""
    image_url: str = ""
    description: str = ""
    participants: tuple[ParticipantPayload, ...] = ()
    last_message: MessagePayload | None = None
    unread_count: int | None = None
    is_deleted: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationPayload:
        last_message = data.get("last_message")
        unread_count = data.get("unread_count")
        return cls(
            id=str(data["id"]),
            kind=str(data["kind"]),
            updated_at=str(data["updated_at"]),
            name=data.get("name") or "",
            image_url=data.get("image_url") or "",
            description=data.get("description") or "",
            participants=tuple(
                ParticipantPayload.from_dict(item)
                for item in data.get("participants", ())
            ),
            last_message=(
                MessagePayload.from_dict(last_message) if last_message else None
            ),
            unread_count=int(unread_count) if unread_count is not None else None,
            is_deleted=bool(data.get("is_deleted", False)),
        )

    @property
    def participant_ids(self) -> tuple[str, ...]:
        return tuple(participant.user_id for participant in self.participants)


# =============================================================================
# Events
# =============================================================================


@dataclass(frozen=True)
class NewMessage:
    TYPE: ClassVar[str] = "newMessage"

    message: MessagePayload

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> NewMessage:
        return cls(message=MessagePayload.from_dict(data["message"]))


@dataclass(frozen=True)
class MessageUpdated:
    """Edit, reaction, read acknowledgment, pin or soft delete."""

    TYPE: ClassVar[str] = "messageUpdated"

    message: MessagePayload

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> MessageUpdated:
        return cls(message=MessagePayload.from_dict(data["message"]))


@dataclass(frozen=True)
class ConversationCreated:
    TYPE: ClassVar[str] = "conversationCreated"

    conversation: ConversationPayload

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> ConversationCreated:
        return cls(conversation=ConversationPayload.from_dict(data["conversation"]))


@dataclass(frozen=True)
class ConversationUpdated:
    """New last message, rename, image change or membership change."""

    TYPE: ClassVar[str] = "conversationUpdated"

    conversation: ConversationPayload

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> ConversationUpdated:
        return cls(conversation=ConversationPayload.from_dict(data["conversation"]))


@dataclass(frozen=True)
class ConversationDeleted:
    TYPE: ClassVar[str] = "conversationDeleted"

    conversation_id: str

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> ConversationDeleted:
        return cls(conversation_id=str(data["conversation_id"]))


@dataclass(frozen=True)
class TypingStart:
    TYPE: ClassVar[str] = "typingStart"

    conversation_id: str
    user_id: str
    user_name: str = ""

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> TypingStart:
        return cls(
            conversation_id=str(data["conversation_id"]),
            user_id=str(data["user_id"]),
            user_name=data.get("user_name") or "",
        )


@dataclass(frozen=True)
class TypingStop:
    TYPE: ClassVar[str] = "typingStop"

    conversation_id: str
    user_id: str

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> TypingStop:
        return cls(
            conversation_id=str(data["conversation_id"]),
            user_id=str(data["user_id"]),
        )


@dataclass(frozen=True)
class NewBroadcastChannel:
    TYPE: ClassVar[str] = "newBroadcastChannel"

    conversation: ConversationPayload

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> NewBroadcastChannel:
        return cls(conversation=ConversationPayload.from_dict(data["conversation"]))


@dataclass(frozen=True)
class NewBroadcastMessage:
    TYPE: ClassVar[str] = "newBroadcastMessage"

    message: MessagePayload
    conversation_name: str = ""

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> NewBroadcastMessage:
        return cls(
            message=MessagePayload.from_dict(data["message"]),
            conversation_name=data.get("conversation_name") or "",
        )


@dataclass(frozen=True)
class Connected:
    """First frame on a freshly registered channel."""

    TYPE: ClassVar[str] = "connected"

    user_id: str
    heartbeat_interval: float

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> Connected:
        return cls(
            user_id=str(data["user_id"]),
            heartbeat_interval=float(data["heartbeat_interval"]),
        )


@dataclass(frozen=True)
class ConnectedUsers:
    TYPE: ClassVar[str] = "connectedUsers"

    user_ids: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> ConnectedUsers:
        return cls(user_ids=tuple(str(user_id) for user_id in data["user_ids"]))


@dataclass(frozen=True)
class Heartbeat:
    """Keep-alive; clients answer with {"type": "heartbeat_ack"}."""

    TYPE: ClassVar[str] = "heartbeat"

    timestamp: float

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> Heartbeat:
        return cls(timestamp=float(data["timestamp"]))


Event = Union[
    NewMessage,
    MessageUpdated,
    ConversationCreated,
    ConversationUpdated,
    ConversationDeleted,
    TypingStart,
    TypingStop,
    NewBroadcastChannel,
    NewBroadcastMessage,
    Connected,
    ConnectedUsers,
    Heartbeat,
]

EVENT_TYPES: dict[str, type] = {
    event_cls.TYPE: event_cls
    for event_cls in (
        NewMessage,
        MessageUpdated,
        ConversationCreated,
        ConversationUpdated,
        ConversationDeleted,
        TypingStart,
        TypingStop,
        NewBroadcastChannel,
        NewBroadcastMessage,
        Connected,
        ConnectedUsers,
        Heartbeat,
    )
}


def event_to_dict(event: Event) -> dict[str, Any]:
    """Return the wire envelope for ``event`` as a dict."""
    return {"type": event.TYPE, "data": asdict(event)}


def encode_event(event: Event) -> str:
    """Serialize ``event`` into one JSON text frame."""
    return json.dumps(event_to_dict(event), separators=(",", ":"))


def decode_event(frame: str | bytes | dict[str, Any]) -> Event:
    """
    Parse a push frame into its event dataclass.

    Raises:
        EventDecodeError: If the frame is not JSON, the tag is unknown, or
            the payload is missing required fields
    """
    if isinstance(frame, (str, bytes)):
        try:
            frame = json.loads(frame)
        except ValueError as e:
            raise EventDecodeError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(frame, dict):
        raise EventDecodeError("Frame must be a JSON object")

    tag = frame.get("type")
    event_cls = EVENT_TYPES.get(tag)
    if event_cls is None:
        raise EventDecodeError(
            f"Unknown event type: {tag!r}", details={"type": tag}
        )

    data = frame.get("data")
    if not isinstance(data, dict):
        raise EventDecodeError(
            f"Event {tag} has no data object", details={"type": tag}
        )

    try:
        return event_cls.from_data(data)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise EventDecodeError(
            f"Malformed {tag} payload: {e}", details={"type": tag}
        ) from e
