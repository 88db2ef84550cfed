"""Domain events and the interfaces of the messaging layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from settlechat.models import ChatMessage, format_timestamp

EVENT_TYPE_CONNECT = "connection.connect"
EVENT_TYPE_DISCONNECT = "connection.disconnect"
EVENT_TYPE_USER_JOINED = "user.joined"
EVENT_TYPE_USER_LEFT = "user.left"
EVENT_TYPE_USER_PRESENCE = "user.presence"
EVENT_TYPE_NEW_MESSAGE = "message.new"
EVENT_TYPE_BROADCAST_MSG = "message.broadcast"
EVENT_TYPE_MESSAGE_HISTORY = "message.history"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(kw_only=True)
class Event:
    """Base of all events: a dotted type name and the time it happened."""

    type: str
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            out[item.name] = format_timestamp(value) if isinstance(value, datetime) else value
        return out

    def to_json(self) -> bytes:
        """Return the compact JSON encoding as bytes."""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False).encode()


@dataclass(kw_only=True)
class ConnectionEvent(Event):
    room_id: str
    user_id: str
    username: str


@dataclass(kw_only=True)
class UserEvent(Event):
    room_id: str
    user_id: str
    username: str


@dataclass(kw_only=True)
class PresenceEvent(Event):
    room_id: str
    user_id: str
    username: str
    is_online: bool


@dataclass(kw_only=True)
class ChatMessageEvent(Event):
    room_id: str
    sender_id: str
    sender: str
    content: str

    @classmethod
    def from_dict(cls, data: Any) -> ChatMessageEvent:
        """Decode an event; raises ValueError on malformed input."""
        message = ChatMessage.from_dict(data)
        event_type = data.get("type")
        if event_type is None:
            event_type = ""
        if not isinstance(event_type, str):
            raise ValueError("field 'type' must be a string")
        return cls(
            type=event_type,
            timestamp=message.timestamp,
            room_id=message.room_id,
            sender_id=message.sender_id,
            sender=message.sender,
            content=message.content,
        )


@dataclass(kw_only=True)
class HistoryRequestEvent(Event):
    room_id: str
    user_id: str
    limit: int


@runtime_checkable
class MessageHandler(Protocol):
    """Processes one message received on a subscribed subject."""

    def handle(self, msg: Any) -> None: ...


@runtime_checkable
class TopicFormatter(Protocol):
    """Builds subject names for a room."""

    def message_topic(self, room_id: str) -> str: ...

    def presence_topic(self, room_id: str) -> str: ...

    def history_request_topic(self, room_id: str) -> str: ...

    def history_response_topic(self, room_id: str, user_id: str) -> str: ...

    def system_message_topic(self, room_id: str) -> str: ...

    def user_joined_topic(self, room_id: str) -> str: ...

    def user_left_topic(self, room_id: str) -> str: ...

    def broadcast_topic(self, room_id: str) -> str: ...

    def connection_topic(self, room_id: str) -> str: ...


@runtime_checkable
class Publisher(Protocol):
    """Publishes raw payloads to subjects."""

    topics: TopicFormatter

    def publish(self, topic: str, data: bytes) -> None: ...


def connect_event(room_id: str, user_id: str, username: str) -> ConnectionEvent:
    return ConnectionEvent(
        type=EVENT_TYPE_CONNECT, room_id=room_id, user_id=user_id, username=username
    )


def disconnect_event(room_id: str, user_id: str, username: str) -> ConnectionEvent:
    return ConnectionEvent(
        type=EVENT_TYPE_DISCONNECT, room_id=room_id, user_id=user_id, username=username
    )


def user_joined_event(room_id: str, user_id: str, username: str) -> UserEvent:
    return UserEvent(
        type=EVENT_TYPE_USER_JOINED, room_id=room_id, user_id=user_id, username=username
    )


def user_left_event(room_id: str, user_id: str, username: str) -> UserEvent:
    return UserEvent(
        type=EVENT_TYPE_USER_LEFT, room_id=room_id, user_id=user_id, username=username
    )


def presence_event(room_id: str, user_id: str, username: str, is_online: bool) -> PresenceEvent:
    return PresenceEvent(
        type=EVENT_TYPE_USER_PRESENCE,
        room_id=room_id,
        user_id=user_id,
        username=username,
        is_online=is_online,
    )


def chat_message_event(room_id: str, user_id: str, username: str, content: str) -> ChatMessageEvent:
    return ChatMessageEvent(
        type=EVENT_TYPE_NEW_MESSAGE,
        room_id=room_id,
        sender_id=user_id,
        sender=username,
        content=content,
    )


def history_request_event(room_id: str, user_id: str, limit: int) -> HistoryRequestEvent:
    return HistoryRequestEvent(
        type=EVENT_TYPE_MESSAGE_HISTORY + ".request",
        room_id=room_id,
        user_id=user_id,
        limit=limit,
    )