"""Chat data records and their JSON wire form."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})"
)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as RFC 3339 with trailing fractional zeros trimmed.

    Naive datetimes are taken to be UTC; a zero offset is written as ``Z``.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or timedelta(0)
    if not offset:
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def parse_timestamp(value: Any) -> datetime:
    """Parse an RFC 3339 timestamp into an aware datetime.

    Fractions finer than a microsecond are truncated. Raises ValueError
    on anything that is not a valid RFC 3339 string.
    """
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, got {type(value).__name__}")
    match = _RFC3339.fullmatch(value)
    if match is None:
        raise ValueError(f"invalid RFC 3339 timestamp: {value!r}")
    year, month, day, hour, minute, second = (int(match[i]) for i in range(1, 7))
    fraction = (match[7] or "")[:6].ljust(6, "0")
    zone = match[8]
    if zone == "Z":
        tzinfo = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        offset = timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6]))
        tzinfo = timezone(sign * offset)
    try:
        return datetime(year, month, day, hour, minute, second, int(fraction), tzinfo=tzinfo)
    except ValueError as exc:
        raise ValueError(f"invalid RFC 3339 timestamp: {value!r}") from exc


def _mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValueError(f"{what}: expected a JSON object, got {type(data).__name__}")
    return data


def _str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string")
    return value


def _bool(data: Mapping[str, Any], key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValueError(f"field {key!r} must be a boolean")
    return value


def _int(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {key!r} must be an integer")
    return value


def _time(data: Mapping[str, Any], key: str) -> datetime:
    value = data.get(key)
    if value is None:
        return ZERO_TIME
    return parse_timestamp(value)


@dataclass
class ChatMessage:
    """A chat message; ``id`` is the storage key and never goes on the wire."""

    room_id: str = ""
    sender_id: str = ""
    sender: str = ""
    content: str = ""
    timestamp: datetime = ZERO_TIME
    id: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "sender_id": self.sender_id,
            "sender": self.sender,
            "content": self.content,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Any) -> ChatMessage:
        data = _mapping(data, "chat message")
        return cls(
            room_id=_str(data, "room_id"),
            sender_id=_str(data, "sender_id"),
            sender=_str(data, "sender"),
            content=_str(data, "content"),
            timestamp=_time(data, "timestamp"),
        )


@dataclass
class User:
    id: str = ""
    username: str = ""
    created_at: datetime = ZERO_TIME
    last_active: datetime = ZERO_TIME

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.id,
            "user_name": self.username,
            "created_At": format_timestamp(self.created_at),
            "last_active": format_timestamp(self.last_active),
        }


@dataclass
class Room:
    id: str = ""
    room_name: str = ""
    created_by: str = ""
    created_at: datetime = ZERO_TIME

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.id,
            "room_name": self.room_name,
            "created_by": self.created_by,
            "created_at": format_timestamp(self.created_at),
        }


@dataclass
class UserJoinedMessage:
    room_id: str = ""
    user_id: str = ""
    username: str = ""
    joined_at: datetime = ZERO_TIME

    @classmethod
    def from_dict(cls, data: Any) -> UserJoinedMessage:
        data = _mapping(data, "user joined message")
        return cls(
            room_id=_str(data, "room_id"),
            user_id=_str(data, "user_id"),
            username=_str(data, "username"),
            joined_at=_time(data, "joined_at"),
        )


@dataclass
class UserLeftMessage:
    room_id: str = ""
    user_id: str = ""
    username: str = ""
    left_at: datetime = ZERO_TIME

    @classmethod
    def from_dict(cls, data: Any) -> UserLeftMessage:
        data = _mapping(data, "user left message")
        return cls(
            room_id=_str(data, "room_id"),
            user_id=_str(data, "user_id"),
            username=_str(data, "username"),
            left_at=_time(data, "left_at"),
        )


@dataclass
class PresenceMessage:
    room_id: str = ""
    user_id: str = ""
    username: str = ""
    is_online: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "user_id": self.user_id,
            "username": self.username,
            "is_online": self.is_online,
        }

    @classmethod
    def from_dict(cls, data: Any) -> PresenceMessage:
        data = _mapping(data, "presence message")
        return cls(
            room_id=_str(data, "room_id"),
            user_id=_str(data, "user_id"),
            username=_str(data, "username"),
            is_online=_bool(data, "is_online"),
        )


@dataclass
class SystemMessage:
    room_id: str = ""
    message: str = ""
    timestamp: datetime = ZERO_TIME

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "message": self.message,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Any) -> SystemMessage:
        data = _mapping(data, "system message")
        return cls(
            room_id=_str(data, "room_id"),
            message=_str(data, "message"),
            timestamp=_time(data, "timestamp"),
        )


@dataclass
class HistoryRequest:
    room_id: str = ""
    user_id: str = ""
    limit: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> HistoryRequest:
        data = _mapping(data, "history request")
        return cls(
            room_id=_str(data, "room_id"),
            user_id=_str(data, "user_id"),
            limit=_int(data, "limit"),
        )


@dataclass
class HistoryResponse:
    room_id: str = ""
    messages: list[ChatMessage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "messages": [message.to_dict() for message in self.messages],
        }

    @classmethod
    def from_dict(cls, data: Any) -> HistoryResponse:
        data = _mapping(data, "history response")
        raw = data.get("messages")
        if raw is None:
            raw = []
        if not isinstance(raw, list):
            raise ValueError("field 'messages' must be a list")
        return cls(
            room_id=_str(data, "room_id"),
            messages=[ChatMessage.from_dict(item) for item in raw],
        )