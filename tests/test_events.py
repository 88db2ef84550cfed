import json
from datetime import datetime, timezone

import pytest

from settlechat.events import (
    EVENT_TYPE_CONNECT,
    EVENT_TYPE_DISCONNECT,
    EVENT_TYPE_MESSAGE_HISTORY,
    EVENT_TYPE_NEW_MESSAGE,
    EVENT_TYPE_USER_JOINED,
    EVENT_TYPE_USER_LEFT,
    EVENT_TYPE_USER_PRESENCE,
    ChatMessageEvent,
    chat_message_event,
    connect_event,
    disconnect_event,
    history_request_event,
    presence_event,
    user_joined_event,
    user_left_event,
)
from settlechat.models import ZERO_TIME, parse_timestamp


def test_connect_event_fields():
    event = connect_event("room1", "u1", "alice")
    assert event.type == EVENT_TYPE_CONNECT == "connection.connect"
    assert (event.room_id, event.user_id, event.username) == ("room1", "u1", "alice")


@pytest.mark.parametrize(
    "factory, expected",
    [
        (disconnect_event, EVENT_TYPE_DISCONNECT),
        (user_joined_event, EVENT_TYPE_USER_JOINED),
        (user_left_event, EVENT_TYPE_USER_LEFT),
    ],
)
def test_event_types(factory, expected):
    event = factory("r", "u", "n")
    assert event.type == expected
    assert event.to_dict()["type"] == expected


def test_event_timestamp_is_now():
    before = datetime.now(timezone.utc)
    event = user_joined_event("r", "u", "n")
    after = datetime.now(timezone.utc)
    assert before <= event.timestamp <= after


def test_connection_event_to_dict_keys():
    data = connect_event("r", "u", "n").to_dict()
    assert set(data) == {"type", "timestamp", "room_id", "user_id", "username"}


def test_to_json_matches_to_dict():
    event = presence_event("r", "u", "n", True)
    raw = event.to_json()
    assert isinstance(raw, bytes)
    assert b" " not in raw
    decoded = json.loads(raw)
    assert decoded == event.to_dict()
    assert decoded["is_online"] is True
    assert decoded["type"] == EVENT_TYPE_USER_PRESENCE
    assert parse_timestamp(decoded["timestamp"]) == event.timestamp


def test_chat_message_event_fields():
    event = chat_message_event("r", "u1", "alice", "hi")
    assert event.type == EVENT_TYPE_NEW_MESSAGE
    assert event.sender_id == "u1"
    assert event.sender == "alice"
    data = event.to_dict()
    assert set(data) == {"type", "timestamp", "room_id", "sender_id", "sender", "content"}


def test_chat_message_event_round_trip():
    event = chat_message_event("r", "u1", "alice", "hi")
    assert ChatMessageEvent.from_dict(json.loads(event.to_json())) == event


def test_chat_message_event_from_plain_message():
    event = ChatMessageEvent.from_dict({"room_id": "r", "sender_id": "u", "content": "x"})
    assert event.type == ""
    assert event.timestamp == ZERO_TIME
    assert event.content == "x"


@pytest.mark.parametrize("data", [{"type": 1}, {"sender": []}, [1, 2]])
def test_chat_message_event_from_dict_invalid(data):
    with pytest.raises(ValueError):
        ChatMessageEvent.from_dict(data)


def test_history_request_event():
    event = history_request_event("r", "u", 50)
    assert event.type.startswith(EVENT_TYPE_MESSAGE_HISTORY)
    assert event.type == "message.history.request"
    assert event.to_dict()["limit"] == 50