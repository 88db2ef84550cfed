import json
from dataclasses import dataclass

import pytest

from settlechat.eventbus import EventBus
from settlechat.events import ChatMessageEvent, Event, connect_event
from settlechat.nats import NatsError
from settlechat.topics import Topics


class FakeManager:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def publish(self, subject, data):
        if self.fail:
            raise NatsError("not connected")
        self.sent.append((subject, data))


@dataclass(kw_only=True)
class OpaqueEvent(Event):
    payload: object


def make(fail=False):
    manager = FakeManager(fail=fail)
    return manager, EventBus(manager, Topics())


@pytest.mark.parametrize(
    "event_type, expected",
    [
        ("connection.connect", lambda t: t.connection_topic("r1")),
        ("connection.disconnect", lambda t: t.connection_topic("r1")),
        ("user.joined", lambda t: t.user_joined_topic("r1")),
        ("user.left", lambda t: t.user_left_topic("r1")),
        ("user.presence", lambda t: t.presence_topic("r1")),
        ("message.new", lambda t: t.message_topic("r1")),
        ("message.broadcast", lambda t: t.broadcast_topic("r1")),
        ("message.history.request", lambda t: t.history_request_topic("r1")),
        ("message.history.response", lambda t: t.history_response_topic("r1", "system")),
        ("something.else", lambda t: t.system_message_topic("r1")),
    ],
)
def test_topic_for_event(event_type, expected):
    _, bus = make()
    assert bus.topic_for_event(Event(type=event_type), "r1") == expected(Topics())


@pytest.mark.asyncio
async def test_publish_event_sends_json():
    manager, bus = make()
    event = connect_event("r1", "u1", "alice")
    await bus.publish_event(event, "r1")
    assert len(manager.sent) == 1
    subject, data = manager.sent[0]
    assert subject == Topics().connection_topic("r1")
    assert json.loads(data) == event.to_dict()


@pytest.mark.asyncio
async def test_publish_new_message_round_trip():
    manager, bus = make()
    await bus.publish_new_message_event("r1", "u1", "alice", "hello")
    subject, data = manager.sent[0]
    assert subject == Topics().message_topic("r1")
    event = ChatMessageEvent.from_dict(json.loads(data))
    assert event.type == "message.new"
    assert (event.room_id, event.sender_id, event.sender, event.content) == (
        "r1",
        "u1",
        "alice",
        "hello",
    )


@pytest.mark.asyncio
async def test_publish_history_request():
    manager, bus = make()
    await bus.publish_history_request_event("r1", "u1", 50)
    subject, data = manager.sent[0]
    assert subject == Topics().history_request_topic("r1")
    payload = json.loads(data)
    assert payload["type"] == "message.history.request"
    assert payload["limit"] == 50
    assert payload["user_id"] == "u1"


@pytest.mark.asyncio
async def test_publish_presence_and_user_events():
    manager, bus = make()
    await bus.publish_presence_event("r1", "u1", "alice", True)
    await bus.publish_user_joined_event("r1", "u1", "alice")
    await bus.publish_user_left_event("r1", "u1", "alice")
    await bus.publish_disconnect_event("r1", "u1", "alice")
    topics = Topics()
    assert [subject for subject, _ in manager.sent] == [
        topics.presence_topic("r1"),
        topics.user_joined_topic("r1"),
        topics.user_left_topic("r1"),
        topics.connection_topic("r1"),
    ]
    types = [json.loads(data)["type"] for _, data in manager.sent]
    assert types == ["user.presence", "user.joined", "user.left", "connection.disconnect"]
    assert json.loads(manager.sent[0][1])["is_online"] is True


@pytest.mark.asyncio
async def test_publish_connect_event_uses_room_argument():
    manager, bus = make()
    await bus.publish_connect_event("lobby", "u2", "bob")
    subject, data = manager.sent[0]
    assert subject == Topics().connection_topic("lobby")
    assert json.loads(data)["username"] == "bob"


@pytest.mark.asyncio
async def test_publish_error_is_wrapped():
    _, bus = make(fail=True)
    with pytest.raises(NatsError, match="publish event error"):
        await bus.publish_connect_event("r1", "u1", "alice")


@pytest.mark.asyncio
async def test_marshal_error():
    manager, bus = make()
    with pytest.raises(ValueError, match="marshal event error"):
        await bus.publish_event(OpaqueEvent(type="x.y", payload=object()), "r1")
    assert manager.sent == []