import pytest

from settlechat.topics import Topics


def test_message_topic_default_prefix():
    assert Topics().message_topic("room1") == "settlechat.message.chat.room1"


@pytest.mark.parametrize(
    "method, parts",
    [
        ("presence_topic", ["user", "presence"]),
        ("system_message_topic", ["system", "message"]),
        ("user_joined_topic", ["user", "joined"]),
        ("user_left_topic", ["user", "left"]),
        ("message_topic", ["message", "chat"]),
        ("broadcast_topic", ["message", "broadcast"]),
        ("history_request_topic", ["message", "history", "request"]),
        ("connection_topic", ["connection", "event"]),
    ],
)
def test_room_topics(method, parts):
    topic = getattr(Topics(), method)("r1")
    assert topic.split(".") == ["settlechat", *parts, "r1"]


def test_history_response_topic_carries_user():
    topic = Topics().history_response_topic("r1", "u1")
    assert topic.split(".") == ["settlechat", "message", "history", "response", "r1", "u1"]
    assert topic.split(".")[5] == "u1"


def test_env_is_appended_to_prefix():
    topics = Topics("dev")
    assert topics.prefix == "settlechatdev"
    assert topics.connection_topic("r").split(".")[0] == "settlechatdev"


def test_room_topics_are_distinct():
    topics = Topics()
    names = {
        topics.presence_topic("r"),
        topics.system_message_topic("r"),
        topics.user_joined_topic("r"),
        topics.user_left_topic("r"),
        topics.message_topic("r"),
        topics.broadcast_topic("r"),
        topics.history_request_topic("r"),
        topics.connection_topic("r"),
        topics.history_response_topic("r", "u"),
    }
    assert len(names) == 9