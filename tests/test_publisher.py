import pytest

from settlechat.nats import NatsError
from settlechat.publisher import NatsPublisher
from settlechat.topics import Topics


class FakeManager:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def publish(self, subject, data):
        if self.fail:
            raise NatsError("not connected")
        self.sent.append((subject, data))


@pytest.mark.asyncio
async def test_publish_forwards_to_manager():
    manager = FakeManager()
    publisher = NatsPublisher(manager, "dev", Topics())
    await publisher.publish("settlechat.message.chat.r1", b"hello")
    assert manager.sent == [("settlechat.message.chat.r1", b"hello")]


@pytest.mark.asyncio
async def test_publish_keeps_order():
    manager = FakeManager()
    publisher = NatsPublisher(manager, "dev", Topics())
    for index in range(3):
        await publisher.publish("a.b.c.d", str(index).encode())
    assert [data for _, data in manager.sent] == [b"0", b"1", b"2"]


@pytest.mark.asyncio
async def test_publish_error_propagates():
    publisher = NatsPublisher(FakeManager(fail=True), "dev", Topics())
    with pytest.raises(NatsError):
        await publisher.publish("a.b.c.d", b"x")


def test_topics_are_exposed():
    topics = Topics("test")
    publisher = NatsPublisher(FakeManager(), "test", topics)
    assert publisher.topics is topics
    assert publisher.topics.message_topic("r1") == topics.message_topic("r1")
    assert publisher.env == "test"