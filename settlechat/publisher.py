"""Publisher that sends raw payloads through the shared bus connection."""

from __future__ import annotations

import logging

from settlechat.events import TopicFormatter
from settlechat.nats import NatsManager

log = logging.getLogger(__name__)


class NatsPublisher:
    """Publishes payloads to subjects on behalf of one environment."""

    def __init__(self, manager: NatsManager, env: str, topics: TopicFormatter) -> None:
        log.info("Creating new publisher for environment: %s", env)
        self.manager = manager
        self.env = env
        self.topics = topics

    async def publish(self, topic: str, data: bytes | str) -> None:
        """Send ``data`` to ``topic``; errors of the connection propagate."""
        await self.manager.publish(topic, data)