"""Publishes domain events to the subjects that belong to them."""

from __future__ import annotations

import logging

from settlechat import events
from settlechat.events import Event, TopicFormatter
from settlechat.nats import NatsError, NatsManager

log = logging.getLogger(__name__)


class EventBus:
    """Routes each event to its subject by event type and publishes it."""

    def __init__(self, manager: NatsManager, topics: TopicFormatter) -> None:
        self._manager = manager
        self.topics = topics

    async def publish_event(self, event: Event, room_id: str) -> None:
        """Encode ``event`` as JSON and publish it to its subject.

        Raises ValueError if the event cannot be encoded and NatsError if
        publishing fails.
        """
        try:
            data = event.to_json()
        except (TypeError, ValueError) as exc:
            raise ValueError(f"marshal event error: {exc}") from exc
        topic = self.topic_for_event(event, room_id)
        log.info("Publishing event type [%s] to topic: %s", event.type, topic)
        try:
            await self._manager.publish(topic, data)
        except NatsError as exc:
            raise NatsError(f"publish event error: {exc}") from exc

    def topic_for_event(self, event: Event, room_id: str) -> str:
        event_type = event.type
        topics = self.topics
        if event_type.startswith("connection."):
            return topics.connection_topic(room_id)
        if event_type == events.EVENT_TYPE_USER_JOINED:
            return topics.user_joined_topic(room_id)
        if event_type == events.EVENT_TYPE_USER_LEFT:
            return topics.user_left_topic(room_id)
        if event_type == events.EVENT_TYPE_USER_PRESENCE:
            return topics.presence_topic(room_id)
        if event_type == events.EVENT_TYPE_NEW_MESSAGE:
            return topics.message_topic(room_id)
        if event_type == events.EVENT_TYPE_BROADCAST_MSG:
            return topics.broadcast_topic(room_id)
        if event_type.startswith(events.EVENT_TYPE_MESSAGE_HISTORY):
            if "request" in event_type:
                return topics.history_request_topic(room_id)
            return topics.history_response_topic(room_id, "system")
        return topics.system_message_topic(room_id)

    async def publish_connect_event(self, room_id: str, user_id: str, username: str) -> None:
        await self.publish_event(events.connect_event(room_id, user_id, username), room_id)

    async def publish_disconnect_event(self, room_id: str, user_id: str, username: str) -> None:
        await self.publish_event(events.disconnect_event(room_id, user_id, username), room_id)

    async def publish_user_joined_event(self, room_id: str, user_id: str, username: str) -> None:
        await self.publish_event(events.user_joined_event(room_id, user_id, username), room_id)

    async def publish_user_left_event(self, room_id: str, user_id: str, username: str) -> None:
        await self.publish_event(events.user_left_event(room_id, user_id, username), room_id)

    async def publish_presence_event(
        self, room_id: str, user_id: str, username: str, is_online: bool
    ) -> None:
        await self.publish_event(
            events.presence_event(room_id, user_id, username, is_online), room_id
        )

    async def publish_new_message_event(
        self, room_id: str, user_id: str, username: str, content: str
    ) -> None:
        await self.publish_event(
            events.chat_message_event(room_id, user_id, username, content), room_id
        )

    async def publish_history_request_event(self, room_id: str, user_id: str, limit: int) -> None:
        await self.publish_event(events.history_request_event(room_id, user_id, limit), room_id)