"""Subscriptions on the bus and dispatch of messages to handlers."""

from __future__ import annotations

import inspect
import logging
from typing import Any

from settlechat.events import MessageHandler, TopicFormatter
from settlechat.nats import Msg, NatsError, NatsManager, Subscription

log = logging.getLogger(__name__)


class SubscriptionError(Exception):
    """Subscribing to or unsubscribing from a subject failed."""


def parse_topic(topic: str) -> list[str]:
    """Split a subject into parts, keeping ``history.request``/``history.response`` whole."""
    parts = topic.split(".")
    if len(parts) >= 4 and parts[1] == "message" and parts[2] == "history":
        if parts[3] in ("request", "response"):
            return [parts[0], parts[1], f"history.{parts[3]}", *parts[4:]]
    return parts


class Subscriber:
    """Manages the subscriptions of the server and routes messages by subject."""

    def __init__(
        self, manager: NatsManager, store: Any, env: str, topics: TopicFormatter
    ) -> None:
        log.info("Creating new subscriber for environment: %s", env)
        self._manager = manager
        self.store = store
        self.env = env
        self.topics = topics
        self._subs: list[Subscription] = []
        self._handlers: dict[str, MessageHandler] = {}

    def register_handler(self, category: str, action: str, handler: MessageHandler) -> None:
        key = f"{category}.{action}"
        self._handlers[key] = handler
        log.info("Handler registered for %s", key)

    async def subscribe_to_room(self, room_id: str) -> None:
        """Subscribe to every subject of a room; stops at the first failure."""
        log.info("Starting subscription process for room: %s", room_id)
        topics = self.topics
        for name, topic in (
            ("user joined", topics.user_joined_topic(room_id)),
            ("user left", topics.user_left_topic(room_id)),
            ("message", topics.message_topic(room_id)),
            ("broadcast", topics.broadcast_topic(room_id)),
            ("system", topics.system_message_topic(room_id)),
            ("presence", topics.presence_topic(room_id)),
            ("history message", topics.history_request_topic(room_id)),
            ("connection event", topics.connection_topic(room_id)),
        ):
            try:
                await self.subscribe_topic(topic)
            except SubscriptionError as exc:
                log.error("Failed to subscribe to %s topic: %s", name, exc)
                raise
        log.info("Successfully subscribed to all topics for room: %s", room_id)

    async def subscribe_topic(self, topic: str) -> None:
        try:
            sub = await self._manager.subscribe(topic, self._dispatch)
        except NatsError as exc:
            raise SubscriptionError(f"failed to subscribe to topic {topic}: {exc}") from exc
        self._subs.append(sub)
        log.info("Successfully subscribed to topic: %s", topic)

    async def _dispatch(self, msg: Msg) -> None:
        parts = parse_topic(msg.subject)
        if len(parts) < 4:
            log.error("Invalid topic format: %s (expected at least 4 parts)", msg.subject)
            return
        key = f"{parts[1]}.{parts[2]}"
        handler = self._handlers.get(key)
        if handler is None:
            log.error("No handler found for topic: %s (key: %s)", msg.subject, key)
            return
        try:
            result = handler.handle(msg)
            if inspect.isawaitable(result):
                await result
        except Exception:
            log.exception("Failed to handle message for topic %s", msg.subject)
        else:
            log.debug("Successfully processed message for topic: %s", msg.subject)

    async def unsubscribe(self) -> None:
        """Cancel every subscription; failures are logged and skipped."""
        for index, sub in enumerate(self._subs, start=1):
            try:
                await sub.unsubscribe()
            except NatsError as exc:
                log.error("Error unsubscribing from subscription %d: %s", index, exc)
        self._subs = []

    async def close(self) -> None:
        await self.unsubscribe()
        log.info("Subscriber closed")

    async def unsubscribe_topic(self, topic: str) -> None:
        """Cancel the first subscription to ``topic``."""
        for sub in self._subs:
            if sub.subject == topic:
                try:
                    await sub.unsubscribe()
                except NatsError as exc:
                    raise SubscriptionError(
                        f"failed to unsubscribe from topic {topic}: {exc}"
                    ) from exc
                self._subs.remove(sub)
                log.info("Successfully unsubscribed from topic: %s", topic)
                return
        raise SubscriptionError(f"no subscription found for topic: {topic}")