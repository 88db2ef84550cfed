"""Handlers for the events and messages that arrive on the bus."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar

from settlechat.chat import Client, Hub
from settlechat.events import ChatMessageEvent, Publisher, TopicFormatter
from settlechat.models import (
    ChatMessage,
    HistoryRequest,
    HistoryResponse,
    PresenceMessage,
    SystemMessage,
    UserJoinedMessage,
    UserLeftMessage,
)
from settlechat.nats import Msg, NatsError
from settlechat.storage import StorageError

log = logging.getLogger(__name__)

STORE_TIMEOUT = 5.0
HISTORY_BATCH_SIZE = 10
HISTORY_BATCH_DELAY = 0.05
HISTORY_RETRY_DELAY = 0.1

T = TypeVar("T")


class HandlerError(Exception):
    """A message could not be handled."""


def _encode(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode()


def _decode(msg: Msg, parse: Callable[[Any], T], what: str) -> T:
    try:
        return parse(json.loads(msg.data))
    except ValueError as exc:
        log.error("Failed to unmarshal %s: %s", what, exc)
        raise HandlerError(f"invalid {what}: {exc}") from exc


def _decode_chat(msg: Msg) -> tuple[ChatMessage, bool]:
    """Decode a chat payload, first as an event, then as a plain message.

    The flag tells whether the event form was accepted.
    """
    try:
        event = ChatMessageEvent.from_dict(json.loads(msg.data))
    except ValueError:
        return _decode(msg, ChatMessage.from_dict, "chat message"), False
    message = ChatMessage(
        room_id=event.room_id,
        sender_id=event.sender_id,
        sender=event.sender,
        content=event.content,
        timestamp=event.timestamp,
    )
    return message, True


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ConnectionEventHandler:
    """Records activity of users whose websocket connected or disconnected."""

    store: Any
    publisher: Publisher
    topics: TopicFormatter

    async def handle(self, msg: Msg) -> None:
        payload = _decode(msg, lambda data: data, "connection event")
        if not isinstance(payload, dict):
            raise HandlerError("invalid connection event: expected a JSON object")

        fields: dict[str, str] = {}
        for key in ("room_id", "user_id", "username"):
            value = payload.get(key)
            if not isinstance(value, str):
                log.warning("Invalid %s in connection event", key)
                return
            fields[key] = value

        is_connection = payload.get("event_type") != "disconnect"
        try:
            await self.store.update_last_active(fields["user_id"])
        except StorageError as exc:
            log.warning("Failed to update user's last active time: %s", exc)

        log.info(
            "Processed connection event for user %s in room %s: connected=%s",
            fields["username"],
            fields["room_id"],
            is_connection,
        )


@dataclass
class ChatMessageHandler:
    """Stores chat messages and forwards them to the room's broadcast subject."""

    store: Any
    publisher: Publisher
    topics: TopicFormatter

    async def handle(self, msg: Msg) -> None:
        chat_msg, from_event = _decode_chat(msg)
        if not from_event:
            if not chat_msg.sender_id:
                log.warning("SenderID is empty in the message")
            if not chat_msg.sender:
                log.warning("Sender is empty in the message")

        try:
            await asyncio.wait_for(self.store.save_message(chat_msg), STORE_TIMEOUT)
        except StorageError as exc:
            log.error("Failed to save message to database: %s", exc)
            raise

        data = _encode(chat_msg.to_dict()) if from_event else msg.data
        try:
            await self.publisher.publish(self.topics.broadcast_topic(chat_msg.room_id), data)
        except NatsError as exc:
            log.error("Failed to broadcast message: %s", exc)
            raise
        log.info("Message from %s processed and broadcast", chat_msg.sender)


@dataclass
class HistoryHandler:
    """Answers history requests with the recent messages of a room."""

    store: Any
    publisher: Publisher
    topics: TopicFormatter
    env: str = ""

    async def handle(self, msg: Msg) -> None:
        request = _decode(msg, HistoryRequest.from_dict, "history request")
        log.info("Received history request for room %s from user %s", request.room_id, request.user_id)

        messages = await asyncio.wait_for(
            self.store.get_recent_messages(request.room_id, request.limit), STORE_TIMEOUT
        )
        log.info("Found %d messages for room %s", len(messages), request.room_id)

        response = HistoryResponse(room_id=request.room_id, messages=list(messages))
        reply_topic = self.topics.history_response_topic(request.room_id, request.user_id)
        await self.publisher.publish(reply_topic, _encode(response.to_dict()))
        log.info("Sent history response to %s", reply_topic)


@dataclass
class BroadcastHandler:
    """Delivers a broadcast chat message to every client in its room."""

    hub: Hub

    async def handle(self, msg: Msg) -> None:
        chat_msg, _ = _decode_chat(msg)
        room = self.hub.get_room(chat_msg.room_id)
        if room is None:
            log.warning("Room not found: %s", chat_msg.room_id)
            raise HandlerError(f"room not found: {chat_msg.room_id}")

        for client in list(room.clients.values()):
            if client.closed:
                continue
            try:
                client.send.put_nowait(chat_msg)
            except asyncio.QueueFull:
                log.warning("Client %s send buffer full, message dropped", client.id)
                client.close_send()
                room.clients.pop(client.id, None)
            else:
                log.debug("Sent message to client %s", client.id)


@dataclass
class HistoryResponseHandler:
    """Feeds a history response to the client it was requested for, in batches."""

    hub: Hub
    batch_size: int = HISTORY_BATCH_SIZE
    batch_delay: float = HISTORY_BATCH_DELAY
    retry_delay: float = HISTORY_RETRY_DELAY

    async def handle(self, msg: Msg) -> None:
        response = _decode(msg, HistoryResponse.from_dict, "history response")

        parts = msg.subject.split(".")
        if len(parts) < 6:
            log.warning("Invalid history response topic format: %s", msg.subject)
            raise HandlerError(f"invalid history response topic format: {msg.subject}")
        user_id = parts[5]

        client = self.hub.find_client(response.room_id, user_id)
        if client is None:
            raise HandlerError(f"client not found: room={response.room_id}, user={user_id}")

        total = len(response.messages)
        if total == 0:
            log.info("No history messages to send for client %s", client.id)
            return

        for start in range(0, total, self.batch_size):
            batch = response.messages[start : start + self.batch_size]
            for number, message in enumerate(batch, start=start + 1):
                await self._deliver(client, message, number, total)
            if start + self.batch_size < total:
                await asyncio.sleep(self.batch_delay)

        log.info("Sent all %d history messages to client %s", total, client.id)

    async def _deliver(self, client: Client, message: ChatMessage, number: int, total: int) -> None:
        if client.closed:
            raise HandlerError(f"client {client.id} send channel closed")
        try:
            client.send.put_nowait(message)
            return
        except asyncio.QueueFull:
            log.warning(
                "Client %s send buffer full at message %d/%d, retrying", client.id, number, total
            )
        await asyncio.sleep(self.retry_delay)
        try:
            client.send.put_nowait(message)
        except asyncio.QueueFull as exc:
            log.error(
                "Client %s send buffer still full, message %d/%d dropped", client.id, number, total
            )
            raise HandlerError("client send buffer full after retry") from exc


@dataclass
class SystemMessageHandler:
    """Turns system notices into chat messages from the ``system`` sender."""

    publisher: Publisher
    topics: TopicFormatter
    env: str = ""

    async def handle(self, msg: Msg) -> None:
        payload = _decode(msg, SystemMessage.from_dict, "system message")
        chat_msg = ChatMessage(
            room_id=payload.room_id,
            sender_id="system",
            content=payload.message,
            timestamp=_now(),
        )
        await self.publisher.publish(
            self.topics.message_topic(payload.room_id), _encode(chat_msg.to_dict())
        )


async def _announce(
    publisher: Publisher,
    topics: TopicFormatter,
    room_id: str,
    user_id: str,
    username: str,
    notice: str,
    is_online: bool,
) -> None:
    system = SystemMessage(room_id=room_id, message=notice, timestamp=_now())
    try:
        await publisher.publish(topics.system_message_topic(room_id), _encode(system.to_dict()))
    except NatsError as exc:
        log.error("Failed to publish system message: %s", exc)

    presence = PresenceMessage(
        room_id=room_id, user_id=user_id, username=username, is_online=is_online
    )
    try:
        await publisher.publish(topics.presence_topic(room_id), _encode(presence.to_dict()))
    except NatsError as exc:
        log.error("Failed to publish presence message: %s", exc)


@dataclass
class UserJoinedHandler:
    """Adds a joining user to the room and announces the arrival."""

    store: Any
    publisher: Publisher
    topics: TopicFormatter
    env: str = ""

    async def handle(self, msg: Msg) -> None:
        payload = _decode(msg, UserJoinedMessage.from_dict, "user joined message")
        try:
            await self.store.add_user_to_room(payload.user_id, payload.room_id)
        except StorageError as exc:
            log.error("Failed to add user to room in database: %s", exc)
            raise
        await _announce(
            self.publisher,
            self.topics,
            payload.room_id,
            payload.user_id,
            payload.username,
            f"{payload.username} joined the room",
            True,
        )


@dataclass
class UserLeftHandler:
    """Announces that a user left a room."""

    store: Any
    publisher: Publisher
    topics: TopicFormatter
    env: str = ""

    async def handle(self, msg: Msg) -> None:
        payload = _decode(msg, UserLeftMessage.from_dict, "user left message")
        await _announce(
            self.publisher,
            self.topics,
            payload.room_id,
            payload.user_id,
            payload.username,
            f"{payload.username} left the room",
            False,
        )


@dataclass
class PresenceHandler:
    """Stores a user's online state in a room."""

    store: Any
    topics: TopicFormatter
    env: str = ""

    async def handle(self, msg: Msg) -> None:
        presence = _decode(msg, PresenceMessage.from_dict, "presence message")
        try:
            await self.store.update_presence(presence.room_id, presence.user_id, presence.is_online)
        except StorageError as exc:
            log.error("Failed to update presence in database: %s", exc)
            raise
        try:
            await self.store.update_last_active(presence.user_id)
        except StorageError as exc:
            log.warning("Failed to update user's last active time: %s", exc)
        log.info(
            "Updated presence for user %s (%s) in room %s: online=%s",
            presence.username,
            presence.user_id,
            presence.room_id,
            presence.is_online,
        )