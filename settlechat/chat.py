"""Chat rooms, connected clients and the hub that tracks them."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

from aiohttp import WSMsgType

from settlechat.models import ChatMessage
from settlechat.nats import NatsError
from settlechat.subscriber import SubscriptionError

log = logging.getLogger(__name__)

WRITE_WAIT = 10.0
PONG_WAIT = 120.0
PING_PERIOD = PONG_WAIT * 9 / 10
MAX_MESSAGE_SIZE = 1024
SEND_BUFFER_SIZE = 256
HISTORY_LIMIT = 50

_CLOSED = object()
_SOCKET_ERRORS = (asyncio.TimeoutError, ConnectionError, OSError, RuntimeError)
_PUBLISH_ERRORS = (NatsError, ValueError)


class Client:
    """One websocket connection of a user in a room."""

    def __init__(
        self,
        hub: Optional[Hub],
        id: str,
        username: str,
        conn: Any,
        room_id: str,
        event_bus: Any = None,
        *,
        write_wait: float = WRITE_WAIT,
        pong_wait: float = PONG_WAIT,
        ping_period: float = PING_PERIOD,
        max_message_size: int = MAX_MESSAGE_SIZE,
        buffer_size: int = SEND_BUFFER_SIZE,
    ) -> None:
        self.hub = hub
        self.id = id
        self.username = username
        self.conn = conn
        self.room_id = room_id
        self.event_bus = event_bus
        self.write_wait = write_wait
        self.pong_wait = pong_wait
        self.ping_period = ping_period
        self.max_message_size = max_message_size
        self.send: asyncio.Queue[Any] = asyncio.Queue(maxsize=buffer_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close_send(self) -> None:
        """Close the outgoing queue; the write pump then closes the socket."""
        if self._closed:
            return
        self._closed = True
        while True:
            try:
                self.send.put_nowait(_CLOSED)
                return
            except asyncio.QueueFull:
                self.send.get_nowait()

    async def _close_conn(self) -> None:
        try:
            await self.conn.close()
        except _SOCKET_ERRORS as exc:
            log.debug("Error closing connection of %s: %s", self.id, exc)

    async def write_pump(self) -> None:
        """Write queued messages to the socket and ping it periodically."""
        loop = asyncio.get_running_loop()
        next_ping = loop.time() + self.ping_period
        try:
            while True:
                timeout = max(0.0, next_ping - loop.time())
                try:
                    item = await asyncio.wait_for(self.send.get(), timeout)
                except asyncio.TimeoutError:
                    try:
                        await asyncio.wait_for(self.conn.ping(), self.write_wait)
                    except _SOCKET_ERRORS as exc:
                        log.warning("Error sending ping to client %s: %s", self.id, exc)
                        return
                    log.debug("Sent ping to client: %s", self.id)
                    next_ping = loop.time() + self.ping_period
                    continue
                if item is _CLOSED:
                    try:
                        await asyncio.wait_for(self.conn.close(), self.write_wait)
                    except _SOCKET_ERRORS:
                        pass
                    return
                try:
                    await asyncio.wait_for(self.conn.send_json(item.to_dict()), self.write_wait)
                except _SOCKET_ERRORS as exc:
                    log.warning("Error writing to WebSocket: %s", exc)
                    return
        finally:
            await self._close_conn()

    async def read_pump(self) -> None:
        """Read messages from the socket and publish them as chat events."""
        log.info("client connected: %s (%s) in room %s", self.username, self.id, self.room_id)
        try:
            while True:
                try:
                    frame = await self.conn.receive(timeout=self.pong_wait)
                except _SOCKET_ERRORS as exc:
                    log.info("client connection ended: %s", exc)
                    break
                if frame.type in (WSMsgType.PING, WSMsgType.PONG):
                    log.debug("Received %s from client: %s", frame.type.name.lower(), self.id)
                    continue
                if frame.type not in (WSMsgType.TEXT, WSMsgType.BINARY):
                    log.info("client closed connection: %s", self.id)
                    break
                data = frame.data
                raw = data if isinstance(data, bytes) else str(data).encode()
                if len(raw) > self.max_message_size:
                    log.warning("message from %s exceeds read limit", self.id)
                    break
                try:
                    msg = ChatMessage.from_dict(json.loads(raw))
                except ValueError as exc:
                    log.warning("invalid message from %s: %s", self.id, exc)
                    break
                if msg.content == "" and msg.sender_id == "":
                    log.debug("Received heartbeat from client: %s", self.id)
                    continue
                log.info("[%s] %s: %s", self.id, self.username, msg.content)
                if self.event_bus is None:
                    log.warning("EventBus is not set")
                    continue
                try:
                    await self.event_bus.publish_new_message_event(
                        self.room_id, self.id, self.username, msg.content
                    )
                except _PUBLISH_ERRORS as exc:
                    log.error("Failed to publish New Message event: %s", exc)
        finally:
            if self.hub is not None:
                await self.hub.unregister(self)
            await self._close_conn()


class ChatRoom:
    """The clients connected to one room."""

    def __init__(self, id: str, publisher: Any = None, subscriber: Any = None, event_bus: Any = None) -> None:
        self.id = id
        self.clients: dict[str, Client] = {}
        self.publisher = publisher
        self.subscriber = subscriber
        self.event_bus = event_bus

    async def add_client(self, client: Client) -> None:
        """Add a client, subscribe to its history replies and announce it."""
        log.info("Adding client %s to room %s", client.id, self.id)
        self.clients[client.id] = client

        if self.subscriber is not None:
            topic = self.subscriber.topics.history_response_topic(self.id, client.id)
            try:
                await self.subscriber.subscribe_topic(topic)
            except SubscriptionError as exc:
                log.error("Failed to subscribe to history response topic for %s: %s", client.id, exc)
        else:
            log.warning("Subscriber is not set for room %s", self.id)

        if self.event_bus is not None:
            try:
                await self.event_bus.publish_connect_event(self.id, client.id, client.username)
            except _PUBLISH_ERRORS as exc:
                log.error("Failed to publish client connection event: %s", exc)
            try:
                await self.event_bus.publish_history_request_event(self.id, client.id, HISTORY_LIMIT)
            except _PUBLISH_ERRORS as exc:
                log.error("Failed to request history messages: %s", exc)

    async def safe_remove_client(self, client: Client) -> None:
        """Remove a client if present, closing its queue and announcing it."""
        if client.id not in self.clients:
            return
        del self.clients[client.id]
        client.close_send()

        if self.event_bus is not None:
            try:
                await self.event_bus.publish_disconnect_event(self.id, client.id, client.username)
            except _PUBLISH_ERRORS as exc:
                log.error("Failed to publish client disconnect event: %s", exc)

        if self.subscriber is not None:
            topic = self.subscriber.topics.history_response_topic(self.id, client.id)
            try:
                await self.subscriber.unsubscribe_topic(topic)
            except SubscriptionError as exc:
                log.error("Failed to unsubscribe from history response topic for %s: %s", client.id, exc)

    async def run(self, subscriber: Any) -> None:
        """Subscribe to every subject of the room; failures are logged."""
        if subscriber is None:
            log.warning("No subscriber to activate room %s", self.id)
            return
        try:
            await subscriber.subscribe_to_room(self.id)
        except SubscriptionError as exc:
            log.error("Failed to subscribe to room %s: %s", self.id, exc)
            return
        log.info("Room %s is now active with subscriptions", self.id)


class Hub:
    """Tracks rooms and routes client registrations to them."""

    def __init__(
        self,
        store: Any = None,
        publisher: Any = None,
        subscriber: Any = None,
        topics: Any = None,
        event_bus: Any = None,
    ) -> None:
        self.rooms: dict[str, ChatRoom] = {}
        self.store = store
        self.publisher = publisher
        self.subscriber = subscriber
        self.topics = topics
        self.event_bus = event_bus
        self._tasks: set[asyncio.Task[None]] = set()

    def _get_or_create_room(self, room_id: str) -> ChatRoom:
        room = self.rooms.get(room_id)
        if room is not None:
            return room
        log.info("Creating new room: %s", room_id)
        room = ChatRoom(room_id, self.publisher, self.subscriber, self.event_bus)
        self.rooms[room_id] = room
        task = asyncio.get_running_loop().create_task(room.run(self.subscriber))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return room

    async def register(self, client: Client) -> None:
        room = self._get_or_create_room(client.room_id)
        await room.add_client(client)

    async def unregister(self, client: Client) -> None:
        room = self.rooms.get(client.room_id)
        if room is not None:
            await room.safe_remove_client(client)

    def find_client(self, room_id: str, user_id: str) -> Optional[Client]:
        room = self.rooms.get(room_id)
        if room is None:
            return None
        return room.clients.get(user_id)

    def get_room(self, room_id: str) -> Optional[ChatRoom]:
        return self.rooms.get(room_id)

    async def close(self) -> None:
        """Close every client connection and forget all rooms."""
        for room in self.rooms.values():
            for client in list(room.clients.values()):
                client.close_send()
                await client._close_conn()
        self.rooms = {}