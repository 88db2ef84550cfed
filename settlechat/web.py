"""HTTP and websocket endpoints for accounts, rooms and live chat."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from datetime import datetime
from functools import partial
from http import HTTPStatus
from typing import Any

from aiohttp import web

from settlechat.chat import Client, Hub
from settlechat.models import format_timestamp
from settlechat.nats import NatsError
from settlechat.storage import AuthenticationError, StorageError

log = logging.getLogger(__name__)

_PUBLISH_ERRORS = (NatsError, ValueError)


class _BadRequest(Exception):
    """The request body could not be decoded."""


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    raise TypeError(f"cannot encode {type(value).__name__}")


_dumps = partial(json.dumps, default=_json_default, ensure_ascii=False)


def _json(data: Any, status: int = HTTPStatus.OK) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


def _error(status: int, message: str) -> web.Response:
    return web.Response(status=status, text=f"{message}\n")


async def _read_fields(request: web.Request, *names: str) -> dict[str, str]:
    """Decode a JSON object body into string fields; absent fields are empty."""
    try:
        payload = json.loads(await request.text())
    except ValueError as exc:
        raise _BadRequest(str(exc)) from exc
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise _BadRequest("expected a JSON object")
    fields: dict[str, str] = {}
    for name in names:
        value = payload.get(name)
        if value is None:
            value = ""
        if not isinstance(value, str):
            raise _BadRequest(f"field {name} must be a string")
        fields[name] = value
    return fields


class AuthHandler:
    """Registration, login and user lookup."""

    def __init__(self, store: Any) -> None:
        self.store = store

    async def register(self, request: web.Request) -> web.Response:
        try:
            req = await _read_fields(request, "username", "password")
        except _BadRequest:
            return _error(HTTPStatus.BAD_REQUEST, "invalid request body")
        try:
            user_id = await self.store.register(req["username"], req["password"])
        except StorageError as exc:
            log.warning("Register failed: %s", exc)
            return _error(HTTPStatus.BAD_REQUEST, str(exc))
        return _json({"user_id": user_id})

    async def login(self, request: web.Request) -> web.Response:
        try:
            req = await _read_fields(request, "username", "password")
        except _BadRequest:
            return _error(HTTPStatus.BAD_REQUEST, "invalid request body")
        try:
            user_id = await self.store.login(req["username"], req["password"])
        except (AuthenticationError, StorageError) as exc:
            return _error(HTTPStatus.UNAUTHORIZED, str(exc))
        return _json({"user_id": user_id})

    async def get_user_by_id(self, request: web.Request) -> web.Response:
        user_id = request.query.get("user_id", "")
        if not user_id:
            return _error(HTTPStatus.BAD_REQUEST, "missing user_id")
        try:
            user = await self.store.get_user_by_id(user_id)
        except StorageError as exc:
            return _error(HTTPStatus.INTERNAL_SERVER_ERROR, str(exc))
        return _json(user.to_dict())


class RoomHandler:
    """Room creation, membership requests and room listing."""

    def __init__(self, store: Any, publisher: Any, env: str, event_bus: Any) -> None:
        self.store = store
        self.publisher = publisher
        self.env = env
        self.event_bus = event_bus

    async def create_room(self, request: web.Request) -> web.Response:
        """Create (or find) a room by name and announce its creator as joined."""
        try:
            req = await _read_fields(request, "room_name", "user_id")
        except _BadRequest:
            return _error(HTTPStatus.BAD_REQUEST, "invalid request body")
        try:
            user = await self.store.get_user_by_id(req["user_id"])
        except StorageError as exc:
            log.error("Failed to get user info: %s", exc)
            return _error(HTTPStatus.INTERNAL_SERVER_ERROR, str(exc))
        try:
            room_id = await self.store.create_room(req["room_name"], req["user_id"])
        except StorageError as exc:
            return _error(HTTPStatus.INTERNAL_SERVER_ERROR, str(exc))
        if self.event_bus is not None:
            try:
                await self.event_bus.publish_user_joined_event(
                    room_id, req["user_id"], user.username
                )
            except _PUBLISH_ERRORS as exc:
                log.error("Failed to publish UserJoined event: %s", exc)
        return _json({"room_id": room_id})

    async def join_room(self, request: web.Request) -> web.Response:
        try:
            req = await _read_fields(request, "room_id", "user_id", "username")
        except _BadRequest:
            return _error(HTTPStatus.BAD_REQUEST, "invalid request body")
        if self.event_bus is not None:
            try:
                await self.event_bus.publish_user_joined_event(
                    req["room_id"], req["user_id"], req["username"]
                )
            except _PUBLISH_ERRORS as exc:
                log.error("Failed to publish UserJoined event: %s", exc)
        return web.Response(status=HTTPStatus.ACCEPTED)

    async def leave_room(self, request: web.Request) -> web.Response:
        try:
            req = await _read_fields(request, "room_id", "user_id")
        except _BadRequest:
            return _error(HTTPStatus.BAD_REQUEST, "invalid request body")
        try:
            user = await self.store.get_user_by_id(req["user_id"])
        except StorageError as exc:
            log.error("Failed to get user info: %s", exc)
            return _error(HTTPStatus.INTERNAL_SERVER_ERROR, str(exc))
        if self.event_bus is not None:
            try:
                await self.event_bus.publish_user_left_event(req["room_id"], user.id, user.username)
            except _PUBLISH_ERRORS as exc:
                log.error("Failed to publish UserLeft event: %s", exc)
        return web.Response(status=HTTPStatus.OK)

    async def get_user_rooms(self, request: web.Request) -> web.Response:
        user_id = request.query.get("user_id", "")
        if not user_id:
            return _error(HTTPStatus.BAD_REQUEST, "missing user_id")
        try:
            rooms = await self.store.get_user_rooms(user_id)
        except StorageError as exc:
            return _error(HTTPStatus.INTERNAL_SERVER_ERROR, str(exc))
        return _json([room.to_dict() for room in rooms])


def websocket_handler(hub: Hub):
    """Build the request handler that attaches websocket clients to ``hub``."""

    async def handle(request: web.Request) -> web.StreamResponse:
        room_id = request.query.get("room", "")
        user_id = request.query.get("user_id", "")
        username = request.query.get("username", "")
        if not (room_id and user_id and username):
            log.warning("Missing query parameters")
            return _error(HTTPStatus.BAD_REQUEST, "Missing room/user_id/username")

        ws = web.WebSocketResponse()
        if not ws.can_prepare(request).ok:
            log.warning("Error upgrading: not a websocket request")
            return _error(HTTPStatus.BAD_REQUEST, "websocket upgrade required")
        await ws.prepare(request)

        client = Client(hub, user_id, username, ws, room_id, hub.event_bus)
        await hub.register(client)

        writer = asyncio.get_running_loop().create_task(client.write_pump())
        try:
            await client.read_pump()
        finally:
            done, _ = await asyncio.wait({writer}, timeout=client.write_wait)
            if not done:
                writer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await writer
        return ws

    return handle