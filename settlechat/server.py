"""Server entry point: wires storage, the message bus, handlers and HTTP routes."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from collections.abc import Mapping
from http import HTTPStatus
from pathlib import Path
from typing import Any

from aiohttp import web
from dotenv import load_dotenv

from settlechat.chat import Hub
from settlechat.eventbus import EventBus
from settlechat.events import MessageHandler
from settlechat.handlers import (
    BroadcastHandler,
    ChatMessageHandler,
    ConnectionEventHandler,
    HistoryHandler,
    HistoryResponseHandler,
    PresenceHandler,
    SystemMessageHandler,
    UserJoinedHandler,
    UserLeftHandler,
)
from settlechat.nats import DEFAULT_URL, NatsError, NatsManager
from settlechat.publisher import NatsPublisher
from settlechat.storage import StorageError, Store
from settlechat.subscriber import Subscriber
from settlechat.topics import Topics
from settlechat.web import AuthHandler, RoomHandler, websocket_handler

log = logging.getLogger(__name__)

DEFAULT_PORT = 8080
SHUTDOWN_TIMEOUT = 30.0


def initialize_handlers(
    store: Any, publisher: Any, topics: Any, env: str, hub: Hub
) -> dict[str, MessageHandler]:
    """Build the message handlers keyed by ``category.action``."""
    return {
        "user.joined": UserJoinedHandler(store, publisher, topics, env),
        "user.left": UserLeftHandler(store, publisher, topics, env),
        "user.presence": PresenceHandler(store, topics, env),
        "message.chat": ChatMessageHandler(store, publisher, topics),
        "message.history.request": HistoryHandler(store, publisher, topics, env),
        "message.history.response": HistoryResponseHandler(hub),
        "message.broadcast": BroadcastHandler(hub),
        "system.message": SystemMessageHandler(publisher, topics, env),
        "connection.event": ConnectionEventHandler(store, publisher, topics),
    }


def register_handlers(subscriber: Any, handlers: Mapping[str, MessageHandler]) -> None:
    """Register each handler under its category and the rest of its key."""
    for topic, handler in handlers.items():
        category, _, action = topic.partition(".")
        if action:
            subscriber.register_handler(category, action, handler)


def _static_handler(root: Path):
    async def serve(request: web.Request) -> web.StreamResponse:
        base = root.resolve()
        target = (base / request.match_info["path"]).resolve()
        try:
            target.relative_to(base)
        except ValueError:
            raise web.HTTPNotFound() from None
        if target.is_dir():
            target = target / "index.html"
        if not target.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(target)

    return serve


def setup_routes(
    app: web.Application,
    hub: Hub,
    auth: AuthHandler,
    room: RoomHandler,
    static_dir: str | os.PathLike[str],
) -> None:
    router = app.router
    router.add_route("GET", "/ws", websocket_handler(hub))
    router.add_route("*", "/register", auth.register)
    router.add_route("*", "/login", auth.login)
    router.add_route("*", "/user", auth.get_user_by_id)
    router.add_route("*", "/rooms/create", room.create_room)
    router.add_route("*", "/rooms/join", room.join_room)
    router.add_route("*", "/rooms/leave", room.leave_room)
    router.add_route("*", "/rooms", room.get_user_rooms)
    router.add_get("/{path:.*}", _static_handler(Path(static_dir)))


async def _wait_for_signal() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass
    await stop.wait()


async def _serve(dsn: str, nats_url: str, env: str, host: str, port: int, static_dir: str) -> int:
    try:
        store = await Store.open(dsn)
    except StorageError as exc:
        log.error("Failed to open database: %s", exc)
        return 1
    try:
        manager = NatsManager(nats_url, True)
        try:
            await manager.connect()
        except NatsError as exc:
            log.error("Failed to connect to NATS: %s", exc)
            return 1
        try:
            topics = Topics("")
            publisher = NatsPublisher(manager, env, topics)
            event_bus = EventBus(manager, topics)
            hub = Hub(store, publisher, None, topics, event_bus)

            handlers = initialize_handlers(store, publisher, topics, env, hub)
            subscriber = Subscriber(manager, store, env, topics)
            register_handlers(subscriber, handlers)
            hub.subscriber = subscriber

            app = web.Application()
            setup_routes(
                app,
                hub,
                AuthHandler(store),
                RoomHandler(store, publisher, env, event_bus),
                static_dir,
            )
            runner = web.AppRunner(app, shutdown_timeout=SHUTDOWN_TIMEOUT)
            await runner.setup()
            try:
                site = web.TCPSite(runner, host or None, port)
                await site.start()
            except OSError as exc:
                await runner.cleanup()
                log.error("HTTP server error: %s", exc)
                return 1
            log.info("Server starting on %s:%d in %s environment", host, port, env)

            await _wait_for_signal()
            log.info("Shutting down server...")
            await site.stop()
            await hub.close()
            await runner.cleanup()
            await subscriber.close()
            log.info("Server gracefully stopped")
            return 0
        finally:
            await manager.disconnect()
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="settlechat", description="Run the chat server.")
    parser.add_argument("--host", default="", help="address to listen on (default: all)")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="port to listen on")
    parser.add_argument("--static-dir", default="./web", help="directory of the web client")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    if not load_dotenv(".env"):
        log.warning(".env file not found")

    env = os.environ.get("ENVIRONMENT") or "dev"
    dsn = os.environ.get("DATABASE_URL", "")
    if not dsn:
        log.error("DATABASE_URL not set")
        return 1
    nats_url = os.environ.get("NATS_URL") or DEFAULT_URL

    try:
        return asyncio.run(_serve(dsn, nats_url, env, args.host, args.port, args.static_dir))
    except KeyboardInterrupt:
        return 0


__all__ = [
    "HTTPStatus",
    "initialize_handlers",
    "main",
    "register_handlers",
    "setup_routes",
]