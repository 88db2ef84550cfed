from http import HTTPStatus

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from settlechat.chat import Hub
from settlechat.handlers import (
    BroadcastHandler,
    HistoryHandler,
    HistoryResponseHandler,
    PresenceHandler,
)
from settlechat.server import initialize_handlers, main, register_handlers, setup_routes
from settlechat.topics import Topics
from settlechat.web import AuthHandler, RoomHandler


class RecordingSubscriber:
    def __init__(self):
        self.registered = []

    def register_handler(self, category, action, handler):
        self.registered.append((category, action, handler))


def test_initialize_handlers_keys_and_wiring():
    hub = Hub()
    topics = Topics()
    handlers = initialize_handlers(None, None, topics, "dev", hub)
    assert set(handlers) == {
        "user.joined",
        "user.left",
        "user.presence",
        "message.chat",
        "message.history.request",
        "message.history.response",
        "message.broadcast",
        "system.message",
        "connection.event",
    }
    assert isinstance(handlers["message.broadcast"], BroadcastHandler)
    assert handlers["message.broadcast"].hub is hub
    assert isinstance(handlers["message.history.response"], HistoryResponseHandler)
    assert isinstance(handlers["message.history.request"], HistoryHandler)
    assert handlers["message.history.request"].topics is topics
    assert isinstance(handlers["user.presence"], PresenceHandler)
    assert handlers["user.presence"].env == "dev"


def test_register_handlers_splits_on_first_dot():
    subscriber = RecordingSubscriber()
    first, second, third = object(), object(), object()
    register_handlers(
        subscriber,
        {"message.history.request": first, "user.joined": second, "nodot": third},
    )
    assert subscriber.registered == [
        ("message", "history.request", first),
        ("user", "joined", second),
    ]


@pytest.mark.asyncio
async def test_setup_routes_serves_static_and_api(tmp_path):
    static = tmp_path / "web"
    static.mkdir()
    (static / "index.html").write_text("<h1>chat</h1>")
    (static / "app.js").write_text("let x = 1;")

    app = web.Application()
    setup_routes(app, Hub(), AuthHandler(None), RoomHandler(None, None, "dev", None), static)
    async with TestClient(TestServer(app)) as client:
        resp = await client.get("/")
        assert resp.status == HTTPStatus.OK
        assert await resp.text() == "<h1>chat</h1>"

        resp = await client.get("/app.js")
        assert await resp.text() == "let x = 1;"

        resp = await client.get("/missing.html")
        assert resp.status == HTTPStatus.NOT_FOUND

        resp = await client.post("/register", data="not json")
        assert resp.status == HTTPStatus.BAD_REQUEST
        assert "invalid request body" in await resp.text()

        resp = await client.get("/rooms")
        assert "missing user_id" in await resp.text()


def test_main_without_database_url_fails(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", "")
    assert main([]) == 1


def test_main_fails_when_bus_unreachable(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    db_path = tmp_path / "chat.db"
    monkeypatch.setenv("DATABASE_URL", str(db_path))
    monkeypatch.setenv("NATS_URL", "nats://127.0.0.1:1")
    assert main(["--port", "0"]) == 1
    assert db_path.exists()