import contextlib
from datetime import datetime, timedelta, timezone

import pytest

from settlechat.models import ChatMessage, User
from settlechat.storage import (
    AuthenticationError,
    NotFoundError,
    Store,
    StorageError,
    UsernameExistsError,
)


@contextlib.asynccontextmanager
async def memory_store():
    store = await Store.open(":memory:")
    try:
        yield store
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_upsert_user():
    now = datetime.now(timezone.utc)
    async with memory_store() as store:
        await store.upsert_user(
            User(id="test_user_1", username="TestUser", last_active=now, created_at=now)
        )
        user = await store.get_user_by_id("test_user_1")
    assert user.username == "TestUser"
    assert user.created_at == now


@pytest.mark.asyncio
async def test_upsert_user_updates_existing():
    now = datetime.now(timezone.utc)
    async with memory_store() as store:
        await store.upsert_user(User(id="u1", username="Old", last_active=now, created_at=now))
        later = now + timedelta(minutes=5)
        await store.upsert_user(User(id="u1", username="New", last_active=later, created_at=later))
        user = await store.get_user_by_id("u1")
    assert user.username == "New"
    assert user.last_active == later
    assert user.created_at == now


@pytest.mark.asyncio
async def test_save_and_query_messages():
    room_id = "testroom"
    now = datetime.now(timezone.utc)
    msg = ChatMessage(
        room_id=room_id,
        sender_id="test_user_1",
        sender="TestUser",
        content="Hello from test!",
        timestamp=now,
    )
    async with memory_store() as store:
        await store.save_message(msg)
        msgs = await store.get_recent_messages(room_id, 5)
    assert len(msgs) > 0
    found = [m for m in msgs if m.content == msg.content and m.sender_id == msg.sender_id]
    assert len(found) == 1
    assert found[0].room_id == msg.room_id
    assert found[0].sender == msg.sender
    assert found[0].content == msg.content
    assert found[0].timestamp == now


@pytest.mark.asyncio
async def test_recent_messages_are_latest_oldest_first_without_system():
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    async with memory_store() as store:
        for i in range(6):
            await store.save_message(
                ChatMessage(
                    room_id="r",
                    sender_id="u",
                    sender="U",
                    content=f"m{i}",
                    timestamp=base + timedelta(minutes=i),
                )
            )
        await store.save_message(
            ChatMessage(room_id="r", sender_id="system", content="sys", timestamp=base + timedelta(hours=1))
        )
        await store.save_message(
            ChatMessage(room_id="other", sender_id="u", content="x", timestamp=base)
        )
        msgs = await store.get_recent_messages("r", 3)
    assert [m.content for m in msgs] == ["m3", "m4", "m5"]
    assert all(m.id > 0 for m in msgs)


@pytest.mark.asyncio
async def test_recent_messages_empty_room_and_negative_limit():
    async with memory_store() as store:
        assert await store.get_recent_messages("empty", 10) == []
        with pytest.raises(StorageError):
            await store.get_recent_messages("empty", -1)


@pytest.mark.asyncio
async def test_register_and_login():
    password = "password"
    async with memory_store() as store:
        user_id = await store.register("alice", password)
        assert await store.login("alice", password) == user_id
        user = await store.get_user_by_id(user_id)
    assert user.username == "alice"


@pytest.mark.asyncio
async def test_register_duplicate_username():
    password = "password"
    async with memory_store() as store:
        await store.register("alice", password)
        with pytest.raises(UsernameExistsError, match="username already exists"):
            await store.register("alice", password)


@pytest.mark.asyncio
async def test_login_failures():
    password = "password"
    async with memory_store() as store:
        await store.register("alice", password)
        with pytest.raises(AuthenticationError, match="invalid password"):
            await store.login("alice", "secret")
        with pytest.raises(AuthenticationError, match="invalid username or password"):
            await store.login("nobody", password)


@pytest.mark.asyncio
async def test_login_user_without_hash_is_rejected():
    password = "password"
    now = datetime.now(timezone.utc)
    async with memory_store() as store:
        await store.upsert_user(User(id="u1", username="bob", last_active=now, created_at=now))
        with pytest.raises(AuthenticationError):
            await store.login("bob", password)


@pytest.mark.asyncio
async def test_get_user_by_id_missing():
    async with memory_store() as store:
        with pytest.raises(NotFoundError):
            await store.get_user_by_id("ghost")


@pytest.mark.asyncio
async def test_update_last_active_moves_forward():
    old = datetime(2020, 1, 1, tzinfo=timezone.utc)
    async with memory_store() as store:
        await store.upsert_user(User(id="u1", username="bob", last_active=old, created_at=old))
        await store.update_last_active("u1")
        user = await store.get_user_by_id("u1")
    assert user.last_active > old


@pytest.mark.asyncio
async def test_create_room_reuses_existing_name():
    async with memory_store() as store:
        first = await store.create_room("food", "u1")
        second = await store.create_room("food", "u2")
        third = await store.create_room("travel", "u1")
    assert first == second
    assert third != first


@pytest.mark.asyncio
async def test_rooms_membership():
    async with memory_store() as store:
        food = await store.create_room("food", "u1")
        travel = await store.create_room("travel", "u1")
        await store.add_user_to_room("u1", food)
        await store.add_user_to_room("u1", food)
        await store.add_user_to_room("u1", travel)
        rooms = await store.get_user_rooms("u1")
        none = await store.get_user_rooms("u2")
    assert [r.id for r in rooms] == [food, travel]
    assert [r.room_name for r in rooms] == ["food", "travel"]
    assert rooms[0].created_by == "u1"
    assert none == []


@pytest.mark.asyncio
async def test_add_user_to_missing_room_fails():
    async with memory_store() as store:
        with pytest.raises(StorageError):
            await store.add_user_to_room("u1", "no-such-room")


@pytest.mark.asyncio
async def test_presence_update_and_leave():
    async with memory_store() as store:
        await store.update_presence("r1", "u1", True)
        async with store.db.execute(
            "SELECT is_online FROM user_presence WHERE room_id = ? AND user_id = ?", ("r1", "u1")
        ) as cursor:
            assert (await cursor.fetchone())[0] == 1
        await store.remove_user_from_room("u1", "r1")
        async with store.db.execute(
            "SELECT is_online FROM user_presence WHERE room_id = ? AND user_id = ?", ("r1", "u1")
        ) as cursor:
            assert (await cursor.fetchone())[0] == 0
        await store.update_presence("r1", "u1", True)
        async with store.db.execute("SELECT COUNT(*) FROM user_presence") as cursor:
            assert (await cursor.fetchone())[0] == 1


@pytest.mark.asyncio
async def test_store_persists_to_file(tmp_path):
    path = tmp_path / "chat.db"
    async with await Store.open(path) as store:
        room_id = await store.create_room("food", "u1")
    async with await Store.open(path) as store:
        assert await store.create_room("food", "u9") == room_id