"""Persistent storage for users, rooms, presence and chat messages."""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import aiosqlite
import bcrypt

from settlechat.models import ChatMessage, Room, User, parse_timestamp

log = logging.getLogger(__name__)

BCRYPT_COST = 10
_BCRYPT_MAX_BYTES = 72

_SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    room_id TEXT NOT NULL,
    sender_id TEXT NOT NULL,
    sender TEXT NOT NULL,
    content TEXT NOT NULL,
    timestamp TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f000Z', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_messages_room_time ON messages (room_id, timestamp);

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    username TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f000Z', 'now')),
    last_active TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f000Z', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_users_last_active ON users (last_active);

CREATE TABLE IF NOT EXISTS rooms (
    id TEXT PRIMARY KEY,
    roomname TEXT NOT NULL,
    created_by TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f000Z', 'now'))
);

CREATE TABLE IF NOT EXISTS room_members (
    user_id TEXT NOT NULL,
    room_id TEXT NOT NULL,
    joined_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f000Z', 'now')),
    PRIMARY KEY (user_id, room_id),
    FOREIGN KEY (room_id) REFERENCES rooms(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_rooms_members_room_id ON room_members (room_id);

CREATE TABLE IF NOT EXISTS user_presence (
    room_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    is_online INTEGER NOT NULL,
    last_seen TEXT NOT NULL,
    PRIMARY KEY (room_id, user_id)
);
"""


class StorageError(Exception):
    """A storage operation failed."""


class UsernameExistsError(StorageError):
    """The requested username is taken."""


class AuthenticationError(StorageError):
    """Login credentials were rejected."""


class NotFoundError(StorageError):
    """The requested record does not exist."""


def _to_db(value: datetime) -> str:
    """Encode a datetime as fixed-width UTC text so that it sorts in time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
        f".{value.microsecond:06d}Z"
    )


def _now() -> str:
    return _to_db(datetime.now(timezone.utc))


class Store:
    """Database-backed store; create one with ``await Store.open(path)``."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db

    @classmethod
    async def open(cls, path: str | os.PathLike[str]) -> Store:
        """Open (or create) the database at ``path`` and apply the schema."""
        try:
            db = await aiosqlite.connect(os.fspath(path))
        except sqlite3.Error as exc:
            log.error("Failed initializing database connection")
            raise StorageError(str(exc)) from exc
        try:
            await db.execute("PRAGMA foreign_keys = ON")
            await db.executescript(_SCHEMA)
            await db.commit()
        except sqlite3.Error as exc:
            await db.close()
            raise StorageError(str(exc)) from exc
        log.info("Connected to database")
        return cls(db)

    async def close(self) -> None:
        await self.db.close()

    async def __aenter__(self) -> Store:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _execute(self, sql: str, params: Iterable[Any] = ()) -> None:
        try:
            await self.db.execute(sql, tuple(params))
            await self.db.commit()
        except sqlite3.Error as exc:
            await self.db.rollback()
            raise StorageError(str(exc)) from exc

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> tuple[Any, ...] | None:
        try:
            async with self.db.execute(sql, tuple(params)) as cursor:
                return await cursor.fetchone()
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[tuple[Any, ...]]:
        try:
            async with self.db.execute(sql, tuple(params)) as cursor:
                return list(await cursor.fetchall())
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

    # messages

    async def save_message(self, msg: ChatMessage) -> None:
        await self._execute(
            "INSERT INTO messages (room_id, sender_id, sender, content, timestamp) "
            "VALUES (?, ?, ?, ?, ?)",
            (msg.room_id, msg.sender_id, msg.sender, msg.content, _to_db(msg.timestamp)),
        )

    async def get_recent_messages(self, room_id: str, limit: int) -> list[ChatMessage]:
        """Return the latest ``limit`` non-system messages of a room, oldest first."""
        if limit < 0:
            raise StorageError("LIMIT must not be negative")
        rows = await self._fetchall(
            """
            SELECT id, room_id, sender_id, sender, content, timestamp FROM (
                SELECT id, room_id, sender_id, sender, content, timestamp
                FROM messages
                WHERE room_id = ? AND sender_id != 'system'
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            )
            ORDER BY timestamp ASC, id ASC
            """,
            (room_id, limit),
        )
        return [
            ChatMessage(
                id=row[0],
                room_id=row[1],
                sender_id=row[2],
                sender=row[3],
                content=row[4],
                timestamp=parse_timestamp(row[5]),
            )
            for row in rows
        ]

    # rooms

    async def create_room(self, name: str, created_by: str) -> str:
        """Create a room, or return the id of the existing room with this name."""
        row = await self._fetchone("SELECT id FROM rooms WHERE roomname = ?", (name,))
        if row is not None:
            log.info("Room already exists: %s", row[0])
            return row[0]
        room_id = str(uuid.uuid4())
        log.info("Creating room: ID=%s, Name=%s, CreatedBy=%s", room_id, name, created_by)
        await self._execute(
            "INSERT INTO rooms (id, roomname, created_by, created_at) VALUES (?, ?, ?, ?)",
            (room_id, name, created_by, _now()),
        )
        return room_id

    async def add_user_to_room(self, user_id: str, room_id: str) -> None:
        """Add a membership; adding an existing member is not an error."""
        log.info("Adding user %s to room %s", user_id, room_id)
        await self._execute(
            "INSERT INTO room_members (user_id, room_id, joined_at) VALUES (?, ?, ?) "
            "ON CONFLICT DO NOTHING",
            (user_id, room_id, _now()),
        )

    async def get_user_rooms(self, user_id: str) -> list[Room]:
        rows = await self._fetchall(
            """
            SELECT r.id, r.roomname, r.created_by, r.created_at
            FROM rooms r
            JOIN room_members m ON r.id = m.room_id
            WHERE m.user_id = ?
            ORDER BY m.rowid
            """,
            (user_id,),
        )
        rooms = [
            Room(id=row[0], room_name=row[1], created_by=row[2], created_at=parse_timestamp(row[3]))
            for row in rows
        ]
        log.info("Total rooms found for %s: %d", user_id, len(rooms))
        return rooms

    async def remove_user_from_room(self, user_id: str, room_id: str) -> None:
        """Mark the user offline in the room; failures are only logged."""
        try:
            await self._execute(
                "UPDATE user_presence SET is_online = 0, last_seen = ? "
                "WHERE user_id = ? AND room_id = ?",
                (_now(), user_id, room_id),
            )
        except StorageError as exc:
            log.warning("Failed to update user presence on room leave: %s", exc)

    # users

    async def register(self, username: str, password: str) -> str:
        """Create a user with a bcrypt password hash and return its new id."""
        row = await self._fetchone(
            "SELECT EXISTS(SELECT 1 FROM users WHERE username = ?)", (username,)
        )
        if row is not None and row[0]:
            raise UsernameExistsError("username already exists")
        secret_bytes = password.encode()
        if len(secret_bytes) > _BCRYPT_MAX_BYTES:
            raise StorageError("bcrypt: password length exceeds 72 bytes")
        hashed = await asyncio.to_thread(
            bcrypt.hashpw, secret_bytes, bcrypt.gensalt(rounds=BCRYPT_COST)
        )
        user_id = str(uuid.uuid4())
        await self._execute(
            "INSERT INTO users (id, username, password_hash, created_at) VALUES (?, ?, ?, ?)",
            (user_id, username, hashed.decode(), _now()),
        )
        return user_id

    async def login(self, username: str, password: str) -> str:
        """Return the user id when the credentials match."""
        row = await self._fetchone(
            "SELECT id, password_hash FROM users WHERE username = ?", (username,)
        )
        if row is None:
            log.info("Login failed for user %s", username)
            raise AuthenticationError("invalid username or password")
        user_id, stored_hash = row
        try:
            ok = await asyncio.to_thread(bcrypt.checkpw, password.encode(), stored_hash.encode())
        except ValueError:
            ok = False
        if not ok:
            raise AuthenticationError("invalid password")
        return user_id

    async def get_user_by_id(self, user_id: str) -> User:
        row = await self._fetchone(
            "SELECT id, username, last_active, created_at FROM users WHERE id = ?", (user_id,)
        )
        if row is None:
            raise NotFoundError(f"user not found: {user_id}")
        return User(
            id=row[0],
            username=row[1],
            last_active=parse_timestamp(row[2]),
            created_at=parse_timestamp(row[3]),
        )

    async def upsert_user(self, user: User) -> None:
        await self._execute(
            """
            INSERT INTO users (id, username, last_active, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE
            SET username = excluded.username,
                last_active = excluded.last_active
            """,
            (user.id, user.username, _to_db(user.last_active), _to_db(user.created_at)),
        )

    async def update_last_active(self, user_id: str) -> None:
        await self._execute(
            "UPDATE users SET last_active = ? WHERE id = ?", (_now(), user_id)
        )

    async def update_presence(self, room_id: str, user_id: str, is_online: bool) -> None:
        await self._execute(
            """
            INSERT INTO user_presence (room_id, user_id, is_online, last_seen)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (room_id, user_id)
            DO UPDATE SET is_online = excluded.is_online, last_seen = excluded.last_seen
            """,
            (room_id, user_id, int(bool(is_online)), _now()),
        )