"""A small asyncio client for a NATS message server."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional, Union
from urllib.parse import urlsplit

log = logging.getLogger(__name__)

DEFAULT_URL = "nats://localhost:4222"
_DEFAULT_PORT = 4222
_CRLF = b"\r\n"

_DEFAULT_OPTIONS: dict[str, Any] = {
    "name": "SettleChat",
    "connect_timeout": 2.0,
    "reconnect_wait": 2.0,
    "max_reconnects": -1,
}


class NatsError(Exception):
    """A message-bus operation failed."""


@dataclass
class Msg:
    """A message delivered on a subject."""

    subject: str
    data: bytes = b""
    reply: str = ""


MsgHandler = Callable[[Msg], Union[Awaitable[None], None]]

_STOP = object()


class Subscription:
    """Interest in one subject; messages reach the handler in arrival order."""

    def __init__(self, manager: NatsManager, sid: int, subject: str, handler: MsgHandler) -> None:
        self.subject = subject
        self.sid = sid
        self._manager = manager
        self._handler = handler
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._task = asyncio.get_running_loop().create_task(self._deliver())

    async def _deliver(self) -> None:
        while True:
            msg = await self._queue.get()
            if msg is _STOP:
                return
            try:
                result = self._handler(msg)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception("NATS error: handler failed for subject %s", msg.subject)

    def _enqueue(self, msg: Msg) -> None:
        if not self._closed:
            self._queue.put_nowait(msg)

    def _stop(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_STOP)

    async def unsubscribe(self) -> None:
        if self._closed:
            raise NatsError("invalid subscription")
        self._stop()
        await self._manager._unsubscribe(self)


class NatsManager:
    """Owns one server connection, reconnecting after it drops."""

    def __init__(self, url: str = "", reconnect: bool = True) -> None:
        self.url = url or DEFAULT_URL
        self.reconnect = reconnect
        self._options = dict(_DEFAULT_OPTIONS)
        self._lock = asyncio.Lock()
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._subs: dict[int, Subscription] = {}
        self._next_sid = 0
        self._pongs: deque[asyncio.Future[None]] = deque()
        self._connected = False
        self._closing = False

    def with_options(self, **kwargs: Any) -> NatsManager:
        """Override connection options: name, connect_timeout, reconnect_wait, max_reconnects."""
        unknown = set(kwargs) - set(_DEFAULT_OPTIONS)
        if unknown:
            raise TypeError(f"unknown NATS option(s): {', '.join(sorted(unknown))}")
        self._options.update(kwargs)
        return self

    def is_connected(self) -> bool:
        return (
            self._connected
            and self._writer is not None
            and not self._writer.is_closing()
        )

    async def wait_for_connection(self, timeout: float) -> bool:
        """Poll until connected or ``timeout`` seconds have passed."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if self.is_connected():
                return True
            await asyncio.sleep(0.1)
        return False

    def _address(self) -> tuple[str, int]:
        parts = urlsplit(self.url if "://" in self.url else f"nats://{self.url}")
        return parts.hostname or "localhost", parts.port or _DEFAULT_PORT

    async def connect(self) -> None:
        async with self._lock:
            if self.is_connected():
                return
            self._closing = False
            try:
                await self._open()
            except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError, NatsError) as exc:
                raise NatsError(f"failed to connect to NATS: {exc}") from exc
        log.info("Connected to NATS server at %s", self.url)

    async def _open(self) -> None:
        host, port = self._address()
        timeout = self._options["connect_timeout"]
        reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
        try:
            greeting = await asyncio.wait_for(reader.readline(), timeout)
            if not greeting.startswith(b"INFO"):
                raise NatsError("unexpected server greeting")
            options = {
                "verbose": False,
                "pedantic": False,
                "name": self._options["name"],
                "lang": "python",
                "version": "1.0",
                "protocol": 1,
            }
            writer.write(b"CONNECT " + json.dumps(options).encode() + _CRLF + b"PING" + _CRLF)
            await writer.drain()
            while True:
                line = await asyncio.wait_for(reader.readline(), timeout)
                if not line:
                    raise NatsError("connection closed by server")
                if line.startswith(b"PONG"):
                    break
                if line.startswith(b"-ERR"):
                    raise NatsError(line[4:].strip().decode(errors="replace"))
            for sub in self._subs.values():
                writer.write(f"SUB {sub.subject} {sub.sid}".encode() + _CRLF)
            await writer.drain()
        except BaseException:
            writer.close()
            raise
        self._reader, self._writer = reader, writer
        self._connected = True
        self._read_task = asyncio.get_running_loop().create_task(self._read_loop(reader, writer))

    async def _read_loop(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        error: Optional[BaseException] = None
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                if line.startswith(b"MSG"):
                    parts = line.split()
                    subject = parts[1].decode()
                    sid = int(parts[2])
                    reply = parts[3].decode() if len(parts) == 5 else ""
                    size = int(parts[-1])
                    payload = await reader.readexactly(size + 2)
                    sub = self._subs.get(sid)
                    if sub is not None:
                        sub._enqueue(Msg(subject=subject, data=payload[:size], reply=reply))
                elif line.startswith(b"PING"):
                    writer.write(b"PONG" + _CRLF)
                    await writer.drain()
                elif line.startswith(b"PONG"):
                    if self._pongs:
                        future = self._pongs.popleft()
                        if not future.done():
                            future.set_result(None)
                elif line.startswith(b"-ERR"):
                    log.error("NATS error: %s", line[4:].strip().decode(errors="replace"))
        except (OSError, asyncio.IncompleteReadError, ValueError, IndexError) as exc:
            error = exc
        self._connection_lost(writer, error)

    def _connection_lost(self, writer: asyncio.StreamWriter, error: Optional[BaseException]) -> None:
        if self._writer is not writer:
            return
        self._connected = False
        writer.close()
        while self._pongs:
            future = self._pongs.popleft()
            if not future.done():
                future.set_exception(NatsError("connection lost"))
        if self._closing:
            return
        log.warning("NATS disconnected: %s", error)
        if self.reconnect:
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        attempts = 0
        limit = self._options["max_reconnects"]
        while not self._closing and (limit < 0 or attempts < limit):
            attempts += 1
            await asyncio.sleep(self._options["reconnect_wait"])
            try:
                async with self._lock:
                    if self._closing or self.is_connected():
                        return
                    await self._open()
            except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError, NatsError) as exc:
                log.warning("NATS reconnect attempt %d failed: %s", attempts, exc)
                continue
            log.info("NATS reconnected to %s", self.url)
            return

    async def _flush(self, writer: asyncio.StreamWriter) -> None:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._pongs.append(future)
        writer.write(b"PING" + _CRLF)
        await writer.drain()
        await asyncio.wait_for(future, self._options["connect_timeout"])

    async def disconnect(self) -> None:
        """Drop all subscriptions, flush, and close the connection."""
        async with self._lock:
            self._closing = True
            if self._reconnect_task is not None:
                self._reconnect_task.cancel()
                self._reconnect_task = None
            writer = self._writer
            subs = list(self._subs.values())
            self._subs.clear()
            for sub in subs:
                sub._stop()
            if writer is None:
                return
            if self.is_connected():
                try:
                    for sub in subs:
                        writer.write(f"UNSUB {sub.sid}".encode() + _CRLF)
                    await self._flush(writer)
                except (OSError, asyncio.TimeoutError, NatsError):
                    pass
            self._connected = False
            self._writer = None
            self._reader = None
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
            if self._read_task is not None:
                self._read_task.cancel()
                try:
                    await self._read_task
                except asyncio.CancelledError:
                    pass
                self._read_task = None
        log.info("Disconnected from NATS server")

    async def _get_writer(self) -> asyncio.StreamWriter:
        if not self.is_connected():
            await self.connect()
        assert self._writer is not None
        return self._writer

    @staticmethod
    def _check_subject(subject: str) -> None:
        if not subject or any(ch.isspace() for ch in subject):
            raise NatsError(f"invalid subject: {subject!r}")

    async def publish(self, subject: str, data: bytes | str) -> None:
        self._check_subject(subject)
        if isinstance(data, str):
            data = data.encode()
        writer = await self._get_writer()
        try:
            writer.write(f"PUB {subject} {len(data)}".encode() + _CRLF + data + _CRLF)
            await writer.drain()
        except OSError as exc:
            raise NatsError(f"publish failed: {exc}") from exc

    async def subscribe(self, subject: str, handler: MsgHandler) -> Subscription:
        """Subscribe ``handler`` (plain or async callable) to ``subject``."""
        self._check_subject(subject)
        writer = await self._get_writer()
        self._next_sid += 1
        sub = Subscription(self, self._next_sid, subject, handler)
        self._subs[sub.sid] = sub
        try:
            writer.write(f"SUB {subject} {sub.sid}".encode() + _CRLF)
            await writer.drain()
        except OSError as exc:
            self._subs.pop(sub.sid, None)
            sub._stop()
            raise NatsError(f"subscribe failed: {exc}") from exc
        return sub

    async def _unsubscribe(self, sub: Subscription) -> None:
        self._subs.pop(sub.sid, None)
        if not self.is_connected():
            return
        assert self._writer is not None
        try:
            self._writer.write(f"UNSUB {sub.sid}".encode() + _CRLF)
            await self._writer.drain()
        except OSError as exc:
            raise NatsError(f"unsubscribe failed: {exc}") from exc