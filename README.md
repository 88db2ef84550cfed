# settlechat

A chat server built around rooms. Clients connect over a WebSocket. Each
thing they do becomes an event on a NATS subject: connecting, sending a
message, asking for history, joining or leaving a room. Handlers registered
per subject then act on these events. They store messages in SQLite, record
presence and broadcast to every client in the room.

## Running the server

```
settlechat [--host HOST] [--port PORT] [--static-dir DIR]
```

- `--host`: the address to listen on. The default is all interfaces.
- `--port`: the port to listen on. The default is `8080`.
- `--static-dir`: the directory served at `/`. The default is `./web`.

At startup the server loads a `.env` file from the working directory if one is there. It then reads these settings from the environment:

| Variable       | Meaning                                                   | Default |
|----------------|-----------------------------------------------------------|---------|
| `DATABASE_URL` | path of the SQLite database file; it is created if missing | none; the server exits if unset |
| `NATS_URL`     | address of the NATS server                                | `nats://localhost:4222` |
| `ENVIRONMENT`  | environment name, shown in logs                           | `dev`   |

The server needs a running NATS server. The client for it is built in (`settlechat.nats.NatsManager`). That client reconnects on its own after the connection drops.

On SIGINT or SIGTERM the server:

1. stops accepting HTTP requests,
2. closes all WebSocket connections,
3. cancels its subscriptions,
4. disconnects from NATS and closes the database.

## HTTP API

Request bodies are JSON objects. An error reply is a plain-text message.

| Path            | Body / query                          | Result |
|-----------------|---------------------------------------|--------|
| `/register`     | `{"username", "password"}`            | `{"user_id"}`; 400 if the name is taken or the password is longer than 72 bytes |
| `/login`        | `{"username", "password"}`            | `{"user_id"}`; 401 on bad credentials |
| `/user`         | `?user_id=`                           | `{"user_id", "user_name", "created_At", "last_active"}`; 400 without `user_id`, 500 if unknown |
| `/rooms/create` | `{"room_name", "user_id"}`            | `{"room_id"}`; see below |
| `/rooms/join`   | `{"room_id", "user_id", "username"}`  | 202 |
| `/rooms/leave`  | `{"room_id", "user_id"}`              | 200 |
| `/rooms`        | `?user_id=`                           | list of `{"room_id", "room_name", "created_by", "created_at"}` |
| `/ws`           | `?room=&user_id=&username=`           | WebSocket chat connection; 400 if a parameter is missing |
| `/...`          | none                                  | static files from the static directory; a directory serves its `index.html` |

Notes on the room endpoints:

- `/rooms/create`: if a room with that name already exists, its id is returned. After the room is created or found, a user-joined event is published for the creator.
- `/rooms/join`: publishes a user-joined event.
- `/rooms/leave`: publishes a user-left event.

Passwords are stored as bcrypt hashes. Timestamps are RFC 3339 strings.

## Chat over WebSocket

When a client connects, the server sends it up to 50 of the most recent messages in the room, oldest first. Messages from the `system` sender are left out of this history.

After that the client receives every message broadcast to the room. Each one is a JSON object with `room_id`, `sender_id`, `sender`, `content` and `timestamp`.

Rules for frames the client sends:

- A frame must be a JSON object of at most 1024 bytes. The `content` of such a frame is published as a new chat message from the connected user.
- A frame with an empty `content` and an empty `sender_id` counts as a heartbeat and is ignored.
- An oversized or malformed frame ends the connection.

The server pings each client every 108 seconds.

## Subjects

All subjects share the prefix `settlechat`:

```
settlechat.user.joined.<room>
settlechat.user.left.<room>
settlechat.user.presence.<room>
settlechat.message.chat.<room>
settlechat.message.broadcast.<room>
settlechat.message.history.request.<room>
settlechat.message.history.response.<room>.<user>
settlechat.system.message.<room>
settlechat.connection.event.<room>
```

Two classes work with these names:

- `settlechat.topics.Topics` builds them. `Topics(env)` inserts `env` right after the prefix.
- `settlechat.eventbus.EventBus` publishes each event to the subject that matches its type.

## Using the pieces directly

- `settlechat.models`: the message and record dataclasses, with JSON-ready `to_dict` / `from_dict`, plus `format_timestamp` and `parse_timestamp`.
- `settlechat.events`: the event dataclasses and their constructors, for example `chat_message_event` and `history_request_event`. It also defines the `MessageHandler`, `TopicFormatter` and `Publisher` protocols.
- `settlechat.storage.Store`: asynchronous SQLite storage for messages, users, rooms and presence. Open it with `await Store.open(path)`; it can be used as an async context manager. Failures raise `StorageError` or one of its subclasses: `UsernameExistsError`, `AuthenticationError` or `NotFoundError`.
- `settlechat.nats.NatsManager`: the asyncio NATS client, with `connect`, `publish`, `subscribe` and `disconnect`.
- `settlechat.publisher.NatsPublisher`: publishes raw payloads.
- `settlechat.subscriber.Subscriber`: subscribes to subjects and routes incoming messages to the handlers registered under `category.action`.
- `settlechat.handlers`: the handlers the server registers.
- `settlechat.chat`: `Hub`, `ChatRoom` and `Client`, which track rooms and connected WebSocket clients.
- `settlechat.web`: `AuthHandler`, `RoomHandler` and `websocket_handler`, the aiohttp request handlers.
- `settlechat.server`: `initialize_handlers`, `register_handlers`, `setup_routes` and `main`.

```python
import asyncio
from settlechat.models import ChatMessage
from settlechat.storage import Store

async def demo():
    async with await Store.open("chat.db") as store:
        await store.save_message(ChatMessage(room_id="lobby", sender_id="u1",
                                             sender="alice", content="hi"))
        print(await store.get_recent_messages("lobby", 10))

asyncio.run(demo())
```

## What it does not do

- It does not ship a browser client. The static directory (`./web` by default) is served only if you provide one.
- Storage is SQLite only. `DATABASE_URL` is a file path, not a database server URL.
- It does not include a message bus. A NATS server must be running and reachable at `NATS_URL`.