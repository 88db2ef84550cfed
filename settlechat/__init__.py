"""Room-based chat server: WebSocket clients, an event bus over NATS subjects, SQLite storage."""

__version__ = "0.1.0"