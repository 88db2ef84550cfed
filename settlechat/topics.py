"""Subject names used on the message bus."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Topics:
    """Formats subjects as ``settlechat<env>.<category>.<action>.<room>``."""

    env: str = ""

    @property
    def prefix(self) -> str:
        return f"settlechat{self.env}"

    def _format(self, category: str, action: str, room_id: str) -> str:
        return f"{self.prefix}.{category}.{action}.{room_id}"

    def presence_topic(self, room_id: str) -> str:
        return self._format("user", "presence", room_id)

    def system_message_topic(self, room_id: str) -> str:
        return self._format("system", "message", room_id)

    def user_joined_topic(self, room_id: str) -> str:
        return self._format("user", "joined", room_id)

    def user_left_topic(self, room_id: str) -> str:
        return self._format("user", "left", room_id)

    def message_topic(self, room_id: str) -> str:
        return self._format("message", "chat", room_id)

    def broadcast_topic(self, room_id: str) -> str:
        return self._format("message", "broadcast", room_id)

    def history_request_topic(self, room_id: str) -> str:
        return self._format("message", "history.request", room_id)

    def history_response_topic(self, room_id: str, user_id: str) -> str:
        return f"{self._format('message', 'history.response', room_id)}.{user_id}"

    def connection_topic(self, room_id: str) -> str:
        return self._format("connection", "event", room_id)