"""WebSocket connection manager for live dashboard updates."""

import json
from datetime import datetime, UTC
from typing import Any

from fastapi import WebSocket


class ConnectionManager:
    """Tracks WebSocket clients and broadcasts events to them."""

    def __init__(self):
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> None:
        """Accept and track a new WebSocket connection."""
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    @property
    def connection_count(self) -> int:
        return len(self.active_connections)

    @staticmethod
    def _message(event_type: str, data: dict[str, Any]) -> str:
        return json.dumps({
            "type": event_type,
            "data": data,
            "timestamp": datetime.now(UTC).isoformat(),
        })

    async def broadcast(self, event_type: str, data: dict[str, Any]) -> None:
        """Send an event to every connected client.

        Args:
            event_type: One of mode_changed, notice, data_changed, activity
            data: Event payload
        """
        if not self.active_connections:
            return

        message = self._message(event_type, data)
        dead_connections = []
        for connection in self.active_connections:
            try:
                await connection.send_text(message)
            except Exception:
                # Client went away
                dead_connections.append(connection)

        for conn in dead_connections:
            self.disconnect(conn)

    async def send_to_one(self, websocket: WebSocket, event_type: str, data: dict[str, Any]) -> bool:
        """Send an event to one client; drops the client if the send fails."""
        try:
            await websocket.send_text(self._message(event_type, data))
            return True
        except Exception:
            self.disconnect(websocket)
            return False

    async def broadcast_mode(self, mode: str) -> None:
        await self.broadcast("mode_changed", {"mode": mode})

    async def broadcast_notice(self, level: str, message: str) -> None:
        await self.broadcast("notice", {"level": level, "message": message})

    async def broadcast_data(self, data: dict[str, Any]) -> None:
        await self.broadcast("data_changed", data)

    async def broadcast_activity(self, entry_dict: dict[str, Any]) -> None:
        await self.broadcast("activity", entry_dict)
