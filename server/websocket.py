"""
Dirkeeper - WebSocket Hub
===========================
Fans supervisor output out to every console client connected on /ws.

Two message types travel server -> client:

    {"type": "log",    "data": {"text": "[12:00:01] [INFO] ...", "level": "info"}, "timestamp": ...}
    {"type": "status", "data": {"status": "running", "install_root": "..."},       "timestamp": ...}

The hub keeps the most recent log messages so a client that connects in
the middle of a long provisioning run still sees how it started.
"""

import json
from collections import deque
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket


BACKLOG_SIZE = 200


class WebSocketManager:
    """
    Connected clients plus a short replay buffer of log messages.

    Attributes:
        active_connections: Clients currently subscribed.
        backlog:            Last BACKLOG_SIZE "log" messages, oldest first.
    """

    def __init__(self, backlog_size: int = BACKLOG_SIZE):
        self.active_connections: set[WebSocket] = set()
        self.backlog: deque[dict[str, Any]] = deque(maxlen=backlog_size)

    @property
    def client_count(self) -> int:
        return len(self.active_connections)

    async def connect(self, websocket: WebSocket) -> None:
        """Accept the client and replay the backlog to it alone."""
        await websocket.accept()
        for message in list(self.backlog):
            await websocket.send_text(_encode(message))
        self.active_connections.add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        self.active_connections.discard(websocket)

    async def broadcast(self, message: dict[str, Any]) -> None:
        """
        Stamp and deliver a message to all clients.

        A client whose send fails is treated as gone and removed.
        """
        message.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        if message.get("type") == "log":
            self.backlog.append(message)

        payload = _encode(message)
        gone = []
        for ws in list(self.active_connections):
            try:
                await ws.send_text(payload)
            except Exception:
                gone.append(ws)
        for ws in gone:
            self.disconnect(ws)

    async def send_status(self, status: str, details: dict | None = None) -> None:
        await self.broadcast({"type": "status", "data": {**(details or {}), "status": status}})


def _encode(message: dict[str, Any]) -> str:
    return json.dumps(message, ensure_ascii=False, default=str)
