"""
Notification channel: fire-and-forget events to the presentation layer.

Nothing waits for an acknowledgment. A notifier that fails logs and moves on.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class Notifier(ABC):
    @abstractmethod
    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        ...


class LogNotifier(Notifier):
    """Default channel when nothing is listening: log the event."""

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("Notification %s: %s", event, payload)


class WebSocketNotifier(Notifier):
    """Broadcast to every connected client; a socket that fails to send is dropped."""

    def __init__(self) -> None:
        self._sockets: set[WebSocket] = set()

    def register(self, websocket: WebSocket) -> None:
        self._sockets.add(websocket)

    def unregister(self, websocket: WebSocket) -> None:
        self._sockets.discard(websocket)

    @property
    def listeners(self) -> int:
        return len(self._sockets)

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        message = json.dumps({"type": "notification", "event": event, **payload})
        for ws in list(self._sockets):
            try:
                await ws.send_text(message)
            except Exception as e:
                logger.debug("Dropping notification listener: %s", e)
                self._sockets.discard(ws)
