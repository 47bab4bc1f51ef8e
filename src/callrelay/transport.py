"""
Outbound side of the call transport.

Every write to the carrier socket goes through a `Transport`: the audio relay,
completion marks and any direct session writes. Writes are serialized so a
message is never interleaved with another, and writes on a closed socket are
dropped with a diagnostic instead of raising.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

import structlog
from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

logger = structlog.get_logger(__name__)


class Transport(Protocol):
    """What the session needs from the carrier connection."""

    @property
    def is_open(self) -> bool: ...

    async def send(self, message: str) -> bool: ...

    def mark_closed(self) -> None: ...


class WebSocketTransport:
    """Transport backed by a FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket):
        self._websocket = websocket
        self._lock = asyncio.Lock()
        self._closed = False
        self.dropped_writes = 0

    @property
    def is_open(self) -> bool:
        if self._closed:
            return False
        return (
            self._websocket.client_state == WebSocketState.CONNECTED
            and self._websocket.application_state == WebSocketState.CONNECTED
        )

    def mark_closed(self) -> None:
        """Stop accepting writes (the peer has gone away)."""
        self._closed = True

    async def send(self, message: str) -> bool:
        """Send one message. Returns False if it was dropped."""
        async with self._lock:
            if not self.is_open:
                self.dropped_writes += 1
                logger.warning(
                    "WebSocket not open, dropping outbound message",
                    client_state=self._websocket.client_state.name,
                    dropped_writes=self.dropped_writes,
                )
                return False
            try:
                await self._websocket.send_text(message)
                return True
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                # The socket closed underneath us; never retry.
                self._closed = True
                self.dropped_writes += 1
                logger.warning("Failed to send WebSocket message", error=str(e))
                return False
