"""Transport layer for the Pocket Agent session core.

The core only needs ordered text frames in and out of one physical
connection. Anything implementing ``FrameTransport`` can carry a Session.

Components:
- ws: WebSocket server/client connection helpers
- ws_transport: ``FrameTransport`` over a websockets (or aiohttp) socket
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class FrameTransport(Protocol):
    """One physical, order-preserving connection carrying text frames."""

    @property
    def peer(self) -> str:
        """Remote peer identifier (address) used for rate limiting and logs."""

    async def send(self, frame: str) -> None:
        """Send one frame. Raises TransportLost if the connection is gone."""

    async def receive(self) -> str:
        """Receive the next frame. Raises TransportLost when the peer closes."""

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the connection. Idempotent."""


from .ws import connect_websocket, serve_websocket  # noqa: E402
from .ws_transport import (  # noqa: E402
    WebSocketTransport,
    WsMessage,
    WsMessageType,
)

__all__ = [
    "FrameTransport",
    "WebSocketTransport",
    "WsMessage",
    "WsMessageType",
    "connect_websocket",
    "serve_websocket",
]
