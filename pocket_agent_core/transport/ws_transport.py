"""Frame transport over a WebSocket.

Wraps either a ``websockets`` connection (client or server side) or an
aiohttp websocket (``ClientWebSocketResponse`` / ``web.WebSocketResponse``).
Backend-specific frames are normalized into ``WsMessage`` first; only text
frames carry envelopes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

import aiohttp
from aiohttp import WSMsgType, web
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import TransportLost

_LOGGER = logging.getLogger(__name__)


class WsMessageType(Enum):
    """Normalized WebSocket message types."""

    TEXT = "text"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class WsMessage:
    """Normalized WebSocket message payload."""

    type: WsMessageType
    data: str | None = None


def normalize_message(msg: Any) -> WsMessage | None:
    """Normalize backend-specific frames into WsMessage.

    Returns None for frames that carry no envelope (binary, ping, pong).
    """
    if isinstance(msg, bytes):
        return None
    if isinstance(msg, str):
        return WsMessage(WsMessageType.TEXT, msg)

    msg_type = getattr(msg, "type", None)
    if msg_type is None:
        return None
    normalized_type = _map_aiohttp_type(msg_type)
    if normalized_type is None:
        return None
    data = getattr(msg, "data", None)
    return WsMessage(normalized_type, data if isinstance(data, str) else None)


def _map_aiohttp_type(msg_type: Any) -> WsMessageType | None:
    """Map aiohttp WSMsgType enums to internal message types."""
    if msg_type is WSMsgType.TEXT:
        return WsMessageType.TEXT

    if msg_type is WSMsgType.BINARY:
        return None

    if msg_type in {WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED}:
        return WsMessageType.CLOSED

    if msg_type is WSMsgType.ERROR:
        return WsMessageType.ERROR

    return None


class WebSocketTransport:
    """``FrameTransport`` over one WebSocket connection."""

    def __init__(self, connection: Any, *, peer: str | None = None) -> None:
        self._ws = connection
        self._aiohttp = isinstance(
            connection, (aiohttp.ClientWebSocketResponse, web.WebSocketResponse)
        )
        self._peer = peer or _remote_address(connection)
        self._closed = False

    @property
    def peer(self) -> str:
        return self._peer

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, frame: str) -> None:
        if self._closed:
            raise TransportLost(f"Connection to {self._peer} is closed")
        try:
            if self._aiohttp:
                await self._ws.send_str(frame)
            else:
                await self._ws.send(frame)
        except ConnectionClosed as err:
            self._closed = True
            raise TransportLost(f"Connection to {self._peer} closed") from err
        except (ConnectionResetError, aiohttp.ClientError) as err:
            self._closed = True
            raise TransportLost(f"Connection to {self._peer} reset") from err

    async def receive(self) -> str:
        while True:
            if self._closed:
                raise TransportLost(f"Connection to {self._peer} is closed")
            try:
                raw = await (self._ws.receive() if self._aiohttp else self._ws.recv())
            except ConnectionClosed as err:
                self._closed = True
                raise TransportLost(f"Connection to {self._peer} closed") from err
            except (ConnectionResetError, aiohttp.ClientError) as err:
                self._closed = True
                raise TransportLost(f"Connection to {self._peer} reset") from err

            message = normalize_message(raw)
            if message is None:
                _LOGGER.debug("Ignoring non-text frame from %s", self._peer)
                continue
            if message.type is WsMessageType.TEXT and message.data is not None:
                return message.data
            self._closed = True
            raise TransportLost(f"Connection to {self._peer} {message.type.value}")

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self._closed = True
        try:
            if self._aiohttp:
                await self._ws.close(code=code, message=reason.encode())
            else:
                await self._ws.close(code=code, reason=reason)
        except (WebSocketException, OSError) as err:
            _LOGGER.debug("Error closing connection to %s: %s", self._peer, err)

    def __repr__(self) -> str:
        return f"WebSocketTransport(peer={self._peer!r}, closed={self._closed})"


def _remote_address(connection: Any) -> str:
    address = getattr(connection, "remote_address", None)
    if isinstance(address, tuple) and len(address) >= 2:
        return f"{address[0]}:{address[1]}"
    if address:
        return str(address)
    return "unknown"
