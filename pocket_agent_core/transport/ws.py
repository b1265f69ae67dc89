"""WebSocket helpers for Pocket Agent physical connections."""

from __future__ import annotations

import asyncio
import logging
import ssl
from collections.abc import Awaitable, Callable
from urllib.parse import urlsplit

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import (
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)

from ..errors import HandshakeTimeout, TransportLost
from .ws_transport import WebSocketTransport

_LOGGER = logging.getLogger(__name__)

TransportHandler = Callable[[WebSocketTransport], Awaitable[None]]


async def connect_websocket(
    host: str,
    port: int,
    *,
    path: str = "/ws",
    ping_interval: int | None = 20,
    timeout: float = 15.0,
    ssl_context: ssl.SSLContext | None = None,
) -> WebSocketTransport:
    """Connect to a Pocket Agent server.

    Args:
        host: Target host
        port: Target port
        path: WebSocket path (default: /ws)
        ping_interval: Interval for ping frames
        timeout: Connection timeout
        ssl_context: TLS context; ``wss://`` is used when given

    Raises:
        HandshakeTimeout: If the connection is not established in time.
        TransportLost: If the socket or the upgrade fails.
    """
    scheme = "wss" if ssl_context is not None else "ws"
    ws_url = f"{scheme}://{host}:{port}{path}"
    try:
        connection = await asyncio.wait_for(
            websockets.connect(
                ws_url,
                ping_interval=ping_interval,
                close_timeout=5,
                max_size=None,
                ssl=ssl_context,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise HandshakeTimeout("WebSocket connection timed out", phase="connect") from err
    except (InvalidHandshake, InvalidURI) as err:
        raise TransportLost("WebSocket handshake failed", phase="connect") from err
    except (OSError, WebSocketException) as err:
        raise TransportLost("WebSocket connection failed", phase="connect") from err
    return WebSocketTransport(connection, peer=f"{host}:{port}")


async def serve_websocket(
    handler: TransportHandler,
    host: str,
    port: int,
    *,
    path: str = "/ws",
    ping_interval: int | None = 20,
    max_size: int | None = 1 << 20,
    ssl_context: ssl.SSLContext | None = None,
) -> Server:
    """Listen for Pocket Agent clients.

    ``handler`` is awaited once per accepted connection with the connection
    wrapped as a ``WebSocketTransport``; the socket closes when it returns.

    Raises:
        TransportLost: If the listening socket cannot be opened.
    """

    async def _handle(connection: ServerConnection) -> None:
        request_path = connection.request.path if connection.request else ""
        if urlsplit(request_path).path != path:
            _LOGGER.debug("Rejecting connection to unknown path %s", request_path)
            await connection.close(code=1008, reason="unknown path")
            return
        await handler(WebSocketTransport(connection))

    try:
        server = await serve(
            _handle,
            host,
            port,
            ping_interval=ping_interval,
            max_size=max_size,
            ssl=ssl_context,
        )
    except OSError as err:
        raise TransportLost(f"Cannot listen on {host}:{port}", phase="listen") from err
    _LOGGER.info("Listening on %s://%s:%s%s", "wss" if ssl_context else "ws", host, port, path)
    return server
