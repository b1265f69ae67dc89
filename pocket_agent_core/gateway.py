"""Connection gateway: turns accepted physical transports into Sessions.

For every accepted transport the handler:
1. applies the per-peer connection rate limit
2. reads the opening frame (``hello`` for an existing Project,
   ``project_init`` for a new one) within the handshake timeout
3. drives ``SessionManager.connect`` or ``SessionManager.init_project``
4. pumps inbound frames into ``SessionManager.on_receive`` until the
   transport closes, then reports the loss to the manager
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .errors import (
    HandshakeTimeout,
    PocketAgentError,
    ProjectNotFound,
    ProtocolViolation,
    TransportLost,
)
from .protocol import (
    ErrorPayload,
    Hello,
    MessageType,
    ProjectInit,
    build_envelope,
    decode_envelope,
    encode_envelope,
)
from .rate_limiter import RateLimiter

if TYPE_CHECKING:
    from .session import SessionManager
    from .transport import FrameTransport

_LOGGER = logging.getLogger(__name__)


class ConnectionHandler:
    """Accepts transports on behalf of a SessionManager.

    Usage:
        handler = ConnectionHandler(manager)
        server = await serve_websocket(handler.handle, "0.0.0.0", 8443)
    """

    def __init__(
        self,
        manager: SessionManager,
        *,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        config = manager.config
        self._manager = manager
        self._handshake_timeout = config.handshake_timeout
        self._rate_limiter = rate_limiter or RateLimiter(
            config.connect_rate_limit, config.connect_rate_window
        )
        self._active: set[FrameTransport] = set()

    @property
    def active_connections(self) -> int:
        return len(self._active)

    async def handle(self, transport: FrameTransport) -> None:
        """Serve one physical connection until it closes."""
        peer = transport.peer
        if not self._rate_limiter.allow(peer):
            await self._refuse(
                transport, "RATE_LIMITED", "Too many connection attempts", code=4029
            )
            return

        self._active.add(transport)
        try:
            project_id = await self._open(transport)
            if project_id is not None:
                await self._pump(project_id, transport)
        finally:
            self._active.discard(transport)

    async def _open(self, transport: FrameTransport) -> str | None:
        """Read the opening frame and attach the transport to a Project."""
        try:
            frame = await asyncio.wait_for(
                transport.receive(), timeout=self._handshake_timeout
            )
        except TimeoutError:
            err = HandshakeTimeout("No opening frame received", phase="open")
            await self._refuse(transport, err.kind, str(err))
            return None
        except TransportLost:
            _LOGGER.debug("Connection from %s closed before opening", transport.peer)
            return None

        try:
            envelope = decode_envelope(frame)
        except ProtocolViolation as err:
            await self._refuse(transport, err.kind, str(err))
            return None

        payload = envelope.payload
        try:
            if envelope.message_type is MessageType.HELLO and isinstance(payload, Hello):
                await self._manager.connect(
                    payload.project_id,
                    transport,
                    identity_id=payload.identity_id,
                    last_seen_id=payload.last_seen_id,
                )
                return payload.project_id

            if envelope.message_type is MessageType.PROJECT_INIT and isinstance(
                payload, ProjectInit
            ):
                if not payload.identity_id:
                    await self._refuse(
                        transport, ProtocolViolation.kind, "project_init requires identity_id"
                    )
                    return None
                project = await self._manager.init_project(
                    payload.project_path,
                    payload.repository_url,
                    payload.access_token,
                    transport=transport,
                    identity_id=payload.identity_id,
                )
                return project.id
        except ProjectNotFound as err:
            await self._refuse(transport, err.kind, str(err), code=4004)
            return None
        except PocketAgentError as err:
            # Already reported on the transport, which is closed.
            _LOGGER.info("Connection from %s refused: %s", transport.peer, err)
            return None

        await self._refuse(
            transport,
            ProtocolViolation.kind,
            f"Expected hello or project_init, got {envelope.type}",
        )
        return None

    async def _pump(self, project_id: str, transport: FrameTransport) -> None:
        while True:
            try:
                frame = await transport.receive()
            except TransportLost as err:
                await self._manager.transport_lost(project_id, transport, str(err))
                return
            try:
                await self._manager.on_receive(project_id, frame, transport=transport)
            except ProtocolViolation as err:
                _LOGGER.warning("[%s] Closing connection: %s", project_id, err)
                return
            except PocketAgentError as err:
                _LOGGER.error("[%s] Frame handling failed: %s", project_id, err)
                await self._manager.transport_lost(project_id, transport, str(err))
                await transport.close(code=1011, reason=err.kind)
                return

    async def _refuse(
        self, transport: FrameTransport, kind: str, detail: str, *, code: int = 4000
    ) -> None:
        error = ErrorPayload(kind=kind, detail=detail)
        try:
            await transport.send(encode_envelope(build_envelope(error, project_id=None)))
        except TransportLost:
            pass
        await transport.close(code=code, reason=kind)

