"""Client side of a Project session.

``ClientChannel`` mirrors what the server keeps for a Project: it tracks the
last envelope id it processed, classifies every incoming envelope (apply,
duplicate, gap, resync), keeps a mirror of open permission requests and the
progress tree, and retains its own outbound envelopes so it can answer a
server ``replay_request``. ``ReconnectBackoff`` drives reconnection.
"""

from __future__ import annotations

import asyncio
import base64
import inspect
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .auth import CredentialStore, challenge_signing_payload
from .config import SessionConfig
from .errors import (
    AuthFailed,
    HandshakeTimeout,
    PocketAgentError,
    ProtocolViolation,
    TransportLost,
)
from .models import ConnectionState, ProgressNode, ProgressStatus, from_epoch_ms
from .progress import ProgressAggregator
from .protocol import (
    AgentOutput,
    AuthChallenge,
    AuthOk,
    AuthResponse,
    Command,
    Envelope,
    ErrorPayload,
    Hello,
    MessageType,
    Payload,
    PermissionRequestPayload,
    PermissionResolved,
    PermissionResponse,
    ProgressEvent,
    ReplayRequest,
    SessionControl,
    StateChanged,
    StateSnapshot,
    build_envelope,
    decode_envelope,
    encode_envelope,
)
from .replay import ReplayBuffer

if TYPE_CHECKING:
    from .transport import FrameTransport

_LOGGER = logging.getLogger(__name__)

EnvelopeCallback = Callable[[Envelope], Awaitable[None] | None]


class ReconnectBackoff:
    """Exponential backoff with a cap, jitter and an attempt ceiling.

    Usage:
        backoff = ReconnectBackoff.from_config(config)
        while True:
            try:
                await connect()
                backoff.reset()
            except TransportLost:
                await backoff.wait()   # raises TransportLost past the ceiling
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        *,
        jitter: float = 0.2,
        max_attempts: int | None = 10,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._jitter = jitter
        self._max_attempts = max_attempts
        self._rng = rng
        self._attempts = 0

    @classmethod
    def from_config(cls, config: SessionConfig) -> ReconnectBackoff:
        return cls(
            config.reconnect_base_delay,
            config.reconnect_max_delay,
            jitter=config.reconnect_jitter,
            max_attempts=config.reconnect_max_attempts,
        )

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def exhausted(self) -> bool:
        return self._max_attempts is not None and self._attempts >= self._max_attempts

    def next_delay(self) -> float:
        """Return the delay before the next attempt and count the attempt.

        Raises:
            TransportLost: Once the attempt ceiling is reached.
        """
        if self.exhausted:
            raise TransportLost(
                f"Giving up after {self._attempts} reconnect attempts", phase="reconnect"
            )
        delay = min(self._max_delay, self._base_delay * (2**self._attempts))
        self._attempts += 1
        if self._jitter:
            delay *= 1 + self._jitter * (2 * self._rng() - 1)
        return max(0.0, min(delay, self._max_delay))

    async def wait(self) -> None:
        await asyncio.sleep(self.next_delay())

    def reset(self) -> None:
        self._attempts = 0


class ReceiveVerdict(Enum):
    """How an incoming envelope was handled."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    GAP = "gap"
    RESYNC = "resync"
    CONTROL = "control"


@dataclass(frozen=True)
class ReceiveResult:
    """Outcome of ``ClientChannel.receive``.

    Attributes:
        verdict: Classification of the envelope.
        envelope: The decoded envelope.
        outgoing: Frames the channel wants sent back (replay request or
            replayed envelopes), in order.
    """

    verdict: ReceiveVerdict
    envelope: Envelope
    outgoing: tuple[str, ...] = ()


class ClientChannel:
    """Client-side ordering, mirroring and replay for one Project."""

    def __init__(
        self,
        project_id: str,
        identity_id: str,
        *,
        client_id: str | None = None,
        config: SessionConfig | None = None,
    ) -> None:
        config = config or SessionConfig()
        self.project_id = project_id
        self.identity_id = identity_id
        self.client_id = client_id or identity_id
        self._config = config

        self.last_seen_id: int | None = None
        self.state: ConnectionState | None = None
        self.permissions: dict[str, PermissionRequestPayload] = {}
        self.resolutions: dict[str, PermissionResolved] = {}
        self.progress = ProgressAggregator(project_id)
        self.output: list[AgentOutput] = []
        self.errors: list[ErrorPayload] = []
        self.token: str | None = None
        self.token_expires_at: int | None = None

        self._outbound = ReplayBuffer(
            max_messages=config.replay_max_messages,
            max_age=config.replay_max_age,
        )
        self._transport: FrameTransport | None = None
        self._callbacks: list[EnvelopeCallback] = []
        self._ending = False

    def on_envelope(self, callback: EnvelopeCallback) -> None:
        """Register callback receiving every applied envelope."""
        self._callbacks.append(callback)

    @property
    def connected(self) -> bool:
        return self._transport is not None

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    def build(self, payload: Payload) -> Envelope:
        """Stamp ``payload`` with the next outbound id and retain it."""
        envelope = build_envelope(
            payload, project_id=self.project_id, msg_id=self._outbound.last_id + 1
        )
        self._outbound.append(envelope)
        return envelope

    async def send(self, payload: Payload) -> Envelope:
        """Send ``payload`` now if connected; otherwise it waits for reconnection."""
        envelope = self.build(payload)
        if self._transport is not None:
            try:
                await self._transport.send(encode_envelope(envelope))
            except TransportLost:
                _LOGGER.debug("[%s] Send failed, id %d retained", self.project_id, envelope.id)
                self._transport = None
        return envelope

    async def command(self, text: str, *, kind: str = "prompt") -> Envelope:
        return await self.send(Command(text=text, kind=kind))

    async def respond_permission(self, request_id: str, decision: str) -> Envelope:
        return await self.send(PermissionResponse(request_id=request_id, decision=decision))

    async def control(self, action: str) -> Envelope:
        """Send a session control action. ``disconnect`` and ``shutdown`` end ``run``."""
        if action in ("disconnect", "shutdown"):
            self._ending = True
        return await self.send(SessionControl(action=action, last_seen_id=self.last_seen_id))

    def pending_frames(self) -> list[str]:
        """Every retained outbound envelope, for resending after a reconnect.

        The server drops the ones it already processed.
        """
        first_id = self._outbound.first_id
        if first_id is None:
            return []
        result = self._outbound.replay_after(first_id - 1)
        return [encode_envelope(env) for env in result.envelopes]

    # -------------------------------------------------------------------------
    # Handshake
    # -------------------------------------------------------------------------

    def build_hello(self) -> str:
        return encode_envelope(
            build_envelope(
                Hello(
                    identity_id=self.identity_id,
                    project_id=self.project_id,
                    last_seen_id=self.last_seen_id,
                ),
                project_id=self.project_id,
            )
        )

    def sign_challenge(self, store: CredentialStore, challenge: AuthChallenge) -> AuthResponse:
        """Answer a challenge through the credential store's signer handle."""
        signer = store.get_private_key_handle(self.identity_id)
        signature = signer.sign(
            challenge_signing_payload(challenge.challenge_id, challenge.nonce)
        )
        return AuthResponse(
            challenge_id=challenge.challenge_id,
            signature=base64.b64encode(signature).decode("ascii"),
            fingerprint=store.get_public_key_fingerprint(self.identity_id),
        )

    async def open(
        self,
        transport: FrameTransport,
        store: CredentialStore,
        *,
        timeout: float | None = None,
    ) -> None:
        """Run hello + challenge-response on ``transport`` and attach it.

        Retained outbound envelopes are resent once authenticated.

        Raises:
            AuthFailed: The server rejected the identity.
            HandshakeTimeout: The server did not answer in time.
            TransportLost: The transport dropped during the exchange.
        """
        timeout = timeout or self._config.handshake_timeout
        await transport.send(self.build_hello())
        challenge = await self._expect(transport, MessageType.AUTH_CHALLENGE, timeout)
        if not isinstance(challenge.payload, AuthChallenge):
            raise AuthFailed("Empty challenge", project_id=self.project_id, phase="handshake")
        response = self.sign_challenge(store, challenge.payload)
        await transport.send(
            encode_envelope(build_envelope(response, project_id=self.project_id))
        )
        ok = await self._expect(transport, MessageType.AUTH_OK, timeout)
        if not isinstance(ok.payload, AuthOk):
            raise AuthFailed("Empty auth_ok", project_id=self.project_id, phase="handshake")
        self._store_token(ok.payload)
        self._transport = transport
        _LOGGER.info("[%s] Authenticated as %s", self.project_id, self.identity_id)
        for frame in self.pending_frames():
            await transport.send(frame)

    async def _expect(
        self, transport: FrameTransport, msg_type: MessageType, timeout: float
    ) -> Envelope:
        try:
            frame = await asyncio.wait_for(transport.receive(), timeout=timeout)
        except TimeoutError as err:
            raise HandshakeTimeout(
                f"No {msg_type.value} received", project_id=self.project_id, phase="handshake"
            ) from err
        envelope = decode_envelope(frame)
        if isinstance(envelope.payload, ErrorPayload):
            detail = envelope.payload.detail or envelope.payload.kind
            if envelope.payload.kind == AuthFailed.kind:
                raise AuthFailed(detail, project_id=self.project_id, phase="handshake")
            # Rate limiting and similar refusals are retried with backoff.
            raise TransportLost(
                detail, project_id=self.project_id, phase="handshake", kind=envelope.payload.kind
            )
        if envelope.message_type is not msg_type:
            raise AuthFailed(
                f"Expected {msg_type.value}, got {envelope.type}",
                project_id=self.project_id,
                phase="handshake",
            )
        return envelope

    def _store_token(self, ok: AuthOk) -> None:
        self.token = ok.token
        self.token_expires_at = ok.expires_at

    def detach(self) -> None:
        """Forget the current transport after it dropped."""
        self._transport = None

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    def receive(self, frame: str | bytes | Envelope) -> ReceiveResult:
        """Classify and apply one incoming envelope."""
        envelope = frame if isinstance(frame, Envelope) else decode_envelope(frame)

        if envelope.id == 0 or not envelope.is_sequenced:
            if isinstance(envelope.payload, AuthOk):
                self._store_token(envelope.payload)
            elif isinstance(envelope.payload, ErrorPayload):
                self.errors.append(envelope.payload)
            return ReceiveResult(ReceiveVerdict.CONTROL, envelope)

        if isinstance(envelope.payload, StateSnapshot) and (
            envelope.payload.resync or self.last_seen_id is None
        ):
            self.apply_snapshot(envelope.payload)
            self.last_seen_id = envelope.id
            return ReceiveResult(ReceiveVerdict.RESYNC, envelope)

        if self.last_seen_id is not None:
            if envelope.id <= self.last_seen_id:
                _LOGGER.debug("[%s] Duplicate id %d ignored", self.project_id, envelope.id)
                return ReceiveResult(ReceiveVerdict.DUPLICATE, envelope)
            if envelope.id > self.last_seen_id + 1:
                _LOGGER.warning(
                    "[%s] Gap: got id %d after %d, requesting replay",
                    self.project_id,
                    envelope.id,
                    self.last_seen_id,
                )
                request = self.build(ReplayRequest(after_id=self.last_seen_id))
                return ReceiveResult(
                    ReceiveVerdict.GAP, envelope, (encode_envelope(request),)
                )

        self.last_seen_id = envelope.id
        outgoing = self._apply(envelope)
        return ReceiveResult(ReceiveVerdict.APPLIED, envelope, outgoing)

    def _apply(self, envelope: Envelope) -> tuple[str, ...]:
        payload = envelope.payload
        if isinstance(payload, PermissionRequestPayload):
            if payload.id not in self.resolutions:
                self.permissions[payload.id] = payload
        elif isinstance(payload, PermissionResolved):
            self.permissions.pop(payload.request_id, None)
            self.resolutions[payload.request_id] = payload
        elif isinstance(payload, ProgressEvent):
            self.progress.apply(payload)
        elif isinstance(payload, AgentOutput):
            self.output.append(payload)
        elif isinstance(payload, StateChanged):
            self.state = ConnectionState(payload.state)
        elif isinstance(payload, StateSnapshot):
            self.apply_snapshot(payload)
        elif isinstance(payload, ErrorPayload):
            _LOGGER.warning("[%s] Server error %s: %s", self.project_id, payload.kind, payload.detail)
            self.errors.append(payload)
        elif isinstance(payload, ReplayRequest):
            result = self._outbound.replay_after(payload.after_id)
            if result.full_resync:
                _LOGGER.warning(
                    "[%s] Cannot replay after id %d, outside retention",
                    self.project_id,
                    payload.after_id,
                )
            return tuple(encode_envelope(env) for env in result.envelopes)
        return ()

    def apply_snapshot(self, snapshot: StateSnapshot) -> None:
        """Replace the mirrored state with a server snapshot."""
        self.state = ConnectionState(snapshot.state)
        self.permissions = {}
        for item in snapshot.permissions:
            try:
                request = PermissionRequestPayload.from_body(item)
            except PocketAgentError as err:
                _LOGGER.warning("[%s] Bad permission in snapshot: %s", self.project_id, err)
                continue
            self.permissions[request.id] = request
        self.resolutions = {
            k: v for k, v in self.resolutions.items() if k not in self.permissions
        }
        self.progress.load([_node_from_dict(item) for item in snapshot.progress])
        _LOGGER.info(
            "[%s] Snapshot applied (%d open permissions, %d progress nodes)",
            self.project_id,
            len(self.permissions),
            len(self.progress),
        )

    # -------------------------------------------------------------------------
    # Connection loop
    # -------------------------------------------------------------------------

    async def run(
        self,
        connect: Callable[[], Awaitable[FrameTransport]],
        store: CredentialStore,
        backoff: ReconnectBackoff | None = None,
    ) -> None:
        """Stay connected, reconnecting with backoff after every loss.

        Returns when the server ends the session (``disconnected`` after a
        requested disconnect or shutdown).

        Raises:
            AuthFailed: Authentication is never retried.
            TransportLost: The reconnect attempt ceiling was reached.
        """
        backoff = backoff or ReconnectBackoff.from_config(self._config)
        while True:
            try:
                transport = await connect()
                await self.open(transport, store)
                backoff.reset()
                if await self._pump(transport):
                    return
            except (TransportLost, HandshakeTimeout) as err:
                self.detach()
                _LOGGER.info(
                    "[%s] Connection lost (%s), reconnect attempt %d",
                    self.project_id,
                    err,
                    backoff.attempts + 1,
                )
                await backoff.wait()

    async def _pump(self, transport: FrameTransport) -> bool:
        """Process frames until the transport drops. True if the session ended."""
        while True:
            frame = await transport.receive()
            try:
                result = self.receive(frame)
            except ProtocolViolation as err:
                _LOGGER.warning("[%s] Malformed frame ignored: %s", self.project_id, err)
                msg_id = err.context.get("msg_id")
                if msg_id and self.last_seen_id is not None and msg_id == self.last_seen_id + 1:
                    self.last_seen_id = msg_id
                continue
            for outgoing in result.outgoing:
                await transport.send(outgoing)
            if result.verdict in (ReceiveVerdict.APPLIED, ReceiveVerdict.RESYNC):
                for callback in list(self._callbacks):
                    try:
                        outcome = callback(result.envelope)
                        if inspect.isawaitable(outcome):
                            await outcome
                    except Exception as err:
                        _LOGGER.exception("[%s] Envelope callback error: %s", self.project_id, err)
            payload = result.envelope.payload
            if self._ending and isinstance(payload, StateChanged) and payload.state in (
                ConnectionState.DISCONNECTING.value,
                ConnectionState.DISCONNECTED.value,
            ):
                self.detach()
                await transport.close()
                return True


def _node_from_dict(item: Mapping[str, Any]) -> ProgressNode:
    return ProgressNode(
        id=str(item.get("node_id") or item.get("id")),
        parent_id=item.get("parent_id"),
        label=item.get("label") or "",
        status=ProgressStatus(item.get("status", "pending")),
        percentage=float(item.get("percentage", 0.0)),
        placeholder=bool(item.get("placeholder", False)),
        started_at=from_epoch_ms(item.get("started_at")),
        ended_at=from_epoch_ms(item.get("ended_at")),
    )
