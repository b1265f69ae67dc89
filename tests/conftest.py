"""Pytest configuration and fixtures for pocket_agent_core tests."""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives.asymmetric import ed25519

from pocket_agent_core.adapter import AgentAdapter, CloneProgressCallback
from pocket_agent_core.auth import (
    AuthHandshake,
    AuthorizedKeys,
    PrivateKeySigner,
    challenge_signing_payload,
)
from pocket_agent_core.config import SessionConfig
from pocket_agent_core.errors import TransportLost
from pocket_agent_core.models import ConnectionState, PermissionPolicy, Project
from pocket_agent_core.protocol import (
    AuthChallenge,
    AuthResponse,
    Envelope,
    build_envelope,
    decode_envelope,
    encode_envelope,
)
from pocket_agent_core.session import SessionManager

IDENTITY_ID = "laptop"

Responder = Callable[[str], list[str]]


class FakeTransport:
    """In-memory FrameTransport.

    Frames queued with ``feed`` are returned by ``receive``; frames the code
    under test sends are recorded in ``sent``. An optional responder sees
    every sent frame and may queue replies (used to answer challenges).
    """

    def __init__(self, peer: str = "10.0.0.2:51000", responder: Responder | None = None):
        self._peer = peer
        self._inbound: asyncio.Queue[str | None] = asyncio.Queue()
        self.responder = responder
        self.sent: list[str] = []
        self.closed = False
        self.close_code: int | None = None
        self.fail_sends = False

    @property
    def peer(self) -> str:
        return self._peer

    def feed(self, frame: str | Envelope) -> None:
        if isinstance(frame, Envelope):
            frame = encode_envelope(frame)
        self._inbound.put_nowait(frame)

    def drop(self) -> None:
        """Simulate the peer vanishing."""
        self.closed = True
        self._inbound.put_nowait(None)

    async def send(self, frame: str) -> None:
        if self.closed or self.fail_sends:
            raise TransportLost("fake transport closed")
        self.sent.append(frame)
        if self.responder is not None:
            for reply in self.responder(frame):
                self._inbound.put_nowait(reply)

    async def receive(self) -> str:
        if self.closed and self._inbound.empty():
            raise TransportLost("fake transport closed")
        frame = await self._inbound.get()
        if frame is None:
            raise TransportLost("fake transport closed")
        return frame

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self.closed:
            self.close_code = code
        self.closed = True
        self._inbound.put_nowait(None)

    def envelopes(self) -> list[Envelope]:
        return [decode_envelope(frame) for frame in self.sent]

    def sequenced(self) -> list[Envelope]:
        return [env for env in self.envelopes() if env.id > 0]

    def of_type(self, msg_type: str) -> list[Envelope]:
        return [env for env in self.envelopes() if env.type == msg_type]


def linked_pair(
    client_peer: str = "10.0.0.2:51000", server_peer: str = "server:8443"
) -> tuple[FakeTransport, FakeTransport]:
    """Two transports wired back to back: what one sends, the other receives."""
    client = FakeTransport(server_peer)
    server = FakeTransport(client_peer)

    def forward(target: FakeTransport) -> Responder:
        def respond(frame: str) -> list[str]:
            if not target.closed:
                target.feed(frame)
            return []

        return respond

    client.responder = forward(server)
    server.responder = forward(client)
    return client, server


async def wait_for_state(
    manager: SessionManager, project_id: str, state: ConnectionState, timeout: float = 2.0
) -> None:
    """Poll until ``project_id`` reaches ``state``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while manager.state(project_id) is not state:
        if loop.time() > deadline:
            raise AssertionError(
                f"{project_id} stuck in {manager.state(project_id).value}, wanted {state.value}"
            )
        await asyncio.sleep(0.01)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class FakeKeyStore:
    """Credential store backed by in-process keys."""

    def __init__(self, keys: dict[str, ed25519.Ed25519PrivateKey]):
        self._signers = {identity: PrivateKeySigner(key) for identity, key in keys.items()}

    def get_private_key_handle(self, identity_id: str) -> PrivateKeySigner:
        return self._signers[identity_id]

    def get_public_key_fingerprint(self, identity_id: str) -> str:
        return self._signers[identity_id].fingerprint


def auth_responder(store: FakeKeyStore, identity_id: str = IDENTITY_ID) -> Responder:
    """Answer every auth_challenge the server sends."""

    def respond(frame: str) -> list[str]:
        envelope = decode_envelope(frame)
        if not isinstance(envelope.payload, AuthChallenge):
            return []
        challenge = envelope.payload
        signature = store.get_private_key_handle(identity_id).sign(
            challenge_signing_payload(challenge.challenge_id, challenge.nonce)
        )
        response = AuthResponse(
            challenge_id=challenge.challenge_id,
            signature=base64.b64encode(signature).decode("ascii"),
            fingerprint=store.get_public_key_fingerprint(identity_id),
        )
        return [encode_envelope(build_envelope(response, project_id=envelope.project_id))]

    return respond


class FakeAgentAdapter(AgentAdapter):
    """Agent adapter recording every outbound call."""

    def __init__(self) -> None:
        super().__init__()
        self.reachable = True
        self.commands: list[tuple[str, str]] = []
        self.resolutions: list[tuple[str, str, PermissionPolicy]] = []
        self.terminated: list[str] = []
        self.terminate_error: Exception | None = None
        self.terminate_delay = 0.0
        self.clone_steps: list[Any] = []
        self.init_error: Exception | None = None
        self.session_id = "abc123"
        self.init_hook: Callable[[str], None] | None = None

    async def check_reachable(self, project_id: str) -> bool:
        return self.reachable

    async def send_command(self, project_id: str, text: str) -> None:
        self.commands.append((project_id, text))

    async def resolve_permission(
        self, project_id: str, request_id: str, decision: PermissionPolicy
    ) -> None:
        self.resolutions.append((project_id, request_id, decision))

    async def terminate(self, project_id: str) -> None:
        if self.terminate_delay:
            await asyncio.sleep(self.terminate_delay)
        if self.terminate_error is not None:
            raise self.terminate_error
        self.terminated.append(project_id)

    async def init_project(
        self,
        project_id: str,
        path: str,
        repository_url: str | None,
        access_token: str | None,
        on_progress: CloneProgressCallback,
    ) -> str:
        if self.init_hook is not None:
            self.init_hook(project_id)
        for step in self.clone_steps:
            await on_progress(step)
        if self.init_error is not None:
            raise self.init_error
        return self.session_id

    # Expose emitters for tests.
    emit_output = AgentAdapter._emit_output
    emit_permission_request = AgentAdapter._emit_permission_request
    emit_progress_event = AgentAdapter._emit_progress_event


@pytest.fixture
def identity_key() -> ed25519.Ed25519PrivateKey:
    return ed25519.Ed25519PrivateKey.generate()


@pytest.fixture
def key_store(identity_key: ed25519.Ed25519PrivateKey) -> FakeKeyStore:
    return FakeKeyStore({IDENTITY_ID: identity_key})


@pytest.fixture
def authorized_keys(identity_key: ed25519.Ed25519PrivateKey) -> AuthorizedKeys:
    return AuthorizedKeys.from_public_keys({IDENTITY_ID: identity_key.public_key()})


@pytest.fixture
def config() -> SessionConfig:
    return SessionConfig(handshake_timeout=1.0, heartbeat_interval=3600, heartbeat_grace=60)


@pytest.fixture
def handshake(authorized_keys: AuthorizedKeys, config: SessionConfig) -> AuthHandshake:
    return AuthHandshake.from_config(authorized_keys, config)


@pytest.fixture
def adapter() -> FakeAgentAdapter:
    return FakeAgentAdapter()


@pytest_asyncio.fixture
async def manager(
    adapter: FakeAgentAdapter, handshake: AuthHandshake, config: SessionConfig
):
    manager = SessionManager(adapter, handshake, config)
    yield manager
    await manager.close()


@pytest.fixture
def project() -> Project:
    return Project(id="p1", name="app", server_id="srv", path="/srv/app")


@pytest.fixture
def make_transport(key_store: FakeKeyStore) -> Callable[..., FakeTransport]:
    """Factory for transports that authenticate as ``laptop``."""

    def factory(peer: str = "10.0.0.2:51000") -> FakeTransport:
        return FakeTransport(peer, responder=auth_responder(key_store))

    return factory


@pytest.fixture
def mock_session() -> MagicMock:
    """Create a mock aiohttp ClientSession."""
    import aiohttp

    return MagicMock(spec=aiohttp.ClientSession)


class MockStreamContent:
    """Async line iterator standing in for ``ClientResponse.content``."""

    def __init__(self, lines: list[bytes]):
        self._lines = lines

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for line in self._lines:
            yield line


def create_mock_response(
    status: int = 200,
    json_data: dict[str, Any] | None = None,
    text_data: str | None = None,
    lines: list[bytes] | None = None,
) -> AsyncMock:
    """Create a configured mock response.

    Args:
        status: HTTP status code
        json_data: Data to return from json() call
        text_data: Data to return from text() call
        lines: NDJSON lines to stream from ``content``

    Returns:
        Configured AsyncMock response
    """
    response = AsyncMock()
    response.status = status

    if json_data is not None:
        response.json.return_value = json_data
    if text_data is not None:
        response.text.return_value = text_data
    if lines is not None:
        response.content = MockStreamContent(lines)

    response.__aenter__.return_value = response
    response.__aexit__.return_value = None

    return response

