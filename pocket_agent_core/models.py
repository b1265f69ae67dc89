"""Data model for projects, sessions, permission requests and progress nodes.

Wire payloads live in ``protocol``; these are the in-memory records the
session core owns and snapshots.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import uuid4

from .replay import InboundTracker


class ConnectionState(Enum):
    """Logical connection state of a Project, independent of the transport."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    SHUTDOWN = "shutdown"


class PermissionPolicy(Enum):
    """Decision applied to a permission request."""

    ALLOW = "allow"
    DENY = "deny"


class PermissionResolution(Enum):
    """Lifecycle of a permission request."""

    PENDING = "pending"
    ALLOWED = "allowed"
    DENIED = "denied"
    TIMED_OUT = "timed_out"


class ProgressStatus(Enum):
    """Status of a progress node."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProgressStatus.SUCCEEDED, ProgressStatus.FAILED)


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


def to_epoch_ms(value: datetime | None) -> int | None:
    """Convert an aware datetime to epoch milliseconds."""
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: int | None) -> datetime | None:
    """Convert epoch milliseconds to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=UTC)


@dataclass(frozen=True)
class SSHIdentity:
    """Client key pair reference. The private key never leaves secure storage.

    Attributes:
        id: Identity identifier.
        display_name: Human-readable name.
        key_ref: Opaque handle into the credential store.
        fingerprint: OpenSSH ``SHA256:`` public-key fingerprint.
    """

    id: str
    display_name: str
    key_ref: str
    fingerprint: str


@dataclass
class ServerProfile:
    """A development server reachable over SSH.

    Several profiles may reference the same identity by id.
    """

    id: str
    name: str
    host: str
    port: int
    username: str
    identity_id: str
    last_connected: datetime | None = None
    reachable: bool | None = None


@dataclass
class Project:
    """The unit of session identity: one logical conversation with the agent.

    A Project outlives any number of physical connections.
    """

    id: str
    name: str
    server_id: str
    path: str
    scripts_path: str | None = None
    agent_session_id: str | None = None
    state: ConnectionState = ConnectionState.DISCONNECTED
    created_at: datetime = field(default_factory=utcnow)
    last_active: datetime = field(default_factory=utcnow)

    def touch(self) -> None:
        self.last_active = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "server_id": self.server_id,
            "path": self.path,
            "scripts_path": self.scripts_path,
            "agent_session_id": self.agent_session_id,
            "state": self.state.value,
            "created_at": to_epoch_ms(self.created_at),
            "last_active": to_epoch_ms(self.last_active),
        }


@dataclass
class Session:
    """Ephemeral state of one authenticated physical connection.

    Destroyed when the transport closes. ``outbound_start_id`` records the
    Project's envelope counter when this Session was attached. ``inbound``
    is the watermark of the sending client, kept per client on the Project
    so it survives reconnects.
    """

    project_id: str
    identity_id: str
    client_id: str
    token: str
    expires_at: datetime
    inbound: InboundTracker = field(default_factory=InboundTracker)
    session_id: str = field(default_factory=lambda: uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)
    outbound_start_id: int = 0
    last_heartbeat: float = 0.0
    violations: int = 0

    @property
    def inbound_watermark(self) -> int:
        return self.inbound.watermark

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def remaining(self, now: datetime | None = None) -> timedelta:
        return self.expires_at - (now or utcnow())


@dataclass(frozen=True)
class PermissionRequest:
    """An approval request raised by the agent.

    Immutable: resolution produces a new instance via ``resolved``.
    """

    id: str
    description: str
    source_agent_id: str
    timeout_ms: int
    default_policy: PermissionPolicy
    issued_at: datetime = field(default_factory=utcnow)
    resolution: PermissionResolution = PermissionResolution.PENDING
    decision: PermissionPolicy | None = None
    resolved_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.resolution is PermissionResolution.PENDING

    @property
    def deadline(self) -> datetime:
        return self.issued_at + timedelta(milliseconds=self.timeout_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "source_agent_id": self.source_agent_id,
            "timeout_ms": self.timeout_ms,
            "default_policy": self.default_policy.value,
            "issued_at": to_epoch_ms(self.issued_at),
            "resolution": self.resolution.value,
            "decision": self.decision.value if self.decision else None,
        }


@dataclass(frozen=True)
class ProgressNode:
    """One task or sub-agent in a progress tree.

    Attributes:
        id: Node identifier.
        parent_id: Parent node id, None for a root (or an orphan awaiting its parent).
        label: Display label.
        status: Current status.
        percentage: 0-100, monotone non-decreasing while running.
        placeholder: True until the node's own event arrives.
        started_at: When the node first entered running.
        ended_at: When the node reached a terminal status.
    """

    id: str
    parent_id: str | None
    label: str
    status: ProgressStatus = ProgressStatus.PENDING
    percentage: float = 0.0
    placeholder: bool = False
    started_at: datetime | None = None
    ended_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.id,
            "parent_id": self.parent_id,
            "label": self.label,
            "status": self.status.value,
            "percentage": self.percentage,
            "placeholder": self.placeholder,
            "started_at": to_epoch_ms(self.started_at),
            "ended_at": to_epoch_ms(self.ended_at),
        }
