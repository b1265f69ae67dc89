"""Envelope codec for the Pocket Agent wire protocol.

Frames are JSON objects::

    {"v": 1, "id": 17, "type": "progress_event", "project_id": "...",
     "ts": 1760000000000, "body": {...}}

``id`` is assigned by the sender and increases monotonically per Project.
Handshake frames and heartbeats are transport-level and carry ``id`` 0.
Unknown message types decode to an envelope without a payload so that new
payload types never break old readers; unknown body fields are ignored.
"""

from __future__ import annotations

import json
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from .errors import ProtocolViolation

PROTOCOL_VERSION = 1
UNSEQUENCED_ID = 0


class MessageType(str, Enum):
    """Envelope type tags."""

    COMMAND = "command"
    PERMISSION_REQUEST = "permission_request"
    PERMISSION_RESPONSE = "permission_response"
    PERMISSION_RESOLVED = "permission_resolved"
    SESSION_CONTROL = "session_control"
    PROJECT_INIT = "project_init"
    CLONE_PROGRESS = "clone_progress"
    PROJECT_INIT_COMPLETE = "project_init_complete"
    AGENT_OUTPUT = "agent_output"
    PROGRESS_EVENT = "progress_event"
    HEARTBEAT = "heartbeat"
    ERROR = "error"
    HELLO = "hello"
    AUTH_CHALLENGE = "auth_challenge"
    AUTH_RESPONSE = "auth_response"
    AUTH_OK = "auth_ok"
    STATE_SNAPSHOT = "state_snapshot"
    STATE_CHANGED = "state_changed"
    REPLAY_REQUEST = "replay_request"


# Frames outside the per-Project ordering: never buffered, never replayed.
UNSEQUENCED_TYPES = frozenset(
    {
        MessageType.HEARTBEAT,
        MessageType.HELLO,
        MessageType.AUTH_CHALLENGE,
        MessageType.AUTH_RESPONSE,
        MessageType.AUTH_OK,
    }
)

_POLICIES = ("allow", "deny")
_PROGRESS_STATUSES = ("pending", "running", "succeeded", "failed")
_CONTROL_ACTIONS = ("resume", "disconnect", "shutdown")
_COMMAND_KINDS = ("prompt", "shell")


# --------------------------------------------------------------------------
# Field validation
# --------------------------------------------------------------------------


def _require(body: Mapping[str, Any], name: str) -> Any:
    if name not in body or body[name] is None:
        raise ProtocolViolation(f"Missing required field: {name}")
    return body[name]


def _require_str(body: Mapping[str, Any], name: str) -> str:
    value = _require(body, name)
    if not isinstance(value, str):
        raise ProtocolViolation(f"Field {name} must be a string")
    return value


def _optional_str(body: Mapping[str, Any], name: str) -> str | None:
    value = body.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ProtocolViolation(f"Field {name} must be a string")
    return value


def _require_number(body: Mapping[str, Any], name: str) -> float:
    value = _require(body, name)
    # bool is a subclass of int
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolViolation(f"Field {name} must be a number")
    return value


def _optional_int(body: Mapping[str, Any], name: str) -> int | None:
    value = body.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolViolation(f"Field {name} must be an integer")
    return value


def _require_choice(body: Mapping[str, Any], name: str, choices: tuple[str, ...]) -> str:
    value = _require_str(body, name)
    if value not in choices:
        raise ProtocolViolation(f"Field {name} must be one of {', '.join(choices)}")
    return value


def _percentage(body: Mapping[str, Any]) -> float:
    value = _require_number(body, "percentage")
    if not 0 <= value <= 100:
        raise ProtocolViolation(f"percentage must be 0-100, got {value}")
    return value


def _drop_none(body: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in body.items() if v is not None}


# --------------------------------------------------------------------------
# Payloads
# --------------------------------------------------------------------------


class Payload:
    """Base class for typed envelope payloads."""

    TYPE: ClassVar[MessageType]

    def to_body(self) -> dict[str, Any]:
        raise NotImplementedError

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> Payload:
        raise NotImplementedError


@dataclass(frozen=True)
class Command(Payload):
    """Prompt text or shell command for the agent."""

    TYPE: ClassVar[MessageType] = MessageType.COMMAND

    text: str
    kind: str = "prompt"

    def to_body(self) -> dict[str, Any]:
        return {"text": self.text, "kind": self.kind}

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> Command:
        text = _require_str(body, "text")
        if not text.strip():
            raise ProtocolViolation("Command text cannot be empty")
        kind = body.get("kind") or "prompt"
        if kind not in _COMMAND_KINDS:
            raise ProtocolViolation(f"Unknown command kind: {kind}")
        return cls(text=text, kind=kind)


@dataclass(frozen=True)
class PermissionRequestPayload(Payload):
    TYPE: ClassVar[MessageType] = MessageType.PERMISSION_REQUEST

    id: str
    description: str
    source_agent_id: str
    timeout_ms: int
    default_policy: str

    def to_body(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "source_agent_id": self.source_agent_id,
            "timeout_ms": self.timeout_ms,
            "default_policy": self.default_policy,
        }

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> PermissionRequestPayload:
        timeout_ms = int(_require_number(body, "timeout_ms"))
        if timeout_ms <= 0:
            raise ProtocolViolation("timeout_ms must be positive")
        return cls(
            id=_require_str(body, "id"),
            description=_require_str(body, "description"),
            source_agent_id=_require_str(body, "source_agent_id"),
            timeout_ms=timeout_ms,
            default_policy=_require_choice(body, "default_policy", _POLICIES),
        )


@dataclass(frozen=True)
class PermissionResponse(Payload):
    TYPE: ClassVar[MessageType] = MessageType.PERMISSION_RESPONSE

    request_id: str
    decision: str

    def to_body(self) -> dict[str, Any]:
        return {"request_id": self.request_id, "decision": self.decision}

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> PermissionResponse:
        return cls(
            request_id=_require_str(body, "request_id"),
            decision=_require_choice(body, "decision", _POLICIES),
        )


@dataclass(frozen=True)
class PermissionResolved(Payload):
    """Terminal outcome of a permission request, sent to the client."""

    TYPE: ClassVar[MessageType] = MessageType.PERMISSION_RESOLVED

    request_id: str
    resolution: str
    decision: str

    def to_body(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "resolution": self.resolution,
            "decision": self.decision,
        }

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> PermissionResolved:
        return cls(
            request_id=_require_str(body, "request_id"),
            resolution=_require_choice(
                body, "resolution", ("allowed", "denied", "timed_out")
            ),
            decision=_require_choice(body, "decision", _POLICIES),
        )


@dataclass(frozen=True)
class SessionControl(Payload):
    TYPE: ClassVar[MessageType] = MessageType.SESSION_CONTROL

    action: str
    last_seen_id: int | None = None

    def to_body(self) -> dict[str, Any]:
        return _drop_none({"action": self.action, "last_seen_id": self.last_seen_id})

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> SessionControl:
        return cls(
            action=_require_choice(body, "action", _CONTROL_ACTIONS),
            last_seen_id=_optional_int(body, "last_seen_id"),
        )


@dataclass(frozen=True)
class ProjectInit(Payload):
    """Create a Project, optionally cloning a repository into its path."""

    TYPE: ClassVar[MessageType] = MessageType.PROJECT_INIT

    project_path: str
    repository_url: str | None = None
    access_token: str | None = None
    identity_id: str | None = None

    def to_body(self) -> dict[str, Any]:
        return _drop_none(
            {
                "project_path": self.project_path,
                "repository_url": self.repository_url,
                "access_token": self.access_token,
                "identity_id": self.identity_id,
            }
        )

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> ProjectInit:
        path = _require_str(body, "project_path")
        if not path.strip():
            raise ProtocolViolation("project_path cannot be empty")
        return cls(
            project_path=path,
            repository_url=_optional_str(body, "repository_url"),
            access_token=_optional_str(body, "access_token"),
            identity_id=_optional_str(body, "identity_id"),
        )

    def __repr__(self) -> str:
        token = "***" if self.access_token else None
        return (
            f"ProjectInit(project_path={self.project_path!r}, "
            f"repository_url={self.repository_url!r}, access_token={token!r})"
        )


@dataclass(frozen=True)
class CloneProgress(Payload):
    TYPE: ClassVar[MessageType] = MessageType.CLONE_PROGRESS

    percentage: float
    status: str
    error: str | None = None

    def to_body(self) -> dict[str, Any]:
        return _drop_none(
            {"percentage": self.percentage, "status": self.status, "error": self.error}
        )

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> CloneProgress:
        return cls(
            percentage=_percentage(body),
            status=_require_str(body, "status"),
            error=_optional_str(body, "error"),
        )


@dataclass(frozen=True)
class ProjectInitComplete(Payload):
    TYPE: ClassVar[MessageType] = MessageType.PROJECT_INIT_COMPLETE

    success: bool
    session_id: str
    error: str | None = None

    def to_body(self) -> dict[str, Any]:
        return _drop_none(
            {"success": self.success, "session_id": self.session_id, "error": self.error}
        )

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> ProjectInitComplete:
        success = _require(body, "success")
        if not isinstance(success, bool):
            raise ProtocolViolation("Field success must be a boolean")
        return cls(
            success=success,
            session_id=body.get("session_id") or "",
            error=_optional_str(body, "error"),
        )


@dataclass(frozen=True)
class AgentOutput(Payload):
    """Free text or a structured fragment emitted by the agent."""

    TYPE: ClassVar[MessageType] = MessageType.AGENT_OUTPUT

    text: str | None = None
    fragment: dict[str, Any] | None = None

    def to_body(self) -> dict[str, Any]:
        return _drop_none({"text": self.text, "fragment": self.fragment})

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> AgentOutput:
        fragment = body.get("fragment")
        if fragment is not None and not isinstance(fragment, dict):
            raise ProtocolViolation("Field fragment must be an object")
        return cls(text=_optional_str(body, "text"), fragment=fragment)


@dataclass(frozen=True)
class ProgressEvent(Payload):
    TYPE: ClassVar[MessageType] = MessageType.PROGRESS_EVENT

    node_id: str
    label: str
    status: str
    percentage: float
    parent_id: str | None = None

    def to_body(self) -> dict[str, Any]:
        return _drop_none(
            {
                "node_id": self.node_id,
                "parent_id": self.parent_id,
                "label": self.label,
                "status": self.status,
                "percentage": self.percentage,
            }
        )

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> ProgressEvent:
        return cls(
            node_id=_require_str(body, "node_id"),
            parent_id=_optional_str(body, "parent_id"),
            label=body.get("label") or "",
            status=_require_choice(body, "status", _PROGRESS_STATUSES),
            percentage=_percentage(body),
        )


@dataclass(frozen=True)
class Heartbeat(Payload):
    TYPE: ClassVar[MessageType] = MessageType.HEARTBEAT

    def to_body(self) -> dict[str, Any]:
        return {}

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> Heartbeat:
        return cls()


@dataclass(frozen=True)
class ErrorPayload(Payload):
    TYPE: ClassVar[MessageType] = MessageType.ERROR

    kind: str
    detail: str
    context: dict[str, Any] | None = None

    def to_body(self) -> dict[str, Any]:
        return _drop_none({"kind": self.kind, "detail": self.detail, "context": self.context})

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> ErrorPayload:
        context = body.get("context")
        return cls(
            kind=_require_str(body, "kind"),
            detail=body.get("detail") or "",
            context=context if isinstance(context, dict) else None,
        )


@dataclass(frozen=True)
class Hello(Payload):
    """Opening frame of a physical connection to an existing Project."""

    TYPE: ClassVar[MessageType] = MessageType.HELLO

    identity_id: str
    project_id: str
    last_seen_id: int | None = None

    def to_body(self) -> dict[str, Any]:
        return _drop_none(
            {
                "identity_id": self.identity_id,
                "project_id": self.project_id,
                "last_seen_id": self.last_seen_id,
            }
        )

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> Hello:
        return cls(
            identity_id=_require_str(body, "identity_id"),
            project_id=_require_str(body, "project_id"),
            last_seen_id=_optional_int(body, "last_seen_id"),
        )


@dataclass(frozen=True)
class AuthChallenge(Payload):
    TYPE: ClassVar[MessageType] = MessageType.AUTH_CHALLENGE

    challenge_id: str
    nonce: str

    def to_body(self) -> dict[str, Any]:
        return {"challenge_id": self.challenge_id, "nonce": self.nonce}

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> AuthChallenge:
        return cls(
            challenge_id=_require_str(body, "challenge_id"),
            nonce=_require_str(body, "nonce"),
        )


@dataclass(frozen=True)
class AuthResponse(Payload):
    TYPE: ClassVar[MessageType] = MessageType.AUTH_RESPONSE

    challenge_id: str
    signature: str
    fingerprint: str

    def to_body(self) -> dict[str, Any]:
        return {
            "challenge_id": self.challenge_id,
            "signature": self.signature,
            "fingerprint": self.fingerprint,
        }

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> AuthResponse:
        return cls(
            challenge_id=_require_str(body, "challenge_id"),
            signature=_require_str(body, "signature"),
            fingerprint=_require_str(body, "fingerprint"),
        )


@dataclass(frozen=True)
class AuthOk(Payload):
    TYPE: ClassVar[MessageType] = MessageType.AUTH_OK

    token: str
    expires_at: int

    def to_body(self) -> dict[str, Any]:
        return {"token": self.token, "expires_at": self.expires_at}

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> AuthOk:
        return cls(
            token=_require_str(body, "token"),
            expires_at=int(_require_number(body, "expires_at")),
        )


@dataclass(frozen=True)
class StateSnapshot(Payload):
    """Full state of a Project, sent on full-resync or first connect."""

    TYPE: ClassVar[MessageType] = MessageType.STATE_SNAPSHOT

    state: str
    last_id: int
    permissions: list[dict[str, Any]] = field(default_factory=lambda: [])
    progress: list[dict[str, Any]] = field(default_factory=lambda: [])
    resync: bool = False

    def to_body(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "last_id": self.last_id,
            "permissions": list(self.permissions),
            "progress": list(self.progress),
            "resync": self.resync,
        }

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> StateSnapshot:
        permissions = body.get("permissions") or []
        progress = body.get("progress") or []
        if not isinstance(permissions, list) or not isinstance(progress, list):
            raise ProtocolViolation("Snapshot permissions and progress must be lists")
        return cls(
            state=_require_str(body, "state"),
            last_id=int(_require_number(body, "last_id")),
            permissions=permissions,
            progress=progress,
            resync=bool(body.get("resync", False)),
        )


@dataclass(frozen=True)
class StateChanged(Payload):
    TYPE: ClassVar[MessageType] = MessageType.STATE_CHANGED

    state: str

    def to_body(self) -> dict[str, Any]:
        return {"state": self.state}

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> StateChanged:
        return cls(state=_require_str(body, "state"))


@dataclass(frozen=True)
class ReplayRequest(Payload):
    """Ask the peer to resend every envelope after ``after_id``."""

    TYPE: ClassVar[MessageType] = MessageType.REPLAY_REQUEST

    after_id: int

    def to_body(self) -> dict[str, Any]:
        return {"after_id": self.after_id}

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> ReplayRequest:
        return cls(after_id=int(_require_number(body, "after_id")))


PAYLOAD_TYPES: dict[MessageType, type[Payload]] = {
    cls.TYPE: cls
    for cls in (
        Command,
        PermissionRequestPayload,
        PermissionResponse,
        PermissionResolved,
        SessionControl,
        ProjectInit,
        CloneProgress,
        ProjectInitComplete,
        AgentOutput,
        ProgressEvent,
        Heartbeat,
        ErrorPayload,
        Hello,
        AuthChallenge,
        AuthResponse,
        AuthOk,
        StateSnapshot,
        StateChanged,
        ReplayRequest,
    )
}


# --------------------------------------------------------------------------
# Envelope
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class Envelope:
    """One framed, ordered, typed message.

    Attributes:
        id: Sender-assigned monotonic id (0 for unsequenced frames).
        type: Type tag. Kept as a string so unknown types survive decoding.
        payload: Typed payload, None when the type is unknown.
        project_id: Project the envelope belongs to.
        timestamp_ms: Sender wall clock in epoch milliseconds.
        body: Raw body as received or encoded.
    """

    id: int
    type: str
    payload: Payload | None
    project_id: str | None = None
    timestamp_ms: int = 0
    body: dict[str, Any] = field(default_factory=lambda: {})

    @property
    def message_type(self) -> MessageType | None:
        try:
            return MessageType(self.type)
        except ValueError:
            return None

    @property
    def is_sequenced(self) -> bool:
        return self.message_type not in UNSEQUENCED_TYPES


def build_envelope(
    payload: Payload,
    *,
    project_id: str | None,
    msg_id: int = UNSEQUENCED_ID,
    timestamp_ms: int | None = None,
) -> Envelope:
    """Wrap a payload in an envelope.

    Args:
        payload: Typed payload.
        project_id: Owning Project.
        msg_id: Sender-assigned id. Omit for unsequenced frames.
        timestamp_ms: Optional epoch milliseconds override.
    """
    return Envelope(
        id=msg_id,
        type=payload.TYPE.value,
        payload=payload,
        project_id=project_id,
        timestamp_ms=timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
        body=payload.to_body(),
    )


def encode_envelope(envelope: Envelope) -> str:
    """Serialize an envelope to a JSON text frame."""
    body = envelope.payload.to_body() if envelope.payload is not None else envelope.body
    frame: dict[str, Any] = {
        "v": PROTOCOL_VERSION,
        "id": envelope.id,
        "type": envelope.type,
        "ts": envelope.timestamp_ms,
        "body": body,
    }
    if envelope.project_id is not None:
        frame["project_id"] = envelope.project_id
    return json.dumps(frame, separators=(",", ":"))


def decode_envelope(frame: str | bytes | Mapping[str, Any]) -> Envelope:
    """Parse a frame into an Envelope.

    Raises:
        ProtocolViolation: If the frame is not a valid envelope, or a known
            payload type is missing a required field. In the latter case
            the error context carries the frame's ``msg_id``.
    """
    if isinstance(frame, (str, bytes)):
        try:
            data = json.loads(frame)
        except (ValueError, UnicodeDecodeError) as err:
            raise ProtocolViolation("Frame is not valid JSON") from err
    else:
        data = frame

    if not isinstance(data, Mapping):
        raise ProtocolViolation("Frame must be a JSON object")

    msg_type = data.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise ProtocolViolation("Frame type is required")

    msg_id = data.get("id", UNSEQUENCED_ID)
    if isinstance(msg_id, bool) or not isinstance(msg_id, int) or msg_id < 0:
        raise ProtocolViolation("Frame id must be a non-negative integer")

    body = data.get("body") or {}
    if not isinstance(body, Mapping):
        raise ProtocolViolation("Frame body must be an object")

    project_id = data.get("project_id")
    if project_id is not None and not isinstance(project_id, str):
        raise ProtocolViolation("project_id must be a string")

    ts = data.get("ts", 0)
    payload: Payload | None = None
    try:
        known = MessageType(msg_type)
    except ValueError:
        known = None
    if known is not None:
        try:
            payload = PAYLOAD_TYPES[known].from_body(body)
        except ProtocolViolation as err:
            # The frame is well formed; only its body is not.
            err.context["msg_id"] = msg_id
            raise

    return Envelope(
        id=msg_id,
        type=msg_type,
        payload=payload,
        project_id=project_id,
        timestamp_ms=ts if isinstance(ts, int) else 0,
        body=dict(body),
    )
