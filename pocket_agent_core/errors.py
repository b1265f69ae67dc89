"""Error types for the Pocket Agent session core."""

from __future__ import annotations

from typing import Any

_SENSITIVE_MARKERS = ("token", "key", "signature", "secret", "password")


class PocketAgentError(Exception):
    """Base error for session core failures.

    Attributes:
        kind: Stable machine-readable error kind sent on the wire.
        project_id: Project the failure belongs to (if any).
        phase: Lifecycle phase in which the failure happened.
        context: Extra details, filtered before leaving the process.
    """

    kind = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        project_id: str | None = None,
        phase: str | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message)
        self.project_id = project_id
        self.phase = phase
        self.context = context

    def __str__(self) -> str:
        base = super().__str__()
        if self.project_id and self.phase:
            return f"[{self.project_id}/{self.phase}] {base}"
        if self.project_id:
            return f"[{self.project_id}] {base}"
        return base

    def to_body(self) -> dict[str, Any]:
        """Render as an Error payload body, dropping sensitive context."""
        body: dict[str, Any] = {"kind": self.kind, "detail": super().__str__()}
        details = {
            k: v
            for k, v in self.context.items()
            if not any(marker in k.lower() for marker in _SENSITIVE_MARKERS)
        }
        if self.project_id:
            details["project_id"] = self.project_id
        if self.phase:
            details["phase"] = self.phase
        if details:
            body["context"] = details
        return body


class AuthFailed(PocketAgentError):
    """Challenge-response authentication was rejected."""

    kind = "AUTH_FAILED"


class HandshakeTimeout(PocketAgentError):
    """Client did not complete the handshake in time."""

    kind = "HANDSHAKE_TIMEOUT"


class TransportLost(PocketAgentError):
    """Physical transport dropped. Recoverable through reconnection."""

    kind = "TRANSPORT_LOST"


class ProtocolViolation(PocketAgentError):
    """Malformed frame or ordering violation beyond the replay window."""

    kind = "PROTOCOL_VIOLATION"


class AgentUnreachable(PocketAgentError):
    """Agent adapter did not confirm reachability."""

    kind = "AGENT_UNREACHABLE"


class InitFailed(PocketAgentError):
    """Repository clone or directory setup failed."""

    kind = "INIT_FAILED"


class ShutdownFailed(PocketAgentError):
    """Agent termination could not be confirmed."""

    kind = "SHUTDOWN_FAILED"


class InvalidTransition(PocketAgentError):
    """Input not accepted by the connection state machine in its current state."""

    kind = "INVALID_TRANSITION"


class ConfigError(PocketAgentError):
    """Configuration file or value is invalid."""

    kind = "CONFIG_ERROR"


class ProjectNotFound(PocketAgentError):
    """No Project is registered under the given id."""

    kind = "PROJECT_NOT_FOUND"
