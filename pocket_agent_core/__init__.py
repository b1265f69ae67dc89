"""Session and protocol core for remote control of a coding agent.

One persistent logical session per Project, carried over any number of
authenticated physical connections.
"""

__version__ = "0.1.0"

from .adapter import AgentAdapter
from .auth import (
    AuthHandshake,
    AuthorizedKeys,
    CredentialStore,
    PrivateKeySigner,
    SessionToken,
    fingerprint_public_key,
)
from .client import ClientChannel, ReceiveVerdict, ReconnectBackoff
from .config import SessionConfig, config_from_dict, load_config
from .errors import (
    AgentUnreachable,
    AuthFailed,
    ConfigError,
    HandshakeTimeout,
    InitFailed,
    InvalidTransition,
    PocketAgentError,
    ProjectNotFound,
    ProtocolViolation,
    ShutdownFailed,
    TransportLost,
)
from .gateway import ConnectionHandler
from .http import HttpAgentAdapter
from .models import (
    ConnectionState,
    PermissionPolicy,
    PermissionRequest,
    PermissionResolution,
    ProgressNode,
    ProgressStatus,
    Project,
    ServerProfile,
    Session,
    SSHIdentity,
)
from .permissions import PermissionCorrelator
from .progress import ProgressAggregator
from .protocol import (
    PROTOCOL_VERSION,
    Envelope,
    MessageType,
    build_envelope,
    decode_envelope,
    encode_envelope,
)
from .rate_limiter import RateLimiter
from .replay import InboundTracker, ReplayBuffer
from .session import SessionManager
from .state_machine import ConnectionEvent, ConnectionStateMachine
from .transport import FrameTransport, WebSocketTransport, connect_websocket, serve_websocket

__all__ = [
    "PROTOCOL_VERSION",
    "AgentAdapter",
    "AgentUnreachable",
    "AuthFailed",
    "AuthHandshake",
    "AuthorizedKeys",
    "ClientChannel",
    "ConfigError",
    "ConnectionEvent",
    "ConnectionHandler",
    "ConnectionState",
    "ConnectionStateMachine",
    "CredentialStore",
    "Envelope",
    "FrameTransport",
    "HandshakeTimeout",
    "HttpAgentAdapter",
    "InboundTracker",
    "InitFailed",
    "InvalidTransition",
    "MessageType",
    "PermissionCorrelator",
    "PermissionPolicy",
    "PermissionRequest",
    "PermissionResolution",
    "PocketAgentError",
    "PrivateKeySigner",
    "ProgressAggregator",
    "ProgressNode",
    "ProgressStatus",
    "Project",
    "ProjectNotFound",
    "ProtocolViolation",
    "RateLimiter",
    "ReceiveVerdict",
    "ReconnectBackoff",
    "ReplayBuffer",
    "SSHIdentity",
    "ServerProfile",
    "Session",
    "SessionConfig",
    "SessionManager",
    "SessionToken",
    "ShutdownFailed",
    "TransportLost",
    "WebSocketTransport",
    "__version__",
    "build_envelope",
    "config_from_dict",
    "connect_websocket",
    "decode_envelope",
    "encode_envelope",
    "fingerprint_public_key",
    "load_config",
    "serve_websocket",
]
