"""Session core configuration.

Every tunable has a default; a YAML file may override any subset::

    session:
      heartbeat_interval: 30
      heartbeat_grace: 15
    auth:
      token_ttl: 3600
    replay:
      max_messages: 1000
      max_age: 3600      # null disables the age bound
    permissions:
      timeout_ms: 60000
      default_policy: deny
    reconnect:
      base_delay: 1
      max_delay: 60
    rate_limit:
      attempts: 10
      window: 60
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError
from .models import PermissionPolicy

# (section, key) -> SessionConfig field
_SECTION_KEYS: dict[tuple[str, str], str] = {
    ("session", "heartbeat_interval"): "heartbeat_interval",
    ("session", "heartbeat_grace"): "heartbeat_grace",
    ("session", "max_protocol_violations"): "max_protocol_violations",
    ("session", "shutdown_timeout"): "shutdown_timeout",
    ("auth", "handshake_timeout"): "handshake_timeout",
    ("auth", "challenge_ttl"): "challenge_ttl",
    ("auth", "token_ttl"): "token_ttl",
    ("auth", "token_renew_margin"): "token_renew_margin",
    ("replay", "max_messages"): "replay_max_messages",
    ("replay", "max_age"): "replay_max_age",
    ("permissions", "timeout_ms"): "permission_timeout_ms",
    ("permissions", "default_policy"): "permission_default_policy",
    ("reconnect", "base_delay"): "reconnect_base_delay",
    ("reconnect", "max_delay"): "reconnect_max_delay",
    ("reconnect", "jitter"): "reconnect_jitter",
    ("reconnect", "max_attempts"): "reconnect_max_attempts",
    ("rate_limit", "attempts"): "connect_rate_limit",
    ("rate_limit", "window"): "connect_rate_window",
}

_OPTIONAL_FIELDS = {"replay_max_messages", "replay_max_age", "reconnect_max_attempts"}


@dataclass
class SessionConfig:
    """Configuration for the session core.

    Attributes:
        heartbeat_interval: Seconds between heartbeats on a connected Session.
        heartbeat_grace: Extra seconds without inbound traffic before the
            transport is declared lost.
        max_protocol_violations: Ordering violations tolerated per Session
            before the transport is closed.
        shutdown_timeout: Seconds allowed for the agent to confirm termination.
        handshake_timeout: Seconds a client has to answer the challenge.
        challenge_ttl: Seconds a challenge remains usable.
        token_ttl: Session token validity in seconds.
        token_renew_margin: Renew the token when less than this many seconds remain.
        replay_max_messages: Replay retention by count (None disables).
        replay_max_age: Replay retention by age in seconds (None disables).
        permission_timeout_ms: Timeout for requests that do not carry one.
        permission_default_policy: Policy for requests that do not carry one.
        reconnect_base_delay: Client backoff base delay in seconds.
        reconnect_max_delay: Client backoff cap in seconds.
        reconnect_jitter: Fractional jitter applied to each backoff delay.
        reconnect_max_attempts: Attempts before the loss is surfaced (None = forever).
        connect_rate_limit: Connection attempts allowed per peer per window.
        connect_rate_window: Rate limit window in seconds.
    """

    heartbeat_interval: float = 30.0
    heartbeat_grace: float = 15.0
    max_protocol_violations: int = 3
    shutdown_timeout: float = 30.0
    handshake_timeout: float = 15.0
    challenge_ttl: float = 30.0
    token_ttl: float = 3600.0
    token_renew_margin: float = 300.0
    replay_max_messages: int | None = 1000
    replay_max_age: float | None = 3600.0
    permission_timeout_ms: int = 60_000
    permission_default_policy: PermissionPolicy = PermissionPolicy.DENY
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 60.0
    reconnect_jitter: float = 0.2
    reconnect_max_attempts: int | None = 10
    connect_rate_limit: int = 10
    connect_rate_window: float = 60.0

    def __post_init__(self) -> None:
        if isinstance(self.permission_default_policy, str):
            try:
                self.permission_default_policy = PermissionPolicy(
                    self.permission_default_policy.lower()
                )
            except ValueError as err:
                raise ConfigError(
                    f"Invalid permission default policy: {self.permission_default_policy}"
                ) from err
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: On the first invalid value.
        """
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "permission_default_policy":
                continue
            if value is None:
                if f.name not in _OPTIONAL_FIELDS:
                    raise ConfigError(f"{f.name} cannot be null")
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"{f.name} must be a number, got {value!r}")
            if f.name == "reconnect_jitter":
                if not 0 <= value <= 1:
                    raise ConfigError("reconnect_jitter must be between 0 and 1")
            elif value <= 0:
                raise ConfigError(f"{f.name} must be positive, got {value}")
        if self.reconnect_max_delay < self.reconnect_base_delay:
            raise ConfigError("reconnect_max_delay must be >= reconnect_base_delay")
        if self.token_renew_margin >= self.token_ttl:
            raise ConfigError("token_renew_margin must be shorter than token_ttl")


def config_from_dict(data: Mapping[str, Any]) -> SessionConfig:
    """Build a SessionConfig from a sectioned mapping. Unknown keys are ignored."""
    kwargs: dict[str, Any] = {}
    for section, values in data.items():
        if not isinstance(values, Mapping):
            continue
        for key, value in values.items():
            field_name = _SECTION_KEYS.get((section, key))
            if field_name is not None:
                kwargs[field_name] = value
    try:
        return SessionConfig(**kwargs)
    except TypeError as err:
        raise ConfigError(f"Invalid configuration: {err}") from err


def load_config(path: Path) -> SessionConfig:
    """Load configuration from a YAML file.

    Raises:
        ConfigError: If the file is missing, unparsable or has invalid values.
    """
    if not path.exists():
        raise ConfigError(f"File not found: {path}")
    try:
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as err:
        raise ConfigError(f"Invalid YAML in {path}: {err}") from err
    if not isinstance(data, Mapping):
        raise ConfigError(f"Top level of {path} must be a mapping")
    return config_from_dict(data)
