"""Tests for configuration loading."""

from __future__ import annotations

import pytest

from pocket_agent_core.config import SessionConfig, config_from_dict, load_config
from pocket_agent_core.errors import ConfigError
from pocket_agent_core.models import PermissionPolicy


class TestSessionConfig:
    """Tests for SessionConfig defaults and validation."""

    def test_defaults(self):
        """Test defaults are valid."""
        config = SessionConfig()

        assert config.heartbeat_interval == 30
        assert config.replay_max_messages == 1000
        assert config.permission_default_policy is PermissionPolicy.DENY

    def test_policy_from_string(self):
        """Test the default policy may be given as a string."""
        config = SessionConfig(permission_default_policy="ALLOW")

        assert config.permission_default_policy is PermissionPolicy.ALLOW

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"heartbeat_interval": 0},
            {"token_ttl": -1},
            {"reconnect_jitter": 1.5},
            {"reconnect_base_delay": 10, "reconnect_max_delay": 5},
            {"token_ttl": 60, "token_renew_margin": 60},
            {"shutdown_timeout": None},
            {"heartbeat_grace": "soon"},
            {"permission_default_policy": "ask"},
        ],
    )
    def test_invalid(self, kwargs):
        """Test invalid values raise ConfigError."""
        with pytest.raises(ConfigError):
            SessionConfig(**kwargs)

    def test_optional_bounds(self):
        """Test retention bounds and reconnect ceiling may be disabled."""
        config = SessionConfig(
            replay_max_messages=None, replay_max_age=None, reconnect_max_attempts=None
        )

        assert config.replay_max_age is None


class TestLoadConfig:
    """Tests for YAML loading."""

    def test_load(self, tmp_path):
        """Test sections map onto config fields."""
        path = tmp_path / "pocket-agent.yaml"
        path.write_text(
            "session:\n"
            "  heartbeat_interval: 10\n"
            "replay:\n"
            "  max_messages: 50\n"
            "  max_age: null\n"
            "permissions:\n"
            "  default_policy: allow\n"
            "rate_limit:\n"
            "  attempts: 3\n"
            "unknown:\n"
            "  whatever: 1\n"
        )

        config = load_config(path)

        assert config.heartbeat_interval == 10
        assert config.replay_max_messages == 50
        assert config.replay_max_age is None
        assert config.permission_default_policy is PermissionPolicy.ALLOW
        assert config.connect_rate_limit == 3

    def test_empty_file(self, tmp_path):
        """Test an empty file yields defaults."""
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_config(path) == SessionConfig()

    def test_missing_file(self, tmp_path):
        """Test a missing file raises ConfigError."""
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        """Test unparsable YAML raises ConfigError."""
        path = tmp_path / "bad.yaml"
        path.write_text("session: [unclosed\n")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        """Test a list at top level is rejected."""
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")

        with pytest.raises(ConfigError):
            load_config(path)

    def test_from_dict_invalid_value(self):
        """Test invalid values from a mapping raise ConfigError."""
        with pytest.raises(ConfigError):
            config_from_dict({"auth": {"token_ttl": 0}})
