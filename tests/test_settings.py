"""
Unit tests for relay configuration.

Tests environment variable loading and configuration defaults.
"""
import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from memory_relay.infrastructure.config.settings import DEFAULT_UPSTREAM_URL, RelaySettings


class TestRelaySettings:
    """Tests for RelaySettings.from_env."""

    def test_defaults(self):
        """Should fall back to defaults when nothing is set."""
        settings = RelaySettings.from_env({})

        assert settings.port == 10000
        assert settings.upstream_url == DEFAULT_UPSTREAM_URL
        assert settings.upstream_api_key is None
        assert settings.history_window == 100
        assert settings.fact_interval == 20
        assert settings.compression_threshold_tokens == 24000
        assert settings.compression_keep_ratio == 0.35
        assert settings.idle_timeout_seconds == 90.0
        assert settings.watchdog_interval_seconds == 10.0
        assert settings.max_upstream_attempts == 2

    def test_values_are_coerced(self):
        """Should convert environment strings to typed values."""
        settings = RelaySettings.from_env({
            "PORT": "8080",
            "GLM_API_KEY": "secret",
            "MASTER_PROMPT": "Stay in character.",
            "FACT_INTERVAL": "5",
            "COMPRESSION_KEEP_RATIO": "0.5",
            "KEEPALIVE_ENABLED": "false",
        })

        assert settings.port == 8080
        assert settings.upstream_api_key == "secret"
        assert settings.master_prompt == "Stay in character."
        assert settings.fact_interval == 5
        assert settings.compression_keep_ratio == 0.5
        assert settings.keepalive_enabled is False

    def test_empty_values_are_ignored(self):
        settings = RelaySettings.from_env({"GLM_API_KEY": "", "PORT": ""})

        assert settings.upstream_api_key is None
        assert settings.port == 10000

    def test_reads_process_environment(self):
        with patch.dict(os.environ, {"SESSIONS_DIR": "/tmp/relay-sessions"}):
            settings = RelaySettings.from_env()

        assert settings.sessions_dir == "/tmp/relay-sessions"

    @pytest.mark.parametrize("env", [{"FACT_INTERVAL": "0"}, {"COMPRESSION_KEEP_RATIO": "1.5"}, {"PORT": "abc"}])
    def test_invalid_values_raise(self, env):
        """Should refuse to start with unusable values."""
        with pytest.raises(ValidationError):
            RelaySettings.from_env(env)

    def test_reads_env_file(self, tmp_path):
        """Should pick up values from a .env file."""
        env_file = tmp_path / ".env"
        env_file.write_text("FACT_INTERVAL=7\nGLM_API_KEY=from-file\n", encoding="utf-8")

        with patch.dict(os.environ, {}, clear=True):
            settings = RelaySettings.from_env(env_file=str(env_file))

        assert settings.fact_interval == 7
        assert settings.upstream_api_key == "from-file"

    def test_process_environment_beats_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("FACT_INTERVAL=7\n", encoding="utf-8")

        with patch.dict(os.environ, {"FACT_INTERVAL": "3"}, clear=True):
            settings = RelaySettings.from_env(env_file=str(env_file))

        assert settings.fact_interval == 3
