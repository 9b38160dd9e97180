"""
Tests for BridgeConfig construction and environment loading.
"""

from pathlib import Path

import pytest

from secbridge.config import BridgeConfig
from secbridge.errors import ConfigError


class TestBridgeConfig:

    def test_defaults(self):
        config = BridgeConfig(secret="s")
        assert config.replay_window_ms == 15_000
        assert config.client_ttl_ms == 3_600_000
        assert config.prune_interval_ms == 30_000
        assert config.channel_name == "signal-sync-bridge"
        assert config.relay_id == "relay"
        assert config.allowed_origins == frozenset()

    def test_origins_are_frozen_and_exact(self):
        config = BridgeConfig(secret="s", allowed_origins=["https://a.example.com"])
        assert isinstance(config.allowed_origins, frozenset)
        assert config.is_trusted("https://a.example.com")
        assert not config.is_trusted("https://a.example.com.evil.net")
        assert not config.is_trusted("http://a.example.com")

    def test_with_origins(self):
        config = BridgeConfig(secret="s").with_origins({"https://b.example.com"})
        assert config.is_trusted("https://b.example.com")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"secret": ""},
            {"secret": "s", "replay_window_ms": 0},
            {"secret": "s", "ack_timeout_ms": -1},
            {"secret": "s", "skew_tolerance_ms": -5},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ConfigError):
            BridgeConfig(**kwargs)


class TestFromEnv:

    def test_reads_prefixed_variables(self):
        config = BridgeConfig.from_env(
            {
                "SECBRIDGE_HMAC_SECRET": "env-secret",
                "SECBRIDGE_ALLOWED_ORIGINS": "https://a.example.com, https://b.example.com,,",
                "SECBRIDGE_REPLAY_WINDOW_MS": "5000",
                "SECBRIDGE_ACK_TIMEOUT_MS": "750",
                "SECBRIDGE_CHANNEL": "other-channel",
                "SECBRIDGE_SNAPSHOT_KEY": "bridge:last",
                "SECBRIDGE_SNAPSHOT_PATH": "/tmp/secbridge/snap.json",
            }
        )
        assert config.secret == "env-secret"
        assert config.allowed_origins == {"https://a.example.com", "https://b.example.com"}
        assert config.replay_window_ms == 5000
        assert config.ack_timeout_ms == 750
        assert config.channel_name == "other-channel"
        assert config.snapshot_key == "bridge:last"
        assert config.snapshot_path == Path("/tmp/secbridge/snap.json")

    def test_overrides_win(self):
        config = BridgeConfig.from_env({"SECBRIDGE_HMAC_SECRET": "env"}, secret="arg", relay_id="r1")
        assert config.secret == "arg"
        assert config.relay_id == "r1"

    def test_missing_secret(self):
        with pytest.raises(ConfigError):
            BridgeConfig.from_env({})

    def test_bad_integer(self):
        with pytest.raises(ConfigError):
            BridgeConfig.from_env({"SECBRIDGE_HMAC_SECRET": "s", "SECBRIDGE_CLIENT_TTL_MS": "soon"})
