"""Tests for configuration loading from environment variables."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from ipfsbridge.core.config import (
    BridgeConfig,
    FetchConfig,
    GatewayConfig,
    TunnelConfig,
    clear_config,
    flatten_config,
    get_config,
    load_config_from_file,
)


class TestGatewayConfig:
    """Test GatewayConfig settings."""

    def test_default_values(self) -> None:
        """Test default values."""
        config = GatewayConfig()
        assert config.listen_host == "127.0.0.1"
        assert config.listen_port == 5002
        assert config.upstream_url == "http://127.0.0.1:5001"
        assert config.path_prefix == "/api/v0"
        assert config.upstream_timeout is None

    def test_env_override_upstream_timeout(self) -> None:
        """Test IPFSBRIDGE_UPSTREAM_TIMEOUT env var."""
        with patch.dict(os.environ, {"IPFSBRIDGE_UPSTREAM_TIMEOUT": "30"}):
            config = GatewayConfig()
            assert config.upstream_timeout == 30.0

    def test_env_override_listen_port(self) -> None:
        """Test IPFSBRIDGE_LISTEN_PORT env var."""
        with patch.dict(os.environ, {"IPFSBRIDGE_LISTEN_PORT": "6002"}):
            config = GatewayConfig()
            assert config.listen_port == 6002

    def test_env_override_upstream_url(self) -> None:
        """Test IPFSBRIDGE_UPSTREAM_URL env var."""
        with patch.dict(os.environ, {"IPFSBRIDGE_UPSTREAM_URL": "http://10.0.0.5:5001"}):
            config = GatewayConfig()
            assert config.upstream_url == "http://10.0.0.5:5001"


class TestTunnelConfig:
    """Test TunnelConfig settings."""

    def test_default_values(self) -> None:
        """Test default values."""
        config = TunnelConfig()
        assert "{port}" in config.tunnel_command
        assert config.tunnel_subdomain == "blockchain-education-ipfs"
        assert config.restart_delay == 1.0
        assert config.error_restart_delay == 5.0
        assert config.max_restarts is None

    def test_env_override_restart_delay(self) -> None:
        """Test IPFSBRIDGE_RESTART_DELAY env var."""
        with patch.dict(os.environ, {"IPFSBRIDGE_RESTART_DELAY": "2.5"}):
            config = TunnelConfig()
            assert config.restart_delay == 2.5

    def test_env_override_max_restarts(self) -> None:
        """Test IPFSBRIDGE_MAX_RESTARTS env var."""
        with patch.dict(os.environ, {"IPFSBRIDGE_MAX_RESTARTS": "3"}):
            config = TunnelConfig()
            assert config.max_restarts == 3


class TestFetchConfig:
    """Test FetchConfig settings."""

    def test_default_relays_in_order(self) -> None:
        """Default relays are parsed in priority order."""
        relays = FetchConfig().get_relays()
        assert len(relays) == 3
        assert relays[0].startswith("https://api.allorigins.win/")
        assert relays[1].startswith("https://corsproxy.io/")
        assert relays[2].startswith("https://cors.eu.org/")

    def test_env_override_relays(self) -> None:
        """Test IPFSBRIDGE_RELAYS env var with blanks ignored."""
        with patch.dict(os.environ, {"IPFSBRIDGE_RELAYS": "https://a.test/?, ,https://b.test/"}):
            config = FetchConfig()
            assert config.get_relays() == ["https://a.test/?", "https://b.test/"]

    def test_token_not_in_repr(self) -> None:
        """The gateway token never shows up in repr output."""
        with patch.dict(os.environ, {"IPFSBRIDGE_GATEWAY_TOKEN": "s3cret"}):
            config = FetchConfig()
            assert config.gateway_token == "s3cret"
            assert "s3cret" not in repr(config)


class TestBridgeConfig:
    """Test the combined config and its cache."""

    def test_get_config_is_cached(self) -> None:
        """get_config returns the same instance until cleared."""
        clear_config()
        try:
            assert get_config() is get_config()
            first = get_config()
            clear_config()
            assert get_config() is not first
        finally:
            clear_config()

    def test_display_dict_masks_token(self) -> None:
        """The display dict masks the gateway token."""
        with patch.dict(os.environ, {"IPFSBRIDGE_GATEWAY_TOKEN": "s3cret"}):
            display = BridgeConfig().to_display_dict()
            assert display["fetch"]["gateway_token"] == "***"
            assert set(display) == {"gateway", "tunnel", "fetch"}

    def test_env_dict_round_trips_port(self) -> None:
        """to_env_dict exports IPFSBRIDGE_* names."""
        with patch.dict(os.environ, {"IPFSBRIDGE_LISTEN_PORT": "7000"}):
            env = BridgeConfig().to_env_dict()
            assert env["IPFSBRIDGE_LISTEN_PORT"] == "7000"
            assert "IPFSBRIDGE_GATEWAY_TOKEN" not in env


class TestConfigFiles:
    """Test YAML/TOML loading."""

    def test_load_yaml(self, tmp_path) -> None:
        """YAML files load into nested dicts."""
        path = tmp_path / "bridge.yaml"
        path.write_text("gateway:\n  listen_port: 6000\n", encoding="utf-8")
        assert load_config_from_file(path) == {"gateway": {"listen_port": 6000}}

    def test_load_toml(self, tmp_path) -> None:
        """TOML files load into nested dicts."""
        path = tmp_path / "bridge.toml"
        path.write_text("[fetch]\nattempt_timeout = 3.0\n", encoding="utf-8")
        assert load_config_from_file(path) == {"fetch": {"attempt_timeout": 3.0}}

    def test_unsupported_format(self, tmp_path) -> None:
        """Unknown suffixes are rejected."""
        path = tmp_path / "bridge.ini"
        path.write_text("x=1", encoding="utf-8")
        with pytest.raises(ValueError, match="Unsupported"):
            load_config_from_file(path)

    def test_missing_file(self, tmp_path) -> None:
        """Missing files raise FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_config_from_file(tmp_path / "nope.yaml")

    def test_flatten(self) -> None:
        """Nested sections flatten with underscores."""
        assert flatten_config({"gateway": {"listen_port": 1}, "x": 2}) == {
            "gateway_listen_port": 1,
            "x": 2,
        }
