"""Configuration types with environment variable support.

All settings can be configured via environment variables with the IPFSBRIDGE_ prefix.
Example: IPFSBRIDGE_LISTEN_PORT=6002 moves the gateway listener to port 6002.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RELAYS = (
    "https://api.allorigins.win/raw?url=,"
    "https://corsproxy.io/?,"
    "https://cors.eu.org/"
)


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


class GatewayConfig(BaseSettings):
    """Local reverse-proxy gateway configuration."""

    model_config = SettingsConfigDict(
        env_prefix="IPFSBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    listen_host: str = Field(
        default="127.0.0.1",
        description="Loopback address the gateway binds to.",
    )
    listen_port: int = Field(
        default=5002,
        description="Port the gateway listens on.",
    )
    upstream_url: str = Field(
        default="http://127.0.0.1:5001",
        description="Base URL of the storage node API.",
    )
    path_prefix: str = Field(
        default="/api/v0",
        description="Only requests under this path are forwarded upstream.",
    )
    upstream_timeout: float | None = Field(
        default=None,
        description="Upstream read timeout (seconds). None or 0 to wait indefinitely.",
    )
    connect_timeout: float = Field(
        default=5.0,
        description="Upstream connect timeout (seconds).",
    )
    max_body_size: int = Field(
        default=1024 * 1024 * 1024,
        description="Maximum inbound request body size (bytes). Default 1GB.",
    )


class TunnelConfig(BaseSettings):
    """Tunnel helper supervision configuration."""

    model_config = SettingsConfigDict(
        env_prefix="IPFSBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    tunnel_command: str = Field(
        default="npx localtunnel --port {port} --subdomain {subdomain}",
        description="Helper command line. {port} and {subdomain} are substituted.",
    )
    tunnel_subdomain: str = Field(
        default="blockchain-education-ipfs",
        description="Public subdomain requested from the helper.",
    )
    restart_delay: float = Field(
        default=1.0,
        description="Delay before restarting after the helper exits (seconds).",
    )
    error_restart_delay: float = Field(
        default=5.0,
        description="Delay before restarting after the helper failed to start (seconds).",
    )
    max_restarts: int | None = Field(
        default=None,
        description="Stop supervising after this many restarts. None for unlimited.",
    )
    stop_grace_period: float = Field(
        default=5.0,
        description="How long to wait for the helper to exit after SIGTERM (seconds).",
    )


class FetchConfig(BaseSettings):
    """Relay fallback download configuration."""

    model_config = SettingsConfigDict(
        env_prefix="IPFSBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    gateway_host: str = Field(
        default="rose-hollow-mollusk-554.mypinata.cloud",
        description="Public IPFS gateway host that relays wrap.",
    )
    gateway_token: str | None = Field(
        default=None,
        repr=False,
        description="Gateway access token appended as pinataGatewayToken.",
    )
    relays: str = Field(
        default=DEFAULT_RELAYS,
        description="Comma-separated relay URL templates, in priority order.",
    )
    attempt_timeout: float = Field(
        default=10.0,
        description="Timeout for a single relay attempt (seconds).",
    )
    cleanup_delay: float = Field(
        default=1.5,
        description="Delay before releasing transient download resources (seconds).",
    )
    content_id_prefix: str = Field(
        default="bafk",
        description="Required prefix for metadata content identifiers.",
    )
    download_dir: str = Field(
        default=".",
        description="Directory downloaded files are written to.",
    )

    def get_relays(self) -> list[str]:
        """Parse relays string into an ordered list."""
        return [r.strip() for r in self.relays.split(",") if r.strip()]


class BridgeConfig(BaseSettings):
    """Master configuration combining all settings.

    Use get_config() to get a cached instance.

    Example:
        config = get_config()
        print(config.gateway.listen_port)
        print(config.fetch.attempt_timeout)
    """

    model_config = SettingsConfigDict(
        env_prefix="IPFSBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def gateway(self) -> GatewayConfig:
        """Get gateway configuration."""
        return GatewayConfig()

    @property
    def tunnel(self) -> TunnelConfig:
        """Get tunnel configuration."""
        return TunnelConfig()

    @property
    def fetch(self) -> FetchConfig:
        """Get fetch configuration."""
        return FetchConfig()

    def to_env_dict(self) -> dict[str, str]:
        """Export current configuration as environment variable dictionary."""
        result = {}

        gw = self.gateway
        result["IPFSBRIDGE_LISTEN_HOST"] = gw.listen_host
        result["IPFSBRIDGE_LISTEN_PORT"] = str(gw.listen_port)
        result["IPFSBRIDGE_UPSTREAM_URL"] = gw.upstream_url
        result["IPFSBRIDGE_PATH_PREFIX"] = gw.path_prefix
        result["IPFSBRIDGE_UPSTREAM_TIMEOUT"] = str(gw.upstream_timeout) if gw.upstream_timeout else ""
        result["IPFSBRIDGE_CONNECT_TIMEOUT"] = str(gw.connect_timeout)
        result["IPFSBRIDGE_MAX_BODY_SIZE"] = str(gw.max_body_size)

        tun = self.tunnel
        result["IPFSBRIDGE_TUNNEL_COMMAND"] = tun.tunnel_command
        result["IPFSBRIDGE_TUNNEL_SUBDOMAIN"] = tun.tunnel_subdomain
        result["IPFSBRIDGE_RESTART_DELAY"] = str(tun.restart_delay)
        result["IPFSBRIDGE_ERROR_RESTART_DELAY"] = str(tun.error_restart_delay)
        result["IPFSBRIDGE_MAX_RESTARTS"] = str(tun.max_restarts) if tun.max_restarts else ""
        result["IPFSBRIDGE_STOP_GRACE_PERIOD"] = str(tun.stop_grace_period)

        fetch = self.fetch
        result["IPFSBRIDGE_GATEWAY_HOST"] = fetch.gateway_host
        result["IPFSBRIDGE_RELAYS"] = fetch.relays
        result["IPFSBRIDGE_ATTEMPT_TIMEOUT"] = str(fetch.attempt_timeout)
        result["IPFSBRIDGE_CLEANUP_DELAY"] = str(fetch.cleanup_delay)
        result["IPFSBRIDGE_CONTENT_ID_PREFIX"] = fetch.content_id_prefix
        result["IPFSBRIDGE_DOWNLOAD_DIR"] = fetch.download_dir

        return result

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a nested dictionary for display."""
        return {
            "gateway": {
                "listen_host": self.gateway.listen_host,
                "listen_port": self.gateway.listen_port,
                "upstream_url": self.gateway.upstream_url,
                "path_prefix": self.gateway.path_prefix,
                "upstream_timeout": self.gateway.upstream_timeout,
                "connect_timeout": self.gateway.connect_timeout,
                "max_body_size": self.gateway.max_body_size,
            },
            "tunnel": {
                "tunnel_command": self.tunnel.tunnel_command,
                "tunnel_subdomain": self.tunnel.tunnel_subdomain,
                "restart_delay": self.tunnel.restart_delay,
                "error_restart_delay": self.tunnel.error_restart_delay,
                "max_restarts": self.tunnel.max_restarts,
                "stop_grace_period": self.tunnel.stop_grace_period,
            },
            "fetch": {
                "gateway_host": self.fetch.gateway_host,
                "gateway_token": "***" if self.fetch.gateway_token else None,
                "relays": self.fetch.relays,
                "attempt_timeout": self.fetch.attempt_timeout,
                "cleanup_delay": self.fetch.cleanup_delay,
                "content_id_prefix": self.fetch.content_id_prefix,
                "download_dir": self.fetch.download_dir,
            },
        }


_config: BridgeConfig | None = None


def get_config() -> BridgeConfig:
    """Get the global configuration instance.

    Returns a cached instance of BridgeConfig that reads from environment variables.
    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = BridgeConfig()
    return _config


def clear_config() -> None:
    """Clear the cached configuration.

    Call this to force reloading of environment variables on next get_config() call.
    """
    global _config
    _config = None
