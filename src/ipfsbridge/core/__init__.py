"""Core."""

from .clock import Clock, LoopClock, ManualClock
from .config import (
    BridgeConfig,
    FetchConfig,
    GatewayConfig,
    TunnelConfig,
    clear_config,
    get_config,
)
from .exceptions import (
    BridgeError,
    GatewayRelayError,
    InvalidContentIdError,
    MetadataLookupError,
    RelayAttemptError,
    RelayExhaustedError,
    RelayStatusError,
    RelayTimeoutError,
    TunnelSpawnError,
    format_error_for_user,
)
from .session import AUTH_TOKEN_HEADER, BridgeContext, Session

__all__ = [
    # Clock
    "Clock",
    "LoopClock",
    "ManualClock",
    # Config
    "BridgeConfig",
    "GatewayConfig",
    "TunnelConfig",
    "FetchConfig",
    "get_config",
    "clear_config",
    # Errors
    "BridgeError",
    "InvalidContentIdError",
    "MetadataLookupError",
    "RelayAttemptError",
    "RelayStatusError",
    "RelayTimeoutError",
    "RelayExhaustedError",
    "GatewayRelayError",
    "TunnelSpawnError",
    "format_error_for_user",
    # Session
    "AUTH_TOKEN_HEADER",
    "Session",
    "BridgeContext",
]
