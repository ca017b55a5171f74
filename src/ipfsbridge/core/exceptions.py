"""Error types with stable codes and user-facing messages."""

from __future__ import annotations

import httpx


class BridgeError(Exception):
    """Base error. ``message`` is always safe to show to a user."""

    code = "BRIDGE_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def __str__(self) -> str:
        return self.message


class InvalidContentIdError(BridgeError):
    """Content identifier does not carry the expected prefix."""

    code = "INVALID_CONTENT_ID"

    def __init__(self, content_id: str, prefix: str) -> None:
        super().__init__(f'Please enter a valid metadata CID (starts with "{prefix}")')
        self.content_id = content_id
        self.prefix = prefix


class MetadataLookupError(BridgeError):
    code = "METADATA_LOOKUP_FAILED"

    def __init__(self, content_id: str, reason: str = "Content not found or invalid") -> None:
        super().__init__(f"Metadata lookup failed: {reason}")
        self.content_id = content_id
        self.reason = reason


class RelayAttemptError(BridgeError):
    """A single relay attempt failed. Absorbed by the fetcher."""

    code = "RELAY_ATTEMPT_FAILED"

    def __init__(self, relay: str, message: str) -> None:
        super().__init__(message)
        self.relay = relay


class RelayStatusError(RelayAttemptError):
    code = "RELAY_BAD_STATUS"

    def __init__(self, relay: str, status: int) -> None:
        super().__init__(relay, f"Download failed: {status}")
        self.status = status


class RelayTimeoutError(RelayAttemptError):
    code = "RELAY_TIMEOUT"

    def __init__(self, relay: str, timeout: float) -> None:
        super().__init__(relay, f"Relay did not respond within {timeout:g}s")
        self.timeout = timeout


class RelayExhaustedError(BridgeError):
    """Every relay failed. ``last_error`` is the representative failure."""

    code = "RELAY_EXHAUSTED"

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        super().__init__("Failed to download certificate. Please try again.")
        self.attempts = attempts
        self.last_error = last_error


class GatewayRelayError(BridgeError):
    code = "GATEWAY_RELAY_FAILED"

    def __init__(self, upstream: str, reason: str) -> None:
        super().__init__(f"Cannot reach storage node at {upstream}: {reason}")
        self.upstream = upstream
        self.reason = reason


class TunnelSpawnError(BridgeError):
    code = "TUNNEL_SPAWN_FAILED"

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"Failed to start tunnel helper '{command}': {reason}")
        self.command = command
        self.reason = reason


def format_error_for_user(error: BaseException) -> str:
    """Turn any exception into a short, human-readable message."""
    if isinstance(error, BridgeError):
        return error.message
    if isinstance(error, httpx.TimeoutException):
        return "The request timed out. Please try again."
    if isinstance(error, httpx.ConnectError):
        return "Could not connect. Please check your network connection."
    if isinstance(error, httpx.HTTPError):
        return "A network error occurred. Please try again."
    if isinstance(error, TimeoutError):
        return "The operation timed out. Please try again."
    if isinstance(error, OSError):
        return f"System error: {error.strerror or type(error).__name__}"
    return "An unexpected error occurred."
