"""Session credential and the context object that owns it."""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime

from ipfsbridge.core.clock import Clock, LoopClock
from ipfsbridge.core.config import GatewayConfig, TunnelConfig, get_config

AUTH_TOKEN_HEADER = "x-auth-token"


@dataclass(frozen=True)
class Session:
    """Ephemeral gateway->upstream credential.

    Created once per BridgeContext and never persisted. The token must not
    leave the host: only the gateway's upstream requests carry it.
    """

    token: str = field(default_factory=lambda: secrets.token_urlsafe(24), repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def fingerprint(self) -> str:
        """Short non-reversible id for correlating log lines."""
        return hashlib.sha256(self.token.encode()).hexdigest()[:12]


@dataclass
class BridgeContext:
    """Single owner of the process-lifetime state shared by the gateway and
    the tunnel supervisor.

    Tests may create as many independent contexts as they need.
    """

    gateway: GatewayConfig = field(default_factory=lambda: get_config().gateway)
    tunnel: TunnelConfig = field(default_factory=lambda: get_config().tunnel)
    session: Session = field(default_factory=Session)
    clock: Clock = field(default_factory=LoopClock)

    @property
    def local_url(self) -> str:
        return f"http://{self.gateway.listen_host}:{self.gateway.listen_port}"
