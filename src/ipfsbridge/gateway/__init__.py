"""Reverse-proxy gateway fronting the storage node API."""

from ipfsbridge.gateway.headers import (
    ALLOW_HEADERS,
    ALLOW_METHODS,
    cors_headers,
    is_upgrade,
    preflight_headers,
    rewrite_request_headers,
    rewrite_response_headers,
)
from ipfsbridge.gateway.proxy import ProxyGateway

__all__ = [
    "ALLOW_HEADERS",
    "ALLOW_METHODS",
    "cors_headers",
    "is_upgrade",
    "preflight_headers",
    "rewrite_request_headers",
    "rewrite_response_headers",
    "ProxyGateway",
]
