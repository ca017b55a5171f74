"""Header rewriting for the gateway.

Pure functions over header pairs. Duplicated headers (``Set-Cookie``) are
preserved, so inputs and outputs are lists of ``(name, value)`` tuples rather
than dicts.
"""

from __future__ import annotations

from collections.abc import Iterable

from ipfsbridge.core.session import AUTH_TOKEN_HEADER

HeaderPairs = list[tuple[str, str]]

ALLOW_METHODS = "GET,POST,OPTIONS"
ALLOW_HEADERS = f"Content-Type, Authorization, {AUTH_TOKEN_HEADER}"

HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Inbound credentials never reach the upstream; the session token replaces them.
STRIPPED_REQUEST = frozenset(
    {"authorization", "www-authenticate", "proxy-authorization", AUTH_TOKEN_HEADER, "host"}
)

# Auth challenges would make the browser prompt for credentials it must never see.
# Length and encoding are recomputed by the listener for the relayed body.
STRIPPED_RESPONSE = frozenset(
    {"www-authenticate", "proxy-authenticate", "content-length", "content-encoding"}
)

CORS_HEADERS = frozenset(
    {
        "access-control-allow-origin",
        "access-control-allow-methods",
        "access-control-allow-headers",
        "access-control-allow-credentials",
        "vary",
    }
)


def cors_headers(origin: str | None) -> HeaderPairs:
    """CORS headers reflecting ``origin``, or a wildcard when there is none."""
    return [
        ("Access-Control-Allow-Origin", origin or "*"),
        ("Access-Control-Allow-Methods", ALLOW_METHODS),
        ("Access-Control-Allow-Headers", ALLOW_HEADERS),
        ("Access-Control-Allow-Credentials", "true"),
        ("Vary", "Origin"),
    ]


def preflight_headers(origin: str | None) -> HeaderPairs:
    return cors_headers(origin) + [("Access-Control-Max-Age", "600")]


def is_upgrade(headers: Iterable[tuple[str, str]]) -> bool:
    """Whether the headers ask for a WebSocket upgrade."""
    connection = ""
    upgrade = ""
    for name, value in headers:
        lower = name.lower()
        if lower == "connection":
            connection = value.lower()
        elif lower == "upgrade":
            upgrade = value.lower()
    return "upgrade" in connection and upgrade == "websocket"


def rewrite_request_headers(
    headers: Iterable[tuple[str, str]],
    token: str,
    origin: str | None = None,
) -> HeaderPairs:
    """Headers for the upstream request.

    Drops hop-by-hop and inbound auth headers, injects the session token and
    re-sets Origin because the storage node validates it.
    """
    result: HeaderPairs = []
    for name, value in headers:
        lower = name.lower()
        if lower in HOP_BY_HOP or lower in STRIPPED_REQUEST or lower == "origin":
            continue
        result.append((name, value))

    result.append((AUTH_TOKEN_HEADER, token))
    if origin:
        result.append(("Origin", origin))
    return result


def rewrite_response_headers(
    headers: Iterable[tuple[str, str]],
    origin: str | None = None,
) -> HeaderPairs:
    """Headers for the response relayed back to the caller."""
    result: HeaderPairs = [
        (name, value)
        for name, value in headers
        if (lower := name.lower()) not in HOP_BY_HOP
        and lower not in STRIPPED_RESPONSE
        and lower not in CORS_HEADERS
    ]
    result.extend(cors_headers(origin))
    return result
