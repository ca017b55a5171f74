"""Tests for gateway header rewriting."""

from __future__ import annotations

from ipfsbridge.gateway.headers import (
    cors_headers,
    is_upgrade,
    preflight_headers,
    rewrite_request_headers,
    rewrite_response_headers,
)


def _names(pairs):
    return [name.lower() for name, _ in pairs]


class TestCorsHeaders:
    """Tests for CORS header generation."""

    def test_reflects_origin(self) -> None:
        """The caller's origin is echoed back."""
        headers = dict(cors_headers("https://app.example"))
        assert headers["Access-Control-Allow-Origin"] == "https://app.example"
        assert headers["Access-Control-Allow-Credentials"] == "true"
        assert headers["Access-Control-Allow-Methods"] == "GET,POST,OPTIONS"
        assert "x-auth-token" in headers["Access-Control-Allow-Headers"]
        assert headers["Vary"] == "Origin"

    def test_wildcard_without_origin(self) -> None:
        """No Origin header means a wildcard."""
        assert dict(cors_headers(None))["Access-Control-Allow-Origin"] == "*"

    def test_preflight_has_max_age(self) -> None:
        """Preflight responses are cacheable for ten minutes."""
        assert dict(preflight_headers("https://a.example"))["Access-Control-Max-Age"] == "600"


class TestRequestRewrite:
    """Tests for upstream request headers."""

    def test_strips_inbound_credentials(self) -> None:
        """Authorization and a caller-supplied token never reach upstream."""
        result = rewrite_request_headers(
            [
                ("Authorization", "Basic Zm9vOmJhcg=="),
                ("X-Auth-Token", "forged"),
                ("Proxy-Authorization", "x"),
                ("Accept", "application/json"),
            ],
            token="session-token",
        )
        assert "authorization" not in _names(result)
        assert "proxy-authorization" not in _names(result)
        assert ("x-auth-token", "session-token") in result
        assert _names(result).count("x-auth-token") == 1
        assert ("Accept", "application/json") in result

    def test_drops_hop_by_hop_and_host(self) -> None:
        """Hop-by-hop headers and Host are not forwarded."""
        result = rewrite_request_headers(
            [("Host", "localhost:5002"), ("Connection", "keep-alive"), ("TE", "trailers")],
            token="t",
        )
        assert _names(result) == ["x-auth-token"]

    def test_sets_origin(self) -> None:
        """Origin is re-set from the caller's value."""
        result = rewrite_request_headers(
            [("Origin", "https://a.example")], token="t", origin="https://a.example"
        )
        assert _names(result).count("origin") == 1
        assert ("Origin", "https://a.example") in result


class TestResponseRewrite:
    """Tests for headers relayed back to the caller."""

    def test_strips_auth_challenge(self) -> None:
        """WWW-Authenticate is removed so browsers never prompt."""
        result = rewrite_response_headers(
            [("WWW-Authenticate", 'Basic realm="ipfs"'), ("Content-Type", "text/plain")],
            origin="https://a.example",
        )
        assert "www-authenticate" not in _names(result)
        assert ("Content-Type", "text/plain") in result

    def test_replaces_upstream_cors(self) -> None:
        """Upstream CORS headers are replaced, not duplicated."""
        result = rewrite_response_headers(
            [("Access-Control-Allow-Origin", "http://127.0.0.1:5001")],
            origin="https://a.example",
        )
        assert _names(result).count("access-control-allow-origin") == 1
        assert dict(result)["Access-Control-Allow-Origin"] == "https://a.example"

    def test_keeps_duplicate_headers(self) -> None:
        """Repeated headers survive in order."""
        result = rewrite_response_headers([("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")])
        assert [v for n, v in result if n == "Set-Cookie"] == ["a=1", "b=2"]


class TestUpgradeDetection:
    """Tests for WebSocket upgrade detection."""

    def test_websocket_upgrade(self) -> None:
        """Connection: Upgrade plus Upgrade: websocket is an upgrade."""
        assert is_upgrade([("Connection", "keep-alive, Upgrade"), ("Upgrade", "websocket")])

    def test_plain_request(self) -> None:
        """Ordinary requests are not upgrades."""
        assert not is_upgrade([("Connection", "keep-alive")])
