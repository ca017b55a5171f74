"""Tests for the local reverse-proxy gateway."""

from __future__ import annotations

import contextlib

import httpx
import pytest
from aiohttp.test_utils import TestClient, TestServer, make_mocked_request
from structlog.testing import capture_logs
from websockets.asyncio.server import serve

from ipfsbridge.core.config import GatewayConfig, TunnelConfig
from ipfsbridge.core.session import BridgeContext
from ipfsbridge.gateway.proxy import ProxyGateway

ORIGIN = "https://certs.example.edu"


@contextlib.asynccontextmanager
async def gateway_client(handler):
    """Gateway app wired to a mock upstream, plus a client for it."""
    context = BridgeContext(
        gateway=GatewayConfig(upstream_url="http://upstream.test", path_prefix="/api/v0"),
        tunnel=TunnelConfig(),
    )
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    gateway = ProxyGateway(context, http_client=http_client)
    try:
        async with TestClient(TestServer(gateway.create_app())) as client:
            yield client, gateway, context
    finally:
        await http_client.aclose()


class RecordingUpstream:
    """Mock upstream that records every request it receives."""

    def __init__(self, response: httpx.Response | None = None, error: Exception | None = None):
        self.requests: list[httpx.Request] = []
        self.response = response
        self.error = error

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response or httpx.Response(200, json={"Hash": "bafkreiabc"})


class TestProxyForwarding:
    """Tests for requests forwarded upstream."""

    @pytest.mark.asyncio
    async def test_forwards_path_query_and_body(self) -> None:
        """Method, path, query and body reach the upstream unchanged."""
        upstream = RecordingUpstream()
        async with gateway_client(upstream) as (client, gateway, _):
            resp = await client.post("/api/v0/add?pin=true", data=b"certificate-bytes")
            assert resp.status == 200
            assert await resp.json() == {"Hash": "bafkreiabc"}

        assert len(upstream.requests) == 1
        sent = upstream.requests[0]
        assert sent.method == "POST"
        assert str(sent.url) == "http://upstream.test/api/v0/add?pin=true"
        assert sent.content == b"certificate-bytes"
        assert gateway.stats["requests_proxied"] == 1

    @pytest.mark.asyncio
    async def test_injects_session_token_and_strips_authorization(self) -> None:
        """The session token replaces any inbound credentials."""
        upstream = RecordingUpstream()
        async with gateway_client(upstream) as (client, _, context):
            await client.post(
                "/api/v0/id",
                headers={
                    "Authorization": "Basic dXNlcjpwYXNz",
                    "x-auth-token": "forged",
                    "Origin": ORIGIN,
                },
            )

        sent = upstream.requests[0]
        assert "authorization" not in sent.headers
        assert sent.headers.get_list("x-auth-token") == [context.session.token]
        assert sent.headers["origin"] == ORIGIN

    @pytest.mark.asyncio
    async def test_reflects_origin(self) -> None:
        """Responses carry CORS headers for the caller's origin."""
        async with gateway_client(RecordingUpstream()) as (client, _, _):
            resp = await client.post("/api/v0/id", headers={"Origin": ORIGIN})
            assert resp.headers["Access-Control-Allow-Origin"] == ORIGIN
            assert resp.headers["Access-Control-Allow-Credentials"] == "true"

    @pytest.mark.asyncio
    async def test_wildcard_without_origin(self) -> None:
        """Requests without an Origin get a wildcard."""
        async with gateway_client(RecordingUpstream()) as (client, _, _):
            resp = await client.post("/api/v0/id")
            assert resp.headers["Access-Control-Allow-Origin"] == "*"

    @pytest.mark.asyncio
    async def test_strips_auth_challenge(self) -> None:
        """Upstream auth challenges never reach the browser."""
        upstream = RecordingUpstream(
            httpx.Response(
                401,
                headers={"WWW-Authenticate": 'Basic realm="ipfs"'},
                text="unauthorized",
            )
        )
        async with gateway_client(upstream) as (client, _, _):
            resp = await client.post("/api/v0/id", headers={"Origin": ORIGIN})
            assert resp.status == 401
            assert "WWW-Authenticate" not in resp.headers
            assert await resp.text() == "unauthorized"

    @pytest.mark.asyncio
    async def test_streams_large_body(self) -> None:
        """Large responses arrive complete."""
        payload = b"x" * 300_000
        upstream = RecordingUpstream(httpx.Response(200, content=payload))
        async with gateway_client(upstream) as (client, _, _):
            resp = await client.post("/api/v0/cat?arg=bafkreiabc")
            assert await resp.read() == payload


class TestPreflight:
    """Tests for locally answered preflight requests."""

    @pytest.mark.asyncio
    async def test_preflight_never_reaches_upstream(self) -> None:
        """OPTIONS is answered with 200 and no upstream call."""
        upstream = RecordingUpstream()
        async with gateway_client(upstream) as (client, _, _):
            resp = await client.options(
                "/api/v0/add",
                headers={
                    "Origin": ORIGIN,
                    "Access-Control-Request-Method": "POST",
                },
            )
            assert resp.status == 200
            assert resp.headers["Access-Control-Allow-Origin"] == ORIGIN
            assert resp.headers["Access-Control-Allow-Methods"] == "GET,POST,OPTIONS"
            assert resp.headers["Access-Control-Max-Age"] == "600"

        assert upstream.requests == []


class TestUpstreamFailure:
    """Tests for upstream errors."""

    @pytest.mark.asyncio
    async def test_connect_error_becomes_500(self) -> None:
        """An unreachable upstream yields a generic 500 with CORS headers."""
        upstream = RecordingUpstream(error=httpx.ConnectError("connection refused"))
        async with gateway_client(upstream) as (client, gateway, _):
            with capture_logs() as logs:
                resp = await client.post("/api/v0/id", headers={"Origin": ORIGIN})
            assert resp.status == 500
            assert await resp.json() == {"error": "Internal Server Error"}
            assert resp.headers["Access-Control-Allow-Origin"] == ORIGIN
            assert gateway.stats["relay_errors"] == 1

        # Not retried.
        assert len(upstream.requests) == 1
        errors = [entry for entry in logs if entry["event"] == "Proxy error"]
        assert len(errors) == 1
        assert errors[0]["code"] == "GATEWAY_RELAY_FAILED"
        assert errors[0]["upstream"] == "http://upstream.test"


class TestLocalRoutes:
    """Tests for routes served by the gateway itself."""

    @pytest.mark.asyncio
    async def test_health(self) -> None:
        """Health check responds without touching upstream."""
        upstream = RecordingUpstream()
        async with gateway_client(upstream) as (client, _, _):
            resp = await client.get("/health")
            assert resp.status == 200
            assert await resp.json() == {"status": "healthy"}
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_metrics(self) -> None:
        """Prometheus metrics are exposed."""
        async with gateway_client(RecordingUpstream()) as (client, _, _):
            await client.post("/api/v0/id")
            resp = await client.get("/metrics")
            assert resp.status == 200
            assert "ipfsbridge_gateway_requests_total" in await resp.text()

    @pytest.mark.asyncio
    async def test_outside_prefix_not_forwarded(self) -> None:
        """Paths outside the prefix are not proxied."""
        upstream = RecordingUpstream()
        async with gateway_client(upstream) as (client, _, _):
            resp = await client.get("/webui")
            assert resp.status == 404
        assert upstream.requests == []


class TestGatewayListener:
    """Tests for binding a real listener."""

    @pytest.mark.asyncio
    async def test_start_on_ephemeral_port(self) -> None:
        """Port 0 binds an ephemeral port reported by ``port``."""
        context = BridgeContext(
            gateway=GatewayConfig(listen_port=0),
            tunnel=TunnelConfig(),
        )
        gateway = ProxyGateway(context)
        await gateway.start()
        try:
            assert gateway.port and gateway.port > 0
            async with httpx.AsyncClient() as client:
                resp = await client.get(f"{gateway.url}/health")
                assert resp.status_code == 200
        finally:
            await gateway.stop()

    @pytest.mark.asyncio
    async def test_proxy_requires_app(self) -> None:
        """Proxying without an HTTP client is a setup error."""
        context = BridgeContext(gateway=GatewayConfig(), tunnel=TunnelConfig())
        gateway = ProxyGateway(context)
        with pytest.raises(RuntimeError, match="create_app"):
            await gateway._handle_proxy(make_mocked_request("POST", "/api/v0/id"))

    @pytest.mark.asyncio
    async def test_no_default_read_timeout(self) -> None:
        """Idle upstream streams are not cut off unless a timeout is configured."""
        context = BridgeContext(gateway=GatewayConfig(), tunnel=TunnelConfig())
        client = ProxyGateway(context)._create_http_client()
        try:
            assert client.timeout.read is None
            assert client.timeout.connect == context.gateway.connect_timeout
        finally:
            await client.aclose()


class TestWebSocketBridge:
    """Tests for upgrade requests bridged to the upstream."""

    @pytest.mark.asyncio
    async def test_frames_relayed_with_session_token(self) -> None:
        """Frames flow both ways and the upstream handshake carries only the session token."""
        handshakes = []

        async def echo(websocket) -> None:
            handshakes.append(websocket.request)
            async for message in websocket:
                await websocket.send(f"echo:{message}")

        async with serve(echo, "127.0.0.1", 0) as upstream:
            port = next(iter(upstream.sockets)).getsockname()[1]
            context = BridgeContext(
                gateway=GatewayConfig(upstream_url=f"http://127.0.0.1:{port}"),
                tunnel=TunnelConfig(),
            )
            gateway = ProxyGateway(context)
            async with TestClient(TestServer(gateway.create_app())) as client:
                ws = await client.ws_connect(
                    "/api/v0/pubsub/sub?arg=certs",
                    headers={"Authorization": "Basic dXNlcjpwYXNz", "Origin": ORIGIN},
                )
                await ws.send_str("hi")
                assert await ws.receive_str(timeout=2.0) == "echo:hi"
                await ws.send_str("again")
                assert await ws.receive_str(timeout=2.0) == "echo:again"
                await ws.close()

        assert len(handshakes) == 1
        request = handshakes[0]
        assert request.path == "/api/v0/pubsub/sub?arg=certs"
        assert request.headers["x-auth-token"] == context.session.token
        assert "Authorization" not in request.headers
        assert request.headers["Origin"] == ORIGIN
