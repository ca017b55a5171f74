"""Local reverse-proxy in front of the storage node API."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from urllib.parse import urlsplit, urlunsplit

import httpx
import structlog
import websockets
from aiohttp import WSMsgType, web

from ipfsbridge.core.exceptions import GatewayRelayError, format_error_for_user
from ipfsbridge.core.session import BridgeContext
from ipfsbridge.gateway.headers import (
    cors_headers,
    is_upgrade,
    preflight_headers,
    rewrite_request_headers,
    rewrite_response_headers,
)
from ipfsbridge.observability.metrics import (
    GATEWAY_ERRORS,
    GATEWAY_REQUEST_DURATION,
    GATEWAY_REQUESTS,
    bucket_status,
    generate_metrics,
    get_content_type,
)

logger = structlog.get_logger()

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

# websockets generates its own handshake headers
_WS_HANDSHAKE = frozenset(
    {
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
    }
)


class ProxyGateway:
    """HTTP listener forwarding a path prefix to the storage node.

    Preflight requests are answered locally. Every other request gets the
    session token injected and inbound credentials stripped; responses get
    CORS headers reflecting the caller's origin and lose any auth challenge.
    Upstream failures become a generic 500 and are never retried here.
    """

    def __init__(
        self,
        context: BridgeContext,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.context = context
        self.config = context.gateway
        self._prefix = "/" + self.config.path_prefix.strip("/")
        self._upstream = self.config.upstream_url.rstrip("/")
        self._http_client = http_client
        self._owns_client = http_client is None
        self._runner: web.AppRunner | None = None
        self._port: int | None = None
        self._requests_proxied = 0
        self._relay_errors = 0

    @property
    def port(self) -> int | None:
        """Bound port once started (useful when configured with port 0)."""
        return self._port

    @property
    def url(self) -> str:
        return f"http://{self.config.listen_host}:{self._port or self.config.listen_port}"

    @property
    def stats(self) -> dict[str, int]:
        return {
            "requests_proxied": self._requests_proxied,
            "relay_errors": self._relay_errors,
        }

    def _create_http_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            connect=self.config.connect_timeout,
            read=self.config.upstream_timeout or None,
            write=self.config.connect_timeout,
            pool=self.config.connect_timeout,
        )
        # Redirects go back to the caller untouched.
        return httpx.AsyncClient(timeout=timeout, follow_redirects=False)

    def create_app(self) -> web.Application:
        """Build the aiohttp application. Safe to call without starting a listener."""
        if self._http_client is None:
            self._http_client = self._create_http_client()

        app = web.Application(
            client_max_size=self.config.max_body_size,
            middlewares=[self._observe_middleware, self._preflight_middleware],
        )
        app.router.add_get("/health", self._handle_health_check)
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_route("*", self._prefix, self._handle_proxy)
        app.router.add_route("*", self._prefix + "/{tail:.*}", self._handle_proxy)
        app.on_cleanup.append(self._close_http_client)
        return app

    async def start(self) -> None:
        """Bind the listener. The socket stays open until ``stop``."""
        self._runner = web.AppRunner(self.create_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.listen_host, self.config.listen_port)
        await site.start()

        addresses = self._runner.addresses
        self._port = addresses[0][1] if addresses else self.config.listen_port
        logger.info(
            "Gateway started",
            url=self.url,
            upstream=self._upstream,
            prefix=self._prefix,
            session=self.context.session.fingerprint,
        )

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Gateway stopped", stats=self.stats)

    async def _close_http_client(self, app: web.Application) -> None:
        if self._http_client and self._owns_client:
            with contextlib.suppress(Exception):
                await self._http_client.aclose()
            self._http_client = None

    @web.middleware
    async def _observe_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        start = time.monotonic()
        status = 500
        try:
            response = await handler(request)
            status = response.status
            return response
        except web.HTTPException as e:
            status = e.status
            raise
        finally:
            GATEWAY_REQUESTS.labels(method=request.method, status=bucket_status(status)).inc()
            GATEWAY_REQUEST_DURATION.observe(time.monotonic() - start)
            logger.info(f"{request.method} {request.path} {status}")

    @web.middleware
    async def _preflight_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            return web.Response(
                status=200,
                headers=preflight_headers(request.headers.get("Origin")),
            )
        return await handler(request)

    async def _handle_health_check(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy"})

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        return web.Response(
            body=generate_metrics(),
            headers={"Content-Type": get_content_type()},
        )

    def _upstream_url(self, request: web.Request) -> str:
        return f"{self._upstream}{request.raw_path}"

    def _relay_error(self, request: web.Request, error: BaseException) -> web.Response:
        """Fixed 500 for any upstream failure. Logged, never retried."""
        self._relay_errors += 1
        GATEWAY_ERRORS.inc()
        logger.error(
            "Proxy error",
            code=GatewayRelayError.code,
            upstream=self._upstream,
            method=request.method,
            path=request.path,
            error=str(error) or type(error).__name__,
            reason=format_error_for_user(error),
        )
        return web.json_response(
            {"error": "Internal Server Error"},
            status=500,
            headers=cors_headers(request.headers.get("Origin")),
        )

    async def _handle_proxy(self, request: web.Request) -> web.StreamResponse:
        if is_upgrade(request.headers.items()):
            return await self._handle_websocket_proxy(request)

        if self._http_client is None:
            raise RuntimeError("create_app() must be called before proxying requests")
        origin = request.headers.get("Origin")
        headers = rewrite_request_headers(
            request.headers.items(), self.context.session.token, origin
        )
        content = request.content.iter_chunked(65536) if request.body_exists else None

        upstream_request = self._http_client.build_request(
            request.method,
            self._upstream_url(request),
            headers=headers,
            content=content,
        )
        try:
            upstream = await self._http_client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            return self._relay_error(request, e)

        try:
            response = web.StreamResponse(
                status=upstream.status_code,
                reason=upstream.reason_phrase or None,
            )
            for name, value in rewrite_response_headers(upstream.headers.multi_items(), origin):
                response.headers.add(name, value)
            body_iter = upstream.aiter_bytes()
            try:
                first_chunk = await anext(body_iter, b"")
            except httpx.HTTPError as e:
                return self._relay_error(request, e)

            await response.prepare(request)
            if first_chunk:
                await response.write(first_chunk)
            try:
                async for chunk in body_iter:
                    await response.write(chunk)
            except httpx.HTTPError as e:
                # Headers are already sent; the caller sees a truncated body.
                self._relay_errors += 1
                GATEWAY_ERRORS.inc()
                logger.error("Upstream stream interrupted", path=request.path, error=str(e))
                return response
            await response.write_eof()
            self._requests_proxied += 1
            return response
        finally:
            await upstream.aclose()

    async def _handle_websocket_proxy(self, request: web.Request) -> web.StreamResponse:
        """Bridge a WebSocket upgrade to the upstream, frames relayed both ways."""
        origin = request.headers.get("Origin")
        headers = [
            (name, value)
            for name, value in rewrite_request_headers(
                request.headers.items(), self.context.session.token, origin
            )
            if name.lower() not in _WS_HANDSHAKE
        ]

        subprotocols = []
        if "Sec-WebSocket-Protocol" in request.headers:
            subprotocols = [p.strip() for p in request.headers["Sec-WebSocket-Protocol"].split(",")]

        parts = urlsplit(self._upstream_url(request))
        ws_url = urlunsplit(
            ("wss" if parts.scheme == "https" else "ws", parts.netloc, parts.path, parts.query, "")
        )

        try:
            upstream = await websockets.connect(
                ws_url,
                additional_headers=headers,
                subprotocols=subprotocols or None,
                open_timeout=self.config.connect_timeout,
            )
        except (OSError, TimeoutError, websockets.WebSocketException) as e:
            return self._relay_error(request, e)

        ws = web.WebSocketResponse(protocols=[upstream.subprotocol] if upstream.subprotocol else ())
        for name, value in cors_headers(origin):
            ws.headers[name] = value
        await ws.prepare(request)
        logger.info("WebSocket bridged", path=request.path)

        async def client_to_upstream() -> None:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await upstream.send(msg.data)
                elif msg.type == WSMsgType.BINARY:
                    await upstream.send(msg.data)
                elif msg.type in (WSMsgType.CLOSE, WSMsgType.ERROR):
                    break

        async def upstream_to_client() -> None:
            try:
                async for message in upstream:
                    if isinstance(message, str):
                        await ws.send_str(message)
                    else:
                        await ws.send_bytes(message)
            except websockets.ConnectionClosed:
                pass

        tasks = [
            asyncio.create_task(client_to_upstream()),
            asyncio.create_task(upstream_to_client()),
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            with contextlib.suppress(Exception):
                await upstream.close()
            if not ws.closed:
                await ws.close()

        self._requests_proxied += 1
        return ws
