"""
Gateway proxy for RestGate.

Builds the FastAPI application that sits behind AuthMiddleware and streams
authenticated requests to the upstream service with aiohttp.

Forwarding rules:
- Method, path, query and body are preserved
- Hop-by-hop headers are dropped in both directions
- X-Forwarded-For / X-Forwarded-Host / X-Forwarded-Proto / X-Real-IP are set
- Bodies are streamed, never buffered whole
- Connect and read timeouts are enforced independently
- Connection failures become 502, timeouts become 504
- A client disconnect cancels the upstream request
"""

import asyncio
import signal
import time
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import AsyncIterator, Awaitable, Optional, TypeVar

import aiohttp
from aiohttp import ClientTimeout, TCPConnector
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from multidict import CIMultiDict
from yarl import URL

from restgate.config.settings import GatewayConfig
from restgate.core.policy import RolePolicy
from restgate.exceptions import (
    BadGatewayError,
    CredentialStoreLoadError,
    GatewayTimeoutError,
    RestGateError,
)
from restgate.gateway.auth import Authenticator
from restgate.gateway.middleware import AuthMiddleware
from restgate.logging_config import get_logger, log_upstream_error
from restgate.monitoring.metrics import GatewayMetrics

logger = get_logger(__name__)

T = TypeVar("T")

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

# Set by the gateway itself rather than copied from the client
REWRITTEN_REQUEST_HEADERS = frozenset({
    "host",
    "expect",
    "x-forwarded-for",
    "x-forwarded-host",
    "x-forwarded-proto",
    "x-real-ip",
})

# Status used in logs when the client went away before a response was sent
CLIENT_CLOSED_REQUEST = 499


class ClientDisconnected(Exception):
    """The downstream client disconnected while the upstream call was pending."""


class _BodyState:
    def __init__(self) -> None:
        self.consumed = False


def _release_response(task: "asyncio.Future") -> None:
    """Return the connection of an upstream response nobody will read."""
    if task.cancelled() or task.exception() is not None:
        return
    result = task.result()
    if isinstance(result, aiohttp.ClientResponse):
        result.release()


class GatewayProxy:
    """
    Authenticating reverse proxy in front of a single upstream.

    The FastAPI application is available as `app`. AuthMiddleware runs
    before any route, so every route here only ever sees authenticated,
    authorized requests.
    """

    def __init__(
        self,
        config: GatewayConfig,
        authenticator: Authenticator,
        policy: Optional[RolePolicy] = None,
        metrics: Optional[GatewayMetrics] = None,
        disconnect_poll_interval: float = 0.5,
    ):
        """
        Initialize GatewayProxy.

        Args:
            config: Listener, upstream and timeout settings
            authenticator: Authenticator backed by the credential store
            policy: Role rules (defaults to enforcing RolePolicy)
            metrics: Optional Prometheus metrics
            disconnect_poll_interval: Seconds between client disconnect checks
                while waiting for upstream response headers
        """
        self.config = config
        self.authenticator = authenticator
        self.policy = policy or RolePolicy(enforce=True)
        self.metrics = metrics
        self.disconnect_poll_interval = disconnect_poll_interval

        self.upstream_base = URL(config.upstream_url.rstrip("/"))
        self.timeout = ClientTimeout(
            total=None,
            sock_connect=config.connect_timeout,
            sock_read=config.read_timeout,
        )
        self._session: Optional[aiohttp.ClientSession] = None

        self.app = self._create_app()

        logger.info(
            f"Initialized GatewayProxy: upstream={self.upstream_base}, "
            f"connect_timeout={config.connect_timeout}s, read_timeout={config.read_timeout}s"
        )

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def _create_app(self) -> FastAPI:
        app = FastAPI(
            title="RestGate",
            lifespan=self._lifespan,
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )

        app.add_middleware(
            AuthMiddleware,
            authenticator=self.authenticator,
            policy=self.policy,
            health_path=self.config.health_path,
            realm=self.config.realm,
            metrics=self.metrics,
        )

        @app.exception_handler(RestGateError)
        async def restgate_error_handler(request: Request, exc: RestGateError) -> JSONResponse:
            return JSONResponse(exc.to_dict(), status_code=exc.status_code)

        @app.get("/_gateway/stats")
        async def stats() -> dict:
            return self.get_stats()

        @app.post("/_gateway/reload")
        async def reload() -> dict:
            count = await self.reload_credentials()
            return {"status": "reloaded", "credentials": count}

        @app.get("/_gateway/metrics")
        async def metrics() -> Response:
            if self.metrics is None:
                return JSONResponse({"error": "not_found", "message": "Metrics disabled"}, status_code=404)
            payload, content_type = self.metrics.render()
            return Response(content=payload, media_type=content_type)

        @app.api_route(
            "/{path:path}",
            methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        )
        async def proxy(request: Request) -> Response:
            return await self.forward_request(request)

        return app

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI) -> AsyncIterator[None]:
        loop = asyncio.get_running_loop()
        sighup_installed = False
        try:
            loop.add_signal_handler(signal.SIGHUP, self._on_sighup)
            sighup_installed = True
        except (NotImplementedError, RuntimeError, ValueError):
            logger.warning("SIGHUP reload unavailable on this platform/thread")

        await self._get_session()
        try:
            yield
        finally:
            if sighup_installed:
                loop.remove_signal_handler(signal.SIGHUP)
            await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the upstream aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                connector=TCPConnector(limit=self.config.max_connections),
                timeout=self.timeout,
                auto_decompress=False,
            )
        return self._session

    async def close(self) -> None:
        """Close the upstream session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
            logger.info("Closed upstream session")
        self._session = None

    # ------------------------------------------------------------------
    # Credential reload and stats
    # ------------------------------------------------------------------

    def _on_sighup(self) -> None:
        logger.info("Received SIGHUP, reloading credentials")
        task = asyncio.ensure_future(self.reload_credentials())
        task.add_done_callback(self._log_reload_failure)

    @staticmethod
    def _log_reload_failure(task: "asyncio.Task") -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Credential reload failed, keeping previous credentials: {task.exception()}")

    async def reload_credentials(self) -> int:
        """
        Reload the credential store and drop cached verifications.

        Returns:
            Number of credentials loaded

        Raises:
            CredentialStoreLoadError: If the store cannot be reloaded; the
                previous credentials stay in effect
        """
        try:
            count = await asyncio.to_thread(self.authenticator.store.reload)
        except CredentialStoreLoadError as e:
            logger.error(f"Credential reload failed: {e}")
            raise
        if self.authenticator.cache is not None:
            await self.authenticator.cache.clear()
        return count

    def get_stats(self) -> dict:
        cache = self.authenticator.cache
        store = self.authenticator.store
        return {
            "upstream": str(self.upstream_base),
            "credentials": len(store.list_credentials()),
            "store_version": store.version,
            "verification_cache": asdict(cache.get_stats()) if cache is not None else None,
        }

    # ------------------------------------------------------------------
    # Forwarding
    # ------------------------------------------------------------------

    def build_upstream_url(self, request: Request) -> URL:
        raw_path = request.scope.get("raw_path")
        path = raw_path.decode("latin-1").split("?", 1)[0] if raw_path else request.url.path
        query = request.scope.get("query_string", b"").decode("latin-1")

        url = self.config.upstream_url.rstrip("/") + path
        if query:
            url = f"{url}?{query}"
        return URL(url, encoded=True)

    def build_upstream_headers(self, request: Request) -> CIMultiDict:
        headers: CIMultiDict = CIMultiDict()
        for name, value in request.headers.items():
            lname = name.lower()
            if lname in HOP_BY_HOP_HEADERS or lname in REWRITTEN_REQUEST_HEADERS:
                continue
            if lname == "authorization" and not self.config.forward_authorization:
                continue
            headers.add(name, value)

        original_host = request.headers.get("host")
        client_ip = request.client.host if request.client else None

        if original_host:
            headers["X-Forwarded-Host"] = original_host
            if self.config.preserve_host:
                headers["Host"] = original_host
        if client_ip:
            prior = request.headers.get("x-forwarded-for")
            headers["X-Forwarded-For"] = f"{prior}, {client_ip}" if prior else client_ip
            headers["X-Real-IP"] = client_ip
        headers["X-Forwarded-Proto"] = request.url.scheme
        return headers

    @staticmethod
    def _has_body(request: Request) -> bool:
        if "transfer-encoding" in request.headers:
            return True
        content_length = request.headers.get("content-length")
        return content_length is not None and content_length.strip() != "0"

    @staticmethod
    async def _stream_request_body(request: Request, state: _BodyState) -> AsyncIterator[bytes]:
        async for chunk in request.stream():
            if chunk:
                yield chunk
        state.consumed = True

    async def _await_unless_disconnected(
        self, request: Request, state: _BodyState, awaitable: Awaitable[T]
    ) -> T:
        """
        Await an upstream call, cancelling it if the client disconnects.

        Disconnects are only polled once the request body has been fully
        read, since polling consumes messages from the ASGI receive channel.
        """
        task = asyncio.ensure_future(awaitable)
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=self.disconnect_poll_interval)
                if task in done:
                    return task.result()
                if state.consumed and await request.is_disconnected():
                    # The call may have finished while is_disconnected() was pending
                    task.add_done_callback(_release_response)
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)
                    raise ClientDisconnected()
        except asyncio.CancelledError:
            task.add_done_callback(_release_response)
            task.cancel()
            raise

    async def forward_request(self, request: Request) -> Response:
        """
        Forward an authenticated request to the upstream and stream back the response.

        Args:
            request: Inbound request (already authenticated)

        Returns:
            StreamingResponse relaying the upstream status, headers and body

        Raises:
            BadGatewayError: If the upstream cannot be reached
            GatewayTimeoutError: If the upstream does not respond in time
        """
        url = self.build_upstream_url(request)
        headers = self.build_upstream_headers(request)
        method = request.method

        state = _BodyState()
        data = None
        if self._has_body(request):
            data = self._stream_request_body(request, state)
        else:
            state.consumed = True

        session = await self._get_session()
        started = time.monotonic()

        async def send_upstream() -> aiohttp.ClientResponse:
            return await session.request(
                method,
                url,
                headers=headers,
                data=data,
                allow_redirects=False,
                skip_auto_headers=("Accept-Encoding", "User-Agent", "Content-Type"),
            )

        try:
            upstream = await self._await_unless_disconnected(request, state, send_upstream())
        except ClientDisconnected:
            self._upstream_failed("cancelled", url, started, "client disconnected")
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        except asyncio.TimeoutError as e:
            self._upstream_failed("timeout", url, started, str(e) or "timed out")
            raise GatewayTimeoutError("Upstream did not respond in time") from e
        except aiohttp.ClientConnectorError as e:
            self._upstream_failed("connect", url, started, str(e))
            raise BadGatewayError("Upstream connection failed") from e
        except aiohttp.ClientError as e:
            self._upstream_failed("protocol", url, started, str(e))
            raise BadGatewayError(f"Upstream request failed: {e.__class__.__name__}") from e

        if self.metrics is not None:
            self.metrics.record_upstream_latency(method, time.monotonic() - started)

        response = StreamingResponse(
            self._stream_response_body(upstream, url, started),
            status_code=upstream.status,
        )
        for name, value in upstream.headers.items():
            if name.lower() in HOP_BY_HOP_HEADERS:
                continue
            response.raw_headers.append((name.lower().encode("latin-1"), value.encode("latin-1")))
        return response

    async def _stream_response_body(
        self, upstream: aiohttp.ClientResponse, url: URL, started: float
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.content.iter_any():
                yield chunk
        except asyncio.TimeoutError:
            self._upstream_failed("timeout", url, started, "read timeout while streaming response")
            upstream.close()
            raise
        except aiohttp.ClientError as e:
            self._upstream_failed("protocol", url, started, str(e))
            upstream.close()
            raise
        except asyncio.CancelledError:
            # Client went away mid-stream
            upstream.close()
            raise
        finally:
            upstream.release()

    def _upstream_failed(self, kind: str, url: URL, started: float, error: str) -> None:
        if self.metrics is not None:
            self.metrics.record_upstream_error(kind)
        log_upstream_error(
            logger,
            kind=kind,
            upstream_url=str(url),
            duration_ms=round((time.monotonic() - started) * 1000, 2),
            error=error,
        )
