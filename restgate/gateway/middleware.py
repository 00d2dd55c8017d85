"""
Authentication middleware for the gateway.

A plain ASGI middleware rather than BaseHTTPMiddleware so request and
response bodies pass through without being buffered.
"""

import time
from typing import Optional

from starlette.datastructures import Headers
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from restgate.core.policy import RolePolicy, is_canonical_path
from restgate.exceptions import ForbiddenError, InvalidInputError, UnauthorizedError
from restgate.gateway.auth import Authenticator, RequestContext
from restgate.logging_config import (
    clear_correlation_id,
    get_logger,
    log_authentication_failure,
    log_authorization_denial,
    log_request_completed,
    set_correlation_id,
)
from restgate.monitoring.metrics import GatewayMetrics

logger = get_logger(__name__)

HEALTH_BODY = "healthy\n"
REQUEST_ID_HEADER = "x-request-id"


class AuthMiddleware:
    """
    Authenticates every request before it reaches the application.

    Behavior:
        - The health path is answered directly, without authentication
        - Missing, malformed or wrong credentials get 401 with a Basic challenge
        - Paths with dot segments or encoded separators get 400
        - Credentials whose role forbids the method/path get 403
        - Otherwise a RequestContext is stored in the request state and the
          request continues
    """

    def __init__(
        self,
        app: ASGIApp,
        authenticator: Authenticator,
        policy: RolePolicy,
        health_path: str = "/health",
        realm: str = "Kafka REST API",
        metrics: Optional[GatewayMetrics] = None,
    ) -> None:
        self.app = app
        self.authenticator = authenticator
        self.policy = policy
        self.health_path = health_path
        self.realm = realm
        self.metrics = metrics

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        method = scope["method"]
        path = scope["path"]
        client_ip = scope["client"][0] if scope.get("client") else None
        correlation_id = set_correlation_id(headers.get(REQUEST_ID_HEADER) or None)
        started = time.monotonic()
        api_key: Optional[str] = None

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                message["headers"] = list(message.get("headers", [])) + [
                    (REQUEST_ID_HEADER.encode("latin-1"), correlation_id.encode("latin-1"))
                ]
                status = message["status"]
                if self.metrics is not None:
                    self.metrics.record_request(method, status)
                if path != self.health_path:
                    log_request_completed(
                        logger,
                        method=method,
                        path=path,
                        status_code=status,
                        duration_ms=round((time.monotonic() - started) * 1000, 2),
                        api_key=api_key,
                        client_ip=client_ip,
                    )
            await send(message)

        try:
            if path == self.health_path:
                response = PlainTextResponse(HEALTH_BODY)
                await response(scope, receive, send_wrapper)
                return

            result = await self.authenticator.authenticate(headers.get("authorization"))
            if not result.success:
                reason = result.failure.value
                log_authentication_failure(logger, reason, api_key=result.api_key, client_ip=client_ip)
                if self.metrics is not None:
                    self.metrics.record_auth_failure(reason)
                error = UnauthorizedError("Invalid or missing API credentials")
                response = JSONResponse(
                    error.to_dict(),
                    status_code=error.status_code,
                    headers={"WWW-Authenticate": f'Basic realm="{self.realm}"'},
                )
                await response(scope, receive, send_wrapper)
                return

            credential = result.credential
            api_key = credential.key

            if not is_canonical_path(path, scope.get("raw_path")):
                log_authorization_denial(
                    logger, credential.key, credential.role.value, method, path,
                    reason="non_canonical_path",
                )
                if self.metrics is not None:
                    self.metrics.record_auth_failure("invalid_path")
                error = InvalidInputError("Path may not contain '.' or '..' segments or encoded separators")
                response = JSONResponse(error.to_dict(), status_code=error.status_code)
                await response(scope, receive, send_wrapper)
                return

            if not self.policy.is_allowed(credential.role, method, path):
                log_authorization_denial(logger, credential.key, credential.role.value, method, path)
                if self.metrics is not None:
                    self.metrics.record_auth_failure("forbidden")
                error = ForbiddenError(
                    f"Role '{credential.role.value}' may not {method} {path}"
                )
                response = JSONResponse(error.to_dict(), status_code=error.status_code)
                await response(scope, receive, send_wrapper)
                return

            scope.setdefault("state", {})["request_context"] = RequestContext(
                identity=credential,
                requested_path=path,
                requested_method=method,
                client_ip=client_ip,
                correlation_id=correlation_id,
            )
            await self.app(scope, receive, send_wrapper)
        finally:
            clear_correlation_id()
