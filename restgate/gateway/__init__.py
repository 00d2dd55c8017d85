"""
Gateway module for RestGate.

This module provides the authenticating reverse proxy:
- HTTP Basic authentication against the credential store
- Role-based method/path restriction
- Verification caching
- Streaming request forwarding with connect/read timeouts
"""

from restgate.gateway.auth import (
    AuthenticationFailure,
    AuthenticationResult,
    Authenticator,
    RequestContext,
    parse_basic_auth,
)
from restgate.gateway.cache import (
    CacheStats,
    CachedVerification,
    VerificationCache,
    VerificationCacheConfig,
)
from restgate.gateway.middleware import AuthMiddleware
from restgate.gateway.proxy import GatewayProxy
from restgate.gateway.server import build_gateway, run_server

__all__ = [
    "AuthenticationFailure",
    "AuthenticationResult",
    "Authenticator",
    "RequestContext",
    "parse_basic_auth",
    "CacheStats",
    "CachedVerification",
    "VerificationCache",
    "VerificationCacheConfig",
    "AuthMiddleware",
    "GatewayProxy",
    "build_gateway",
    "run_server",
]
