"""
HTTP Basic authentication for the gateway.

The API key travels as the Basic user name and the API secret as the
password. Verification is delegated to a CredentialStore and runs in a
worker thread so bcrypt does not stall the event loop.
"""

import asyncio
import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from restgate.core.credentials import Credential, CredentialStore
from restgate.exceptions import UnauthorizedError
from restgate.gateway.cache import VerificationCache
from restgate.logging_config import get_logger

logger = get_logger(__name__)


class AuthenticationFailure(str, Enum):
    """Why a request failed authentication."""
    MISSING_HEADER = "missing_header"
    MALFORMED_HEADER = "malformed_header"
    INVALID_CREDENTIALS = "invalid_credentials"


@dataclass
class AuthenticationResult:
    """
    Outcome of authenticating a request.

    Attributes:
        success: Whether authentication succeeded
        credential: Matching credential on success
        failure: Failure reason otherwise
        api_key: API key presented, if the header could be parsed
        cached: Whether the verification came from the cache
    """
    success: bool
    credential: Optional[Credential] = None
    failure: Optional[AuthenticationFailure] = None
    api_key: Optional[str] = None
    cached: bool = False


@dataclass
class RequestContext:
    """
    Per-request identity attached by the auth middleware.

    Attributes:
        identity: Authenticated credential
        requested_path: Path of the inbound request
        requested_method: Method of the inbound request
        client_ip: Address of the client, if known
        correlation_id: Request correlation ID
    """
    identity: Credential
    requested_path: str
    requested_method: str
    client_ip: Optional[str] = None
    correlation_id: Optional[str] = field(default=None)


class MalformedAuthorizationError(UnauthorizedError):
    """Authorization header is not valid Basic credentials."""


def parse_basic_auth(header: Optional[str]) -> Tuple[str, str]:
    """
    Decode an HTTP Basic Authorization header.

    Args:
        header: Value of the Authorization header

    Returns:
        (api_key, secret)

    Raises:
        UnauthorizedError: If the header is missing
        MalformedAuthorizationError: If the header is not valid Basic credentials
    """
    if not header:
        raise UnauthorizedError("Missing Authorization header")

    scheme, _, encoded = header.strip().partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        raise MalformedAuthorizationError("Authorization scheme must be Basic")

    try:
        raw = base64.b64decode(encoded.strip(), validate=True)
    except (binascii.Error, ValueError):
        raise MalformedAuthorizationError("Authorization header is not valid base64") from None

    try:
        decoded = raw.decode("utf-8")
    except UnicodeDecodeError:
        decoded = raw.decode("latin-1")

    api_key, sep, secret = decoded.partition(":")
    if not sep or not api_key:
        raise MalformedAuthorizationError("Basic credentials must be key:secret")
    return api_key, secret


class Authenticator:
    """
    Authenticates Basic credentials against a credential store.
    """

    def __init__(self, store: CredentialStore, cache: Optional[VerificationCache] = None):
        """
        Initialize Authenticator.

        Args:
            store: Credential store to verify against
            cache: Optional cache of recent successful verifications
        """
        self.store = store
        self.cache = cache

    async def authenticate(self, authorization: Optional[str]) -> AuthenticationResult:
        """
        Authenticate the value of an Authorization header.

        Args:
            authorization: Header value, or None if absent

        Returns:
            AuthenticationResult; never raises for bad credentials
        """
        try:
            api_key, secret = parse_basic_auth(authorization)
        except MalformedAuthorizationError:
            return AuthenticationResult(success=False, failure=AuthenticationFailure.MALFORMED_HEADER)
        except UnauthorizedError:
            return AuthenticationResult(success=False, failure=AuthenticationFailure.MISSING_HEADER)

        version = self.store.version
        if self.cache is not None:
            credential = await self.cache.get(api_key, secret, version)
            if credential is not None:
                return AuthenticationResult(
                    success=True, credential=credential, api_key=api_key, cached=True
                )

        try:
            credential = await asyncio.to_thread(self.store.verify_credential, api_key, secret)
        except UnauthorizedError:
            return AuthenticationResult(
                success=False,
                failure=AuthenticationFailure.INVALID_CREDENTIALS,
                api_key=api_key,
            )

        if self.cache is not None:
            await self.cache.put(api_key, secret, credential, version)

        return AuthenticationResult(success=True, credential=credential, api_key=api_key)
