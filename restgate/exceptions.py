"""
Exception hierarchy for RestGate.

Every error carries the HTTP status code it is surfaced as, so the gateway
and the management CLI can report failures without translating them.
"""

from typing import Any, Dict, Optional


class RestGateError(Exception):
    """Base class for all RestGate errors.

    Attributes:
        message: Human-readable description of the failure.
        status_code: HTTP status code the error maps to.
        error_code: Stable machine-readable identifier.
    """

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str = "", status_code: Optional[int] = None) -> None:
        self.message = message or self.__class__.__doc__.splitlines()[0]
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
        }


class InvalidInputError(RestGateError):
    """Malformed request."""

    status_code = 400
    error_code = "invalid_input"


class UnauthorizedError(RestGateError):
    """Missing or invalid credentials."""

    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(RestGateError):
    """Credential role does not permit this request."""

    status_code = 403
    error_code = "forbidden"


class CredentialNotFoundError(RestGateError):
    """Unknown credential."""

    status_code = 404
    error_code = "not_found"

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Credential not found: {key}")


class BadGatewayError(RestGateError):
    """Upstream service could not be reached."""

    status_code = 502
    error_code = "bad_gateway"


class GatewayTimeoutError(RestGateError):
    """Upstream service did not respond in time."""

    status_code = 504
    error_code = "gateway_timeout"


class CredentialStoreLoadError(RestGateError):
    """Credential store could not be loaded."""

    error_code = "credential_store_load_failed"


class CredentialStoreWriteError(RestGateError):
    """Credential store could not be written."""

    error_code = "credential_store_write_failed"


class ConfigurationError(RestGateError):
    """Invalid gateway configuration."""

    error_code = "configuration_error"
