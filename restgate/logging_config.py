"""
Logging configuration for RestGate.

Provides centralized structured logging setup with JSON output for production
and human-readable output for development. Supports correlation IDs for
tracing a request from the auth layer through to the upstream call.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from structlog.types import EventDict


# Context variable for correlation ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def add_correlation_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add correlation ID to log events if present in context.

    Args:
        logger: Logger instance
        method_name: Name of the logging method
        event_dict: Event dictionary to modify

    Returns:
        Modified event dictionary with correlation_id if available
    """
    correlation_id = correlation_id_var.get()
    if correlation_id:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """
    Set correlation ID for the current context.

    Args:
        correlation_id: Optional correlation ID. If None, generates a new UUID.

    Returns:
        The correlation ID that was set
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())
    correlation_id_var.set(correlation_id)
    return correlation_id


def clear_correlation_id() -> None:
    """Clear correlation ID from the current context."""
    correlation_id_var.set(None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return correlation_id_var.get()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    json_format: bool = True,
) -> None:
    """
    Configure structured logging for RestGate.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional path to log file. If None, logs only to stderr.
        json_format: If True, use JSON format. If False, use human-readable format.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicates
    root_logger.handlers.clear()

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        root_logger.addHandler(file_handler)
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(numeric_level)
        stderr_handler.setFormatter(logging.Formatter("%(message)s"))
        root_logger.addHandler(stderr_handler)

    processors: list = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance for a specific module.

    Args:
        name: Logger name (typically __name__ of the module).

    Returns:
        Structured logger instance.
    """
    if not name.startswith("restgate"):
        name = f"restgate.{name}"
    return structlog.get_logger(name)


# Convenience functions for common logging patterns

def log_authentication_failure(
    logger: structlog.stdlib.BoundLogger,
    reason: str,
    api_key: Optional[str] = None,
    client_ip: Optional[str] = None,
    **kwargs: Any,
) -> None:
    """
    Log an authentication failure.

    Args:
        logger: Logger instance
        reason: Reason for failure ("missing_header", "malformed_header", "invalid_credentials")
        api_key: API key presented, if it could be parsed
        client_ip: Address of the client
        **kwargs: Additional context to log
    """
    log_data: Dict[str, Any] = {
        "event_type": "authentication_failure",
        "reason": reason,
    }

    if api_key is not None:
        log_data["api_key"] = api_key
    if client_ip is not None:
        log_data["client_ip"] = client_ip

    log_data.update(kwargs)

    logger.warning("authentication_failure", **log_data)


def log_authorization_denial(
    logger: structlog.stdlib.BoundLogger,
    api_key: str,
    role: str,
    method: str,
    path: str,
    **kwargs: Any,
) -> None:
    """
    Log a request rejected by role rules.

    Args:
        logger: Logger instance
        api_key: Authenticated API key
        role: Role of the credential
        method: HTTP method requested
        path: Path requested
        **kwargs: Additional context to log
    """
    log_data: Dict[str, Any] = {
        "event_type": "authorization_denial",
        "api_key": api_key,
        "role": role,
        "method": method,
        "path": path,
    }
    log_data.update(kwargs)

    logger.warning("authorization_denial", **log_data)


def log_upstream_error(
    logger: structlog.stdlib.BoundLogger,
    kind: str,
    upstream_url: str,
    duration_ms: float,
    error: Optional[str] = None,
    **kwargs: Any,
) -> None:
    """
    Log a failed upstream call.

    Args:
        logger: Logger instance
        kind: Failure kind ("connect", "timeout", "protocol", "cancelled")
        upstream_url: URL that was requested
        duration_ms: Time spent before the failure
        error: Error message from the HTTP client
        **kwargs: Additional context to log
    """
    log_data: Dict[str, Any] = {
        "event_type": "upstream_error",
        "kind": kind,
        "upstream_url": upstream_url,
        "duration_ms": duration_ms,
    }

    if error is not None:
        log_data["error"] = error

    log_data.update(kwargs)

    if kind == "cancelled":
        logger.info("upstream_error", **log_data)
    else:
        logger.error("upstream_error", **log_data)


def log_credential_change(
    logger: structlog.stdlib.BoundLogger,
    action: str,
    api_key: str,
    role: Optional[str] = None,
    **kwargs: Any,
) -> None:
    """
    Log a credential store mutation. Secrets and hashes are never logged.

    Args:
        logger: Logger instance
        action: "added", "updated", "revoked" or "rotated"
        api_key: Key that changed
        role: Role after the change, if any
        **kwargs: Additional context to log
    """
    log_data: Dict[str, Any] = {
        "event_type": "credential_change",
        "action": action,
        "api_key": api_key,
    }

    if role is not None:
        log_data["role"] = role

    log_data.update(kwargs)

    logger.info("credential_change", **log_data)


def log_request_completed(
    logger: structlog.stdlib.BoundLogger,
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    api_key: Optional[str] = None,
    **kwargs: Any,
) -> None:
    """
    Log the outcome of a proxied request (access log).

    Args:
        logger: Logger instance
        method: HTTP method
        path: Request path
        status_code: Status returned to the client
        duration_ms: Time until response headers were sent
        api_key: Authenticated API key, if any
        **kwargs: Additional context to log
    """
    log_data: Dict[str, Any] = {
        "event_type": "request_completed",
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
    }

    if api_key is not None:
        log_data["api_key"] = api_key

    log_data.update(kwargs)

    logger.info("request_completed", **log_data)
