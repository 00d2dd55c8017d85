"""Configuration for RestGate."""

from restgate.config.settings import (
    AuthConfig,
    GatewayConfig,
    LoggingConfig,
    RestGateConfig,
    StorageConfig,
    VALID_ROLES,
    get_default_config,
    load_config,
)

__all__ = [
    "AuthConfig",
    "GatewayConfig",
    "LoggingConfig",
    "RestGateConfig",
    "StorageConfig",
    "VALID_ROLES",
    "get_default_config",
    "load_config",
]
