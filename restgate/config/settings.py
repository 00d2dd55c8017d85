"""
Configuration management for RestGate.

Loads configuration from a YAML file, applies environment variable
overrides, and validates the result into typed dataclass sections.
"""

import math
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import yaml

from restgate.core.policy import Role
from restgate.exceptions import ConfigurationError
from restgate.logging_config import get_logger

logger = get_logger(__name__)


DEFAULT_CONFIG_PATH = Path.home() / ".restgate" / "config.yaml"

VALID_ROLES = tuple(r.value for r in Role)


@dataclass
class GatewayConfig:
    """
    Listener and upstream settings.

    Attributes:
        listen_host: Interface to bind
        listen_port: Port to bind
        upstream_url: Base URL of the upstream service
        connect_timeout: Seconds to wait for the upstream TCP connection
        read_timeout: Seconds to wait between upstream reads
        health_path: Path answered locally without authentication
        realm: Realm announced in WWW-Authenticate
        preserve_host: Forward the client's Host header unchanged
        forward_authorization: Forward the client's Authorization header
        max_connections: Upstream connection pool size
    """
    listen_host: str = "0.0.0.0"
    listen_port: int = 9093
    upstream_url: str = "http://localhost:8082"
    connect_timeout: float = 75.0
    read_timeout: float = 300.0
    health_path: str = "/health"
    realm: str = "Kafka REST API"
    preserve_host: bool = True
    forward_authorization: bool = False
    max_connections: int = 100


@dataclass
class AuthConfig:
    """
    Authentication and authorization settings.

    Attributes:
        enforce_roles: Apply per-role method/path rules after authentication
        default_role: Role given to credential lines that omit one
        bcrypt_rounds: bcrypt cost factor for newly hashed secrets
        verify_cache_ttl: Seconds a successful verification is remembered (0 disables)
        verify_cache_size: Maximum remembered verifications
    """
    enforce_roles: bool = True
    default_role: str = "admin"
    bcrypt_rounds: int = 12
    verify_cache_ttl: int = 60
    verify_cache_size: int = 10000


@dataclass
class StorageConfig:
    """
    Credential file settings.

    Attributes:
        credentials_file: Path of the credential file
        backup_count: Number of rolling backups kept on write
    """
    credentials_file: str = str(Path.home() / ".restgate" / "credentials")
    backup_count: int = 3


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: Optional[str] = None
    json_format: bool = True


@dataclass
class RestGateConfig:
    """Top-level configuration."""
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# Environment variable -> (section, attribute)
ENV_OVERRIDES = {
    "RESTGATE_UPSTREAM_URL": ("gateway", "upstream_url"),
    "RESTGATE_LISTEN_HOST": ("gateway", "listen_host"),
    "RESTGATE_LISTEN_PORT": ("gateway", "listen_port"),
    "RESTGATE_CREDENTIALS_FILE": ("storage", "credentials_file"),
    "RESTGATE_LOG_LEVEL": ("logging", "level"),
}


def _build_section(cls, data: Optional[Dict[str, Any]], section: str):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config section '{section}' must be a mapping")

    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in config section '{section}': {', '.join(sorted(unknown))}"
        )

    defaults = cls()
    values = {}
    for name, value in data.items():
        try:
            values[name] = _coerce(value, getattr(defaults, name))
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid value for {section}.{name}: {value!r} ({e})") from e
    return cls(**values)


TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def _coerce(value: Any, current: Any) -> Any:
    """
    Convert a YAML or environment value to the type of the field's default.

    Raises:
        ValueError: If the value cannot represent the field's type
        TypeError: If the value is a mapping, list or other non-scalar
    """
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in TRUE_VALUES:
                return True
            if lowered in FALSE_VALUES:
                return False
        raise ValueError("expected true or false")

    if value is None:
        if current is None:
            return None
        raise ValueError("a value is required")
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise TypeError(f"expected a scalar, got {type(value).__name__}")

    if isinstance(current, int):
        if isinstance(value, float) and not value.is_integer():
            raise ValueError("expected an integer")
        return int(value)
    if isinstance(current, float):
        number = float(value)
        if not math.isfinite(number):
            raise ValueError("expected a finite number")
        return number
    return str(value)


def apply_env_overrides(config: RestGateConfig, environ: Optional[Dict[str, str]] = None) -> RestGateConfig:
    """
    Apply RESTGATE_* environment variables on top of a loaded configuration.

    Args:
        config: Configuration to modify in place
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        The same configuration object
    """
    environ = os.environ if environ is None else environ
    for var, (section, attr) in ENV_OVERRIDES.items():
        if var not in environ:
            continue
        target = getattr(config, section)
        try:
            setattr(target, attr, _coerce(environ[var], getattr(target, attr)))
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid value for {var}: {environ[var]!r}") from e
        logger.debug("config_env_override", variable=var)
    return config


def validate_config(config: RestGateConfig) -> None:
    """
    Validate cross-field constraints.

    Raises:
        ConfigurationError: If any value is out of range
    """
    gw = config.gateway
    parsed = urlparse(gw.upstream_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(f"upstream_url must be an http(s) URL, got {gw.upstream_url!r}")
    if not 0 < gw.listen_port < 65536:
        raise ConfigurationError(f"listen_port out of range: {gw.listen_port}")
    if gw.connect_timeout <= 0 or gw.read_timeout <= 0:
        raise ConfigurationError("connect_timeout and read_timeout must be positive")
    if not gw.health_path.startswith("/"):
        raise ConfigurationError(f"health_path must start with '/', got {gw.health_path!r}")
    if gw.max_connections < 1:
        raise ConfigurationError("max_connections must be at least 1")

    auth = config.auth
    if auth.default_role not in VALID_ROLES:
        raise ConfigurationError(
            f"default_role must be one of {', '.join(VALID_ROLES)}, got {auth.default_role!r}"
        )
    if not 4 <= auth.bcrypt_rounds <= 31:
        raise ConfigurationError(f"bcrypt_rounds must be between 4 and 31, got {auth.bcrypt_rounds}")
    if auth.verify_cache_ttl < 0 or auth.verify_cache_size < 1:
        raise ConfigurationError("verify_cache_ttl must be >= 0 and verify_cache_size >= 1")

    if config.storage.backup_count < 0:
        raise ConfigurationError("backup_count must be >= 0")


def get_default_config() -> RestGateConfig:
    """Return a configuration with all defaults."""
    return RestGateConfig()


def load_config(config_path: Optional[str] = None) -> RestGateConfig:
    """
    Load configuration from YAML.

    A missing file at the default location is not an error; a missing file
    that was explicitly requested is.

    Args:
        config_path: Path to config.yaml (defaults to ~/.restgate/config.yaml)

    Returns:
        Validated RestGateConfig

    Raises:
        ConfigurationError: If the file is unreadable, not valid YAML, or invalid
    """
    path = Path(config_path).expanduser() if config_path else DEFAULT_CONFIG_PATH

    if not path.exists():
        if config_path:
            raise ConfigurationError(f"Config file not found: {path}")
        logger.debug("config_file_absent", path=str(path))
        config = get_default_config()
    else:
        try:
            with open(path, "r") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to read config file {path}: {e}") from e

        if not isinstance(raw, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")

        unknown = set(raw) - {"gateway", "auth", "storage", "logging"}
        if unknown:
            raise ConfigurationError(f"Unknown config sections: {', '.join(sorted(unknown))}")

        config = RestGateConfig(
            gateway=_build_section(GatewayConfig, raw.get("gateway"), "gateway"),
            auth=_build_section(AuthConfig, raw.get("auth"), "auth"),
            storage=_build_section(StorageConfig, raw.get("storage"), "storage"),
            logging=_build_section(LoggingConfig, raw.get("logging"), "logging"),
        )
        logger.info("config_loaded", path=str(path))

    apply_env_overrides(config)
    validate_config(config)
    return config
