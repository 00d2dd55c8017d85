"""
Assembly and startup of the gateway server.
"""

from typing import Optional

import uvicorn

from restgate.config.settings import RestGateConfig
from restgate.core.credentials import CredentialStore, FileCredentialStore
from restgate.core.policy import RolePolicy
from restgate.gateway.auth import Authenticator
from restgate.gateway.cache import VerificationCache, VerificationCacheConfig
from restgate.gateway.proxy import GatewayProxy
from restgate.logging_config import get_logger
from restgate.monitoring.metrics import GatewayMetrics

logger = get_logger(__name__)


def build_gateway(config: RestGateConfig, store: Optional[CredentialStore] = None) -> GatewayProxy:
    """
    Wire a GatewayProxy from configuration.

    Args:
        config: Full RestGate configuration
        store: Credential store to use; loads the configured credential file if None

    Returns:
        Ready-to-serve GatewayProxy

    Raises:
        CredentialStoreLoadError: If the credential file cannot be loaded
    """
    if store is None:
        store = FileCredentialStore(
            config.storage.credentials_file,
            backup_count=config.storage.backup_count,
            bcrypt_rounds=config.auth.bcrypt_rounds,
            default_role=config.auth.default_role,
        )

    cache = None
    if config.auth.verify_cache_ttl > 0:
        cache = VerificationCache(VerificationCacheConfig(
            ttl_seconds=config.auth.verify_cache_ttl,
            max_size=config.auth.verify_cache_size,
        ))

    return GatewayProxy(
        config=config.gateway,
        authenticator=Authenticator(store, cache=cache),
        policy=RolePolicy(enforce=config.auth.enforce_roles),
        metrics=GatewayMetrics(),
    )


def run_server(gateway: GatewayProxy, host: str, port: int, log_level: str = "info") -> None:
    """Serve the gateway with uvicorn until interrupted."""
    logger.info(f"Starting RestGate on {host}:{port} -> {gateway.upstream_base}")
    uvicorn.run(
        gateway.app,
        host=host,
        port=port,
        log_level=log_level.lower(),
        access_log=False,
    )
