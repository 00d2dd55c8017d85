"""
Prometheus metrics for the gateway.

Each GatewayMetrics owns its own CollectorRegistry so several gateways (or
test instances) can live in one process without duplicate-metric errors.
"""

from typing import Optional, Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

from restgate.logging_config import get_logger

logger = get_logger(__name__)


class GatewayMetrics:
    """
    Request, authentication and upstream metrics.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.requests_total = Counter(
            'restgate_requests_total',
            'Requests handled by the gateway',
            ['method', 'status'],
            registry=self.registry
        )

        self.auth_failures_total = Counter(
            'restgate_auth_failures_total',
            'Requests rejected by authentication or role rules',
            ['reason'],
            registry=self.registry
        )

        self.upstream_latency_seconds = Histogram(
            'restgate_upstream_latency_seconds',
            'Time until upstream response headers were received',
            ['method'],
            registry=self.registry
        )

        self.upstream_errors_total = Counter(
            'restgate_upstream_errors_total',
            'Failed upstream calls',
            ['kind'],
            registry=self.registry
        )

        logger.debug("Prometheus metrics initialized")

    def record_request(self, method: str, status: int) -> None:
        self.requests_total.labels(method=method, status=str(status)).inc()

    def record_auth_failure(self, reason: str) -> None:
        self.auth_failures_total.labels(reason=reason).inc()

    def record_upstream_latency(self, method: str, seconds: float) -> None:
        self.upstream_latency_seconds.labels(method=method).observe(seconds)

    def record_upstream_error(self, kind: str) -> None:
        self.upstream_errors_total.labels(kind=kind).inc()

    def render(self) -> Tuple[bytes, str]:
        """Return the exposition payload and its content type."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
