"""Monitoring for RestGate."""

from restgate.monitoring.metrics import GatewayMetrics

__all__ = ["GatewayMetrics"]
