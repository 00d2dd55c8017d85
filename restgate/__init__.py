"""
RestGate - Authenticating reverse-proxy gateway for key-based HTTP APIs

RestGate verifies HTTP Basic credentials against a credential store,
enforces per-key roles, and streams authenticated requests to a single
upstream service such as a Kafka REST Proxy.
"""

from restgate._version import __version__

__all__ = ["__version__"]
