"""Version information for RestGate."""

__version__ = "0.3.0"
