"""Command line interface for RestGate."""
