"""Multi-provider streaming chat relay with key rotation, racing and failover."""

__version__ = "0.1.0"
