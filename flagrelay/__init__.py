"""Feature flag telemetry recording, subscription multiplexing and a daemon runtime."""

__version__ = "0.1.0"
__all__ = ["attributes", "metrics", "builder", "subscriptions", "runtime", "cli"]