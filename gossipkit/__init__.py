"""Building blocks for gossip-based publish/subscribe: seen caches, filters, validation, tracing and topic events."""

__version__ = "0.1.0"
__all__ = [
    "subscription_filter",
    "tag_tracer",
    "timecache",
    "topic",
    "trace",
    "tracer",
    "validation",
    "validation_builtin",
]