"""
Prometheus metrics for the delivery engine.
Registered on the global REGISTRY at import time.
"""

from prometheus_client import Counter, Gauge

MESSAGES_STORED_TOTAL = Counter(
    "loupe_messages_stored_total",
    "Log messages queued for delivery",
    ["backend"],  # durable | memory
)

MESSAGES_DROPPED_TOTAL = Counter(
    "loupe_messages_dropped_total",
    "Log messages lost before delivery",
    ["reason"],  # oversize | evicted | rejected
)

DELIVERY_ATTEMPTS_TOTAL = Counter(
    "loupe_delivery_attempts_total",
    "Delivery attempts by outcome",
    ["outcome"],  # success | transient | rejected
)

DELIVERY_INTERVAL_MS = Gauge(
    "loupe_delivery_interval_ms",
    "Current delay before the next delivery attempt",
)

MEMORY_BUFFER_SIZE = Gauge(
    "loupe_memory_buffer_size",
    "Messages held in the in-memory fallback buffer",
)


class MetricsRegistry:
    """Access to the agent metrics in one place."""

    messages_stored_total = MESSAGES_STORED_TOTAL
    messages_dropped_total = MESSAGES_DROPPED_TOTAL
    delivery_attempts_total = DELIVERY_ATTEMPTS_TOTAL
    delivery_interval_ms = DELIVERY_INTERVAL_MS
    memory_buffer_size = MEMORY_BUFFER_SIZE


metrics_registry = MetricsRegistry()
