"""Prometheus metrics definitions for storeproxy.

Custom metrics use the ``storeproxy_`` prefix. HTTP-level metrics (request
count, duration, sizes) come from ``prometheus-fastapi-instrumentator``,
registered under the same namespace by the server.

Metrics are process-global and only created when ``observability.metrics``
is enabled; until then every reference below stays ``None`` and the
recording helpers do nothing.
"""

from __future__ import annotations

from prometheus_client import Counter

_initialized: bool = False

# Object operations (labels: operation, status)
operations_total: Counter | None = None

# Body bytes
bytes_received_total: Counter | None = None
bytes_sent_total: Counter | None = None


def init_metrics() -> None:
    """Create and register all storeproxy metrics (idempotent)."""
    global _initialized
    global operations_total, bytes_received_total, bytes_sent_total

    if _initialized:
        return

    operations_total = Counter(
        "storeproxy_operations_total",
        "Object operations by type and outcome",
        ["operation", "status"],
    )

    bytes_received_total = Counter(
        "storeproxy_bytes_received_total",
        "Total bytes received in request bodies",
    )

    bytes_sent_total = Counter(
        "storeproxy_bytes_sent_total",
        "Total bytes sent in response bodies",
    )

    _initialized = True


def record_operation(operation: str, status: int) -> None:
    """Count one finished object operation."""
    if operations_total is not None:
        operations_total.labels(operation=operation, status=str(status)).inc()


def record_bytes(received: int, sent: int) -> None:
    """Add request/response body sizes to the byte counters."""
    if received > 0 and bytes_received_total is not None:
        bytes_received_total.inc(received)
    if sent > 0 and bytes_sent_total is not None:
        bytes_sent_total.inc(sent)
