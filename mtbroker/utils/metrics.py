"""Prometheus metrics for Broker controller observability."""

from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

RECONCILIATION_TOTAL = Counter(
    "mtbroker_reconciliation_total",
    "Total reconciliation attempts",
    ["controller", "result"],
)

RECONCILIATION_DURATION = Histogram(
    "mtbroker_reconciliation_duration_seconds",
    "Time spent in reconciliation",
    ["controller"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

CHANNEL_WRITES = Counter(
    "mtbroker_channel_writes_total",
    "Writes issued against trigger channels",
    ["operation"],
)

STATUS_UPDATES = Counter(
    "mtbroker_status_updates_total",
    "Broker status write-backs",
    ["result"],
)


def start_metrics_server(port: int = 9090) -> None:
    """Start the Prometheus metrics HTTP server."""
    start_http_server(port)
