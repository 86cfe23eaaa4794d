"""Prometheus metrics instrumentation."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

REGISTRY = CollectorRegistry()

EVALUATIONS = Counter(
    "ccp_evaluations_total",
    "Evaluation cycles by resulting action",
    labelnames=("action",),
    registry=REGISTRY,
)

SNAPSHOTS = Counter(
    "ccp_snapshots_total",
    "Snapshots written",
    labelnames=("reason",),
    registry=REGISTRY,
)

SNAPSHOT_FAILURES = Counter(
    "ccp_snapshot_failures_total",
    "Snapshots that could not be written",
    registry=REGISTRY,
)

LOG_FAILURES = Counter(
    "ccp_log_failures_total",
    "Log records that could not be written to the log file",
    registry=REGISTRY,
)

TARGET_SIZE = Gauge(
    "ccp_target_size_bytes",
    "Size of the protected file at the last evaluation",
    registry=REGISTRY,
)


def serve_metrics(port: int, addr: str = "127.0.0.1") -> None:
    """Expose the registry over HTTP on a background thread."""
    start_http_server(port, addr=addr, registry=REGISTRY)


__all__ = [
    "REGISTRY",
    "EVALUATIONS",
    "SNAPSHOTS",
    "SNAPSHOT_FAILURES",
    "LOG_FAILURES",
    "TARGET_SIZE",
    "serve_metrics",
]
