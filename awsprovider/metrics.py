"""Prometheus metrics exported on the metrics address."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

REGISTRY = CollectorRegistry(auto_describe=True)

RECONCILE_TOTAL = Counter(
    "awsprovider_reconcile_total",
    "Total number of reconciliations per controller",
    ["controller", "result"],
    registry=REGISTRY,
)

RECONCILE_ERRORS = Counter(
    "awsprovider_reconcile_errors_total",
    "Total number of reconciliation errors per controller",
    ["controller"],
    registry=REGISTRY,
)

RECONCILE_TIME = Histogram(
    "awsprovider_reconcile_time_seconds",
    "Length of time per reconciliation per controller",
    ["controller"],
    registry=REGISTRY,
)

WORKQUEUE_DEPTH = Gauge(
    "awsprovider_workqueue_depth",
    "Current depth of the work queue",
    ["controller"],
    registry=REGISTRY,
)

AWS_REQUESTS = Counter(
    "awsprovider_aws_requests_total",
    "EC2 API requests issued",
    ["operation"],
    registry=REGISTRY,
)
