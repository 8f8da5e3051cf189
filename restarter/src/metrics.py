from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the restarter on ``/metrics``.

    Reconcile counters are labelled by decision and outcome so operators can
    alert on restart rates and on passes that keep failing independently.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "sidecar_restarter_reconcile_total",
            "Total reconcile passes by terminal decision and outcome",
            ["decision", "outcome"],
        )
    )
    step_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "sidecar_restarter_step_errors_total",
            "Total reconcile pass failures by pipeline step and error kind",
            ["step", "kind"],
        )
    )
    restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "sidecar_restarter_restarts_total",
            "Total rolling restarts triggered for sidecar drift",
            ["kind"],
        )
    )
    patch_conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "sidecar_restarter_patch_conflicts_total",
            "Total optimistic-concurrency conflicts on restart patches",
        )
    )
    webhook_requests_total: Counter = field(
        default_factory=lambda: Counter(
            "sidecar_restarter_webhook_requests_total",
            "Total injection webhook dry-run calls by outcome",
            ["outcome"],
        )
    )
    webhook_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "sidecar_restarter_webhook_latency_seconds",
            "Injection webhook dry-run latency",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
        )
    )
    webhook_cache_total: Counter = field(
        default_factory=lambda: Counter(
            "sidecar_restarter_webhook_cache_total",
            "Desired-image cache lookups by result",
            ["result"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "sidecar_restarter_queue_depth",
            "Current number of workloads waiting for a reconcile pass",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "sidecar_restarter_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "sidecar_restarter_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "sidecar_restarter",
            "Build information for the restarter",
        )
    )


METRICS = ControllerMetrics()
