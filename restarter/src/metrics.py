from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class RestarterMetrics:
    """Prometheus metrics exported by the restarter on ``/metrics``.

    Deletion counters carry a ``namespace`` label so operators can see which
    tenants are being refreshed and alert on repeated deletion failures.
    """

    passes_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_restarter_passes_total",
            "Total reconciliation passes started",
        )
    )
    pass_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_restarter_pass_failures_total",
            "Total passes aborted because workloads could not be listed",
        )
    )
    pass_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "kube_restarter_pass_duration_seconds",
            "Seconds spent in one reconciliation pass",
            buckets=(0.5, 1, 5, 10, 30, 60, 120, 300, 600, float("inf")),
        )
    )
    last_success_timestamp: Gauge = field(
        default_factory=lambda: Gauge(
            "kube_restarter_last_success_timestamp_seconds",
            "Unix timestamp of the last pass that completed",
        )
    )
    workloads_checked: Gauge = field(
        default_factory=lambda: Gauge(
            "kube_restarter_workloads_checked",
            "Number of enrolled deployments examined in the last pass",
        )
    )
    stale_containers_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_restarter_stale_containers_total",
            "Total containers found running an outdated image digest",
        )
    )
    pods_deleted_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_restarter_pods_deleted_total",
            "Total pods deleted so their image is pulled again",
            ["namespace"],
        )
    )
    delete_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_restarter_delete_errors_total",
            "Total failed pod deletions",
            ["namespace"],
        )
    )
    registry_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_restarter_registry_errors_total",
            "Total failed remote digest lookups",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "kube_restarter",
            "Build information for the restarter",
        )
    )


METRICS = RestarterMetrics()
