from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Per-cycle counters carry an ``outcome`` or ``stage`` label so alerts can
    separate "Jenkins still starting" requeues from genuine failures.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "jenkins_operator_reconcile_total",
            "Total reconcile cycles by outcome",
            ["outcome"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "jenkins_operator_reconcile_errors_total",
            "Total reconcile cycles aborted by an error, by failing stage",
            ["stage"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "jenkins_operator_reconcile_duration_seconds",
            "Seconds spent in one reconcile cycle",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
        )
    )
    restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "jenkins_operator_master_restarts_total",
            "Total Jenkins master restarts requested, by source",
            ["source"],
        )
    )
    scripts_applied_total: Counter = field(
        default_factory=lambda: Counter(
            "jenkins_operator_scripts_applied_total",
            "Total configuration scripts executed successfully",
        )
    )
    scripts_failed_total: Counter = field(
        default_factory=lambda: Counter(
            "jenkins_operator_scripts_failed_total",
            "Total configuration script executions that failed",
        )
    )
    role_bindings_deleted_total: Counter = field(
        default_factory=lambda: Counter(
            "jenkins_operator_role_bindings_deleted_total",
            "Total extra role bindings removed because they left the desired set",
        )
    )
    notifications_total: Counter = field(
        default_factory=lambda: Counter(
            "jenkins_operator_notifications_total",
            "Total notification deliveries by channel kind and outcome",
            ["kind", "outcome"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "jenkins_operator_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "jenkins_operator_work_queue_depth",
            "Current number of reconcile keys waiting in the work queue",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "jenkins_operator",
            "Build information for the operator",
        )
    )


METRICS = OperatorMetrics()
