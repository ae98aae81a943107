"""Prometheus metrics for the remediation queue, admission and incident engines.

Each :class:`MetricsRegistry` owns its own ``CollectorRegistry``. The service
wiring creates one and passes it to the engines that record into it, so tests
can use an isolated registry each.
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# Sample names as they appear in the exposition
RUNS_TOTAL = "fleetguard_remediation_runs_total"
RETRIES_TOTAL = "fleetguard_remediation_retries_total"
DLQ_TOTAL = "fleetguard_remediation_dlq_total"
ROLLBACKS_TOTAL = "fleetguard_remediation_rollbacks_total"
REPLAYS_TOTAL = "fleetguard_remediation_replays_total"
EXPIRED_TOTAL = "fleetguard_remediation_expired_total"
ADMISSION_REJECTIONS_TOTAL = "fleetguard_admission_rejections_total"
ADMISSIONS_TOTAL = "fleetguard_admissions_total"
RUN_SECONDS = "fleetguard_remediation_run_seconds"
QUEUE_DEPTH = "fleetguard_remediation_queue_depth"
DRAIN_PROCESSED = "fleetguard_drain_processed"
ESCALATIONS_TOTAL = "fleetguard_incident_escalations_total"
INCIDENT_TRANSITIONS_TOTAL = "fleetguard_incident_transitions_total"

RUN_SECONDS_BUCKETS = (0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0)


class MetricsRegistry:
    """The engine's metric families, registered on a private ``CollectorRegistry``."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        r = self.registry

        # Remediation queue
        self.runs_total = Counter(
            RUNS_TOTAL, "Remediation runs finished by a drain, by resulting state",
            labelnames=["state"], registry=r,
        )
        self.retries_total = Counter(
            RETRIES_TOTAL, "Failed attempts rescheduled for retry", registry=r
        )
        self.dlq_total = Counter(DLQ_TOTAL, "Runs moved to the dead-letter queue", registry=r)
        self.rollbacks_total = Counter(
            ROLLBACKS_TOTAL, "Rollbacks executed after a failed canary check",
            labelnames=["result"], registry=r,
        )
        self.replays_total = Counter(
            REPLAYS_TOTAL, "Dead-lettered runs replayed into the queue", registry=r
        )
        self.expired_total = Counter(
            EXPIRED_TOTAL, "Queued runs canceled after exceeding the queue TTL", registry=r
        )
        self.run_seconds = Histogram(
            RUN_SECONDS, "Wall-clock seconds spent processing one run",
            buckets=RUN_SECONDS_BUCKETS, registry=r,
        )
        self.queue_depth = Gauge(
            QUEUE_DEPTH, "Queued execute-runs after the last drain", registry=r
        )
        self.drain_processed = Gauge(
            DRAIN_PROCESSED, "Runs processed by the last drain", registry=r
        )

        # Admission
        self.admissions_total = Counter(
            ADMISSIONS_TOTAL, "Runs admitted to the queue", labelnames=["kind"], registry=r
        )
        self.admission_rejections_total = Counter(
            ADMISSION_REJECTIONS_TOTAL, "Admission requests rejected, by reason",
            labelnames=["reason"], registry=r,
        )

        # Incidents
        self.escalations_total = Counter(
            ESCALATIONS_TOTAL, "Incident escalations triggered by the sweep",
            labelnames=["severity"], registry=r,
        )
        self.incident_transitions_total = Counter(
            INCIDENT_TRANSITIONS_TOTAL, "Incident state transitions, by action",
            labelnames=["action"], registry=r,
        )

    def sample(self, name: str, labels: dict[str, str] | None = None) -> float:
        """Current value of one exposed sample, 0 when it has not been observed yet."""
        value = self.registry.get_sample_value(name, labels or {})
        return value if value is not None else 0.0

    def render(self) -> tuple[bytes, str]:
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
