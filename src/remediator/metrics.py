"""Prometheus metrics for the remediation service.

Metrics Defined:
- remediator_webhooks_received_total: Counter of deliveries by type and outcome
- remediator_events_processed_total: Counter of processing attempts by result
- remediator_processing_duration_seconds: Histogram of attempt duration
- remediator_queue_events: Gauge of queued events by status

Exposed at the `/metrics` endpoint in Prometheus text format.
"""

from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from src.remediator.queue.models import QueueStats


# Covers a quick no-op run up to a long agent session
DEFAULT_DURATION_BUCKETS = (
    1.0,
    5.0,
    30.0,
    60.0,
    300.0,
    600.0,
    1800.0,
    3600.0,
    7200.0,
)

QUEUE_STATUSES = ("pending", "processing", "failed")


class RemediatorMetrics:
    """Container for the service's Prometheus metrics.

    Pass a fresh CollectorRegistry per instance in tests so that metrics
    from independent service instances never collide.

    Attributes:
        registry: The Prometheus registry for these metrics.
        webhooks_received_total: Deliveries by event_type and outcome.
        events_processed_total: Attempts by result
            (completed, retry, failed).
        processing_duration_seconds: Attempt duration.
        queue_events: Current queue counts by status.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.webhooks_received_total = Counter(
            "remediator_webhooks_received_total",
            "Webhook deliveries received, by event type and outcome",
            labelnames=["event_type", "outcome"],
            registry=self.registry,
        )

        self.events_processed_total = Counter(
            "remediator_events_processed_total",
            "Event processing attempts, by result",
            labelnames=["result"],
            registry=self.registry,
        )

        self.processing_duration_seconds = Histogram(
            "remediator_processing_duration_seconds",
            "Time spent processing one event attempt in seconds",
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.queue_events = Gauge(
            "remediator_queue_events",
            "Current number of queued events in each status",
            labelnames=["status"],
            registry=self.registry,
        )

        for status in QUEUE_STATUSES:
            self.queue_events.labels(status=status).set(0)

    def record_webhook(self, event_type: str, outcome: str) -> None:
        self.webhooks_received_total.labels(
            event_type=event_type or "unknown",
            outcome=outcome,
        ).inc()

    def record_attempt(self, result: str, duration_seconds: float) -> None:
        """Record one processing attempt.

        Args:
            result: completed, retry or failed.
            duration_seconds: Time the attempt took.
        """
        self.events_processed_total.labels(result=result).inc()
        self.processing_duration_seconds.observe(duration_seconds)

    def update_queue(self, stats: QueueStats) -> None:
        self.queue_events.labels(status="pending").set(stats.pending)
        self.queue_events.labels(status="processing").set(stats.processing)
        self.queue_events.labels(status="failed").set(stats.failed)

    def generate(self) -> bytes:
        return generate_latest(self.registry)
