"""
Prometheus metrics for acknowledgment tracking.

``MetricsEventSink`` subscribes to the tracker like any other consumer and
turns events into counters and histograms; the tracker itself never touches
prometheus_client.
"""

from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
import structlog

from acktracker.events import (
    AckAcknowledgedEvent,
    AckEscalatedEvent,
    AckEvent,
    AckTimeoutEvent,
)

logger = structlog.get_logger(__name__)

ACK_LATENCY_BUCKETS = (5, 15, 30, 60, 120, 300, 600, 1200, 1800, 3600, 7200)


class MetricsEventSink:
    """
    Event sink recording tracker activity as Prometheus metrics.

    Each sink owns its metrics, registered on ``registry`` (a private
    CollectorRegistry unless one is given) so several trackers or test
    cases never collide on metric names.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "acktracker"):
        self.registry = registry or CollectorRegistry(auto_describe=True)

        self.events_total = Counter(
            f"{namespace}_events_total",
            "Committed acknowledgment transitions by event name",
            ["event"],
            registry=self.registry,
        )
        self.ack_latency_seconds = Histogram(
            f"{namespace}_ack_latency_seconds",
            "Time from record creation to acknowledgment",
            ["source_type"],
            buckets=ACK_LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.escalations_total = Counter(
            f"{namespace}_escalations_total",
            "Escalations by trigger",
            ["trigger"],
            registry=self.registry,
        )
        self.max_escalation_level = Gauge(
            f"{namespace}_max_escalation_level",
            "Highest escalation level reached by any record",
            registry=self.registry,
        )
        self.timeouts_total = Counter(
            f"{namespace}_timeouts_total",
            "Elapsed acknowledgment deadlines that were notified",
            registry=self.registry,
        )
        self._max_level = 0

    async def publish(self, event: AckEvent) -> None:
        self.events_total.labels(event=event.name.value).inc()

        if isinstance(event, AckAcknowledgedEvent):
            self.ack_latency_seconds.labels(
                source_type=event.source_type.value,
            ).observe(event.ack_time_ms / 1000.0)
        elif isinstance(event, AckEscalatedEvent):
            self.escalations_total.labels(
                trigger="manual" if event.manual else "timeout",
            ).inc()
            if event.escalation_level > self._max_level:
                self._max_level = event.escalation_level
                self.max_escalation_level.set(event.escalation_level)
        elif isinstance(event, AckTimeoutEvent):
            self.timeouts_total.inc()

    def export(self) -> bytes:
        """Render the sink's metrics in Prometheus exposition format."""
        return generate_latest(self.registry)
