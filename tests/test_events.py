"""
Tests for event dispatch and the Prometheus metrics sink.
"""

from datetime import timedelta

import pytest
from prometheus_client import CollectorRegistry

from acktracker.events import (
    AckCreatedEvent,
    EventDispatcher,
    InMemoryEventSink,
)
from acktracker.metrics import MetricsEventSink
from acktracker.schemas import AckRequestOptions, AckSourceType, AckStatus


class FailingSink:
    """Sink that always raises."""

    def __init__(self):
        self.calls = 0

    async def publish(self, event):
        self.calls += 1
        raise RuntimeError("notification channel down")


# ============================================================================
# DISPATCH
# ============================================================================


class TestEventDispatcher:
    """Test fan-out to sinks."""

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_block_others(self, clock):
        dispatcher = EventDispatcher()
        failing = FailingSink()
        healthy = InMemoryEventSink()
        dispatcher.subscribe(failing)
        dispatcher.subscribe(healthy)

        event = AckCreatedEvent(
            record_id="ack_1", alert_id="a", timeout_at=clock.now(), occurred_at=clock.now()
        )
        await dispatcher.dispatch([event])

        assert failing.calls == 1
        assert healthy.events == [event]

    def test_unsubscribe(self):
        dispatcher = EventDispatcher()
        subscription_id = dispatcher.subscribe(InMemoryEventSink())

        assert dispatcher.subscriber_count == 1
        assert dispatcher.unsubscribe(subscription_id) is True
        assert dispatcher.unsubscribe(subscription_id) is False
        assert dispatcher.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_roll_back_transition(self, tracker):
        tracker.subscribe(FailingSink())

        await tracker.create_record("alert-1")
        record = await tracker.acknowledge("alert-1", AckRequestOptions(user_id="u1"))

        assert record.status == AckStatus.ACKNOWLEDGED
        assert tracker.get_by_alert_id("alert-1").status == AckStatus.ACKNOWLEDGED

    @pytest.mark.asyncio
    async def test_unsubscribed_sink_receives_nothing(self, tracker):
        late = InMemoryEventSink()
        subscription_id = tracker.subscribe(late)
        tracker.unsubscribe(subscription_id)

        await tracker.create_record("alert-1")

        assert late.events == []

    @pytest.mark.asyncio
    async def test_one_event_per_transition_in_order(self, tracker, sink, clock):
        await tracker.create_record("alert-1")
        clock.advance(ms=1000)
        await tracker.check_timeouts()
        await tracker.acknowledge("alert-1", AckRequestOptions(user_id="u1"))
        await tracker.unacknowledge("alert-1", "u1")
        await tracker.manual_escalate("alert-1", "lead")
        await tracker.resolve("alert-1")

        assert sink.names() == [
            "ack.created",
            "ack.timeout",
            "ack.acknowledged",
            "ack.unacknowledged",
            "ack.escalated",
            "ack.resolved",
        ]

    @pytest.mark.asyncio
    async def test_event_to_dict(self, tracker, sink, clock):
        record = await tracker.create_record("alert-1", incident_id="inc-1")

        payload = sink.events[0].to_dict()

        assert payload["name"] == "ack.created"
        assert payload["record_id"] == record.id
        assert payload["incident_id"] == "inc-1"
        assert payload["event_id"]
        assert isinstance(payload["timeout_at"], str)


# ============================================================================
# METRICS
# ============================================================================


class TestMetricsEventSink:
    """Test Prometheus metrics derived from events."""

    @pytest.fixture
    def registry(self):
        return CollectorRegistry()

    @pytest.fixture
    def metrics_tracker(self, tracker, registry):
        tracker.subscribe(MetricsEventSink(registry=registry))
        return tracker

    @pytest.mark.asyncio
    async def test_event_counter(self, metrics_tracker, registry):
        await metrics_tracker.create_record("a")
        await metrics_tracker.create_record("b")

        assert registry.get_sample_value(
            "acktracker_events_total", {"event": "ack.created"}
        ) == 2

    @pytest.mark.asyncio
    async def test_ack_latency_histogram(self, metrics_tracker, registry, clock):
        await metrics_tracker.create_record("a")
        clock.advance(seconds=20)
        await metrics_tracker.acknowledge(
            "a", AckRequestOptions(user_id="u1", source_type=AckSourceType.API)
        )

        labels = {"source_type": "api"}
        assert registry.get_sample_value("acktracker_ack_latency_seconds_count", labels) == 1
        assert registry.get_sample_value("acktracker_ack_latency_seconds_sum", labels) == pytest.approx(20)
        assert registry.get_sample_value(
            "acktracker_ack_latency_seconds_bucket", {**labels, "le": "30.0"}
        ) == 1

    @pytest.mark.asyncio
    async def test_escalation_metrics(self, metrics_tracker, registry, clock):
        await metrics_tracker.create_record("a")
        await metrics_tracker.manual_escalate("a", "lead")
        await metrics_tracker.manual_escalate("a", "lead")

        assert registry.get_sample_value("acktracker_escalations_total", {"trigger": "manual"}) == 2
        assert registry.get_sample_value("acktracker_max_escalation_level") == 2

    @pytest.mark.asyncio
    async def test_timeout_counter(self, metrics_tracker, registry, clock):
        await metrics_tracker.create_record("a")
        clock.advance(ms=1000)
        await metrics_tracker.check_timeouts()

        assert registry.get_sample_value("acktracker_timeouts_total") == 1

    @pytest.mark.asyncio
    async def test_export(self, registry, clock):
        metrics = MetricsEventSink(registry=registry, namespace="alerts")
        await metrics.publish(
            AckCreatedEvent(
                record_id="ack_1",
                alert_id="a",
                timeout_at=clock.now() + timedelta(seconds=1),
                occurred_at=clock.now(),
            )
        )

        assert b'alerts_events_total{event="ack.created"} 1.0' in metrics.export()

    def test_sinks_do_not_share_default_registry(self):
        first = MetricsEventSink()
        second = MetricsEventSink()

        assert first.registry is not second.registry
