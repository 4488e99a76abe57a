"""
Pytest Configuration and Fixtures.

Provides a tracker wired to a manual clock and an in-memory event sink so
tests can advance time deterministically and inspect emitted events.
"""

from datetime import datetime, timezone

import pytest

from acktracker.clock import ManualClock
from acktracker.config import AckTimeoutConfig
from acktracker.events import InMemoryEventSink
from acktracker.schemas import AckRequestOptions
from acktracker.tracker import AcknowledgmentTracker


# ============================================================================
# TIME & EVENTS
# ============================================================================


@pytest.fixture
def clock() -> ManualClock:
    """Clock frozen at a fixed instant until advanced."""
    return ManualClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def sink() -> InMemoryEventSink:
    return InMemoryEventSink()


# ============================================================================
# TRACKER FIXTURES
# ============================================================================


@pytest.fixture
def timeout_config() -> AckTimeoutConfig:
    """Short, round timeouts: 1s initial, 4s escalation, 3 timeouts."""
    return AckTimeoutConfig(
        initial_timeout_ms=1000,
        max_timeouts=3,
        timeout_escalation_ms=4000,
        auto_resolve_on_timeout=False,
        notify_on_timeout=True,
        escalate_on_timeout=True,
    )


@pytest.fixture
def tracker(timeout_config, clock, sink) -> AcknowledgmentTracker:
    return AcknowledgmentTracker(config=timeout_config, clock=clock, sinks=[sink])


@pytest.fixture
def ack_options() -> AckRequestOptions:
    return AckRequestOptions(user_id="user_123", message="Looking into it")
