"""
Acknowledgment & Escalation Tracker.

Components:
- tracker: state machine engine (create, acknowledge, escalate, resolve, timeouts)
- scheduler: deadline bookkeeping and exponential backoff
- store: in-memory records with the alert → record index
- statistics: cumulative counters and streaming averages
- events: typed transition events and sink plumbing
- metrics: Prometheus event sink
- config: timeout policy and environment settings
"""

from acktracker.clock import Clock, ManualClock, SystemClock
from acktracker.config import AckTimeoutConfig, Settings, build_timeout_config, get_settings
from acktracker.events import (
    AckAcknowledgedEvent,
    AckCreatedEvent,
    AckEscalatedEvent,
    AckEvent,
    AckEventName,
    AckEventSink,
    AckExpiredEvent,
    AckResolvedEvent,
    AckTimeoutEvent,
    AckUnacknowledgedEvent,
    EventDispatcher,
    InMemoryEventSink,
)
from acktracker.exceptions import (
    AckTrackerError,
    DuplicateTrackingError,
    ErrorCode,
    IllegalTransitionError,
    InvalidConfigError,
    NotFoundError,
)
from acktracker.metrics import MetricsEventSink
from acktracker.observability import configure_logging
from acktracker.schemas import (
    AckAction,
    AckHistoryEntry,
    AckRequestOptions,
    AckSourceType,
    AckStatistics,
    AckStatus,
    AcknowledgmentRecord,
)
from acktracker.tracker import AcknowledgmentTracker, get_tracker

__all__ = [
    # Engine
    "AcknowledgmentTracker",
    "get_tracker",
    # Schemas
    "AckAction",
    "AckHistoryEntry",
    "AckRequestOptions",
    "AckSourceType",
    "AckStatistics",
    "AckStatus",
    "AcknowledgmentRecord",
    # Config
    "AckTimeoutConfig",
    "Settings",
    "build_timeout_config",
    "get_settings",
    # Time
    "Clock",
    "ManualClock",
    "SystemClock",
    # Events
    "AckAcknowledgedEvent",
    "AckCreatedEvent",
    "AckEscalatedEvent",
    "AckEvent",
    "AckEventName",
    "AckEventSink",
    "AckExpiredEvent",
    "AckResolvedEvent",
    "AckTimeoutEvent",
    "AckUnacknowledgedEvent",
    "EventDispatcher",
    "InMemoryEventSink",
    "MetricsEventSink",
    # Errors
    "AckTrackerError",
    "DuplicateTrackingError",
    "ErrorCode",
    "IllegalTransitionError",
    "InvalidConfigError",
    "NotFoundError",
    # Logging
    "configure_logging",
]
