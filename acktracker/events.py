"""
Typed events emitted after every committed transition.

Each event is a pydantic model tagged by ``name``; consumers implement
``AckEventSink`` and receive events through the ``EventDispatcher``.
Delivery is best effort: a failing sink is logged and skipped, never
retried, and never rolls back the transition that produced the event.
"""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal, Optional, Protocol, Union

import structlog
from pydantic import BaseModel, Field

from acktracker.schemas import AckSourceType

logger = structlog.get_logger(__name__)


class AckEventName(StrEnum):
    CREATED = "ack.created"
    ACKNOWLEDGED = "ack.acknowledged"
    RESOLVED = "ack.resolved"
    ESCALATED = "ack.escalated"
    TIMEOUT = "ack.timeout"
    EXPIRED = "ack.expired"
    UNACKNOWLEDGED = "ack.unacknowledged"


# ── Event payloads ─────────────────────────────────────────────────────


class AckEvent(BaseModel):
    """Fields shared by every tracker event."""
    name: AckEventName
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    record_id: str
    alert_id: str
    occurred_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class AckCreatedEvent(AckEvent):
    name: Literal[AckEventName.CREATED] = AckEventName.CREATED
    incident_id: Optional[str] = None
    timeout_at: datetime


class AckAcknowledgedEvent(AckEvent):
    name: Literal[AckEventName.ACKNOWLEDGED] = AckEventName.ACKNOWLEDGED
    acknowledged_by: str
    ack_time_ms: float
    timeout_count: int
    escalation_level: int
    source_type: AckSourceType
    expires_at: Optional[datetime] = None


class AckResolvedEvent(AckEvent):
    name: Literal[AckEventName.RESOLVED] = AckEventName.RESOLVED
    resolved_by: Optional[str] = None
    reason: Optional[str] = None


class AckEscalatedEvent(AckEvent):
    name: Literal[AckEventName.ESCALATED] = AckEventName.ESCALATED
    incident_id: Optional[str] = None
    escalation_level: int
    timeout_count: int
    manual: bool = False
    escalated_by: Optional[str] = None


class AckTimeoutEvent(AckEvent):
    name: Literal[AckEventName.TIMEOUT] = AckEventName.TIMEOUT
    timeout_count: int
    max_timeouts: int
    next_timeout_at: datetime


class AckExpiredEvent(AckEvent):
    name: Literal[AckEventName.EXPIRED] = AckEventName.EXPIRED
    timeout_count: int


class AckUnacknowledgedEvent(AckEvent):
    name: Literal[AckEventName.UNACKNOWLEDGED] = AckEventName.UNACKNOWLEDGED
    unacknowledged_by: Optional[str] = None
    reason: Optional[str] = None
    automatic: bool = False     # True when the ack validity window elapsed


AnyAckEvent = Annotated[
    Union[
        AckCreatedEvent,
        AckAcknowledgedEvent,
        AckResolvedEvent,
        AckEscalatedEvent,
        AckTimeoutEvent,
        AckExpiredEvent,
        AckUnacknowledgedEvent,
    ],
    Field(discriminator="name"),
]


# ── Sinks ──────────────────────────────────────────────────────────────


class AckEventSink(Protocol):
    """Protocol for event consumers (notifiers, metrics pipelines, audit logs)."""

    async def publish(self, event: AckEvent) -> None: ...


class InMemoryEventSink:
    """Collects events in order. Useful in development and tests."""

    def __init__(self):
        self.events: list[AckEvent] = []

    async def publish(self, event: AckEvent) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [e.name.value for e in self.events]

    def of_type(self, name: AckEventName) -> list[AckEvent]:
        return [e for e in self.events if e.name == name]


class EventDispatcher:
    """Fans events out to every subscribed sink, in subscription order."""

    def __init__(self):
        self._sinks: dict[str, AckEventSink] = {}

    def subscribe(self, sink: AckEventSink) -> str:
        """Register a sink. Returns a subscription id for ``unsubscribe``."""
        subscription_id = str(uuid.uuid4())
        self._sinks[subscription_id] = sink
        logger.debug(
            "ack_event_sink_subscribed",
            subscription_id=subscription_id,
            sink=type(sink).__name__,
        )
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._sinks.pop(subscription_id, None) is not None

    @property
    def subscriber_count(self) -> int:
        return len(self._sinks)

    async def dispatch(self, events: list[AckEvent]) -> None:
        for event in events:
            for subscription_id, sink in list(self._sinks.items()):
                try:
                    await sink.publish(event)
                except Exception as e:
                    logger.error(
                        "ack_event_delivery_failed",
                        event_name=event.name.value,
                        record_id=event.record_id,
                        subscription_id=subscription_id,
                        error=str(e),
                    )
