"""
Acknowledgment Schemas.

Defines acknowledgment records, their history entries, request options and
aggregate statistics.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field

from acktracker.config import AckTimeoutConfig


# ── Enums ──────────────────────────────────────────────────────────────


class AckStatus(StrEnum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    ESCALATED = "escalated"
    EXPIRED = "expired"
    RESOLVED = "resolved"


class AckSourceType(StrEnum):
    """How an acknowledgment was made."""
    MANUAL = "manual"
    AUTO = "auto"
    API = "api"
    INTEGRATION = "integration"
    SCHEDULE = "schedule"


class AckAction(StrEnum):
    CREATED = "created"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    MANUAL_ESCALATE = "manual_escalate"
    TIMEOUT = "timeout"
    EXPIRED = "expired"
    UNACKNOWLEDGED = "unacknowledged"
    ACK_EXPIRED = "ack_expired"     # Acknowledgment validity window elapsed


# ── Records ────────────────────────────────────────────────────────────


class AckHistoryEntry(BaseModel):
    """One audited transition. Entries are ordered by ``sequence``."""
    sequence: int
    timestamp: datetime
    previous_status: AckStatus
    new_status: AckStatus
    action: AckAction
    performed_by: Optional[str] = None
    reason: Optional[str] = None


class AcknowledgmentRecord(BaseModel):
    """
    Tracking state for a single fired alert.

    Mutated only by the tracker; callers receive snapshots.
    """
    id: str
    alert_id: str
    incident_id: Optional[str] = None
    status: AckStatus = AckStatus.PENDING
    source_type: AckSourceType = AckSourceType.MANUAL

    # Acknowledgment
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    # Policy this record was created with
    config: AckTimeoutConfig = Field(default_factory=AckTimeoutConfig)

    # Counters (never decrease)
    escalation_level: int = 0
    timeout_count: int = 0

    history: list[AckHistoryEntry] = Field(default_factory=list)

    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in (AckStatus.EXPIRED, AckStatus.RESOLVED)

    def append_history(
        self,
        timestamp: datetime,
        previous_status: AckStatus,
        new_status: AckStatus,
        action: AckAction,
        performed_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> AckHistoryEntry:
        entry = AckHistoryEntry(
            sequence=len(self.history) + 1,
            timestamp=timestamp,
            previous_status=previous_status,
            new_status=new_status,
            action=action,
            performed_by=performed_by,
            reason=reason,
        )
        self.history.append(entry)
        self.updated_at = timestamp
        return entry


# ── Requests ───────────────────────────────────────────────────────────


class AckRequestOptions(BaseModel):
    """Options for an acknowledge call."""
    user_id: str
    message: Optional[str] = None
    duration_ms: Optional[int] = Field(
        default=None,
        gt=0,
        description="Validity window; the ack reverts to pending once it elapses",
    )
    metadata: Optional[dict[str, Any]] = None
    source_type: AckSourceType = AckSourceType.MANUAL


# ── Statistics ─────────────────────────────────────────────────────────


class AckStatistics(BaseModel):
    """
    Point-in-time gauges from the live record set plus cumulative counters.

    The ``*_count`` and ``pending_acks`` fields describe records that exist
    right now; the ``total_*`` fields count transitions since start-up.
    """
    total_acks: int = 0
    pending_acks: int = 0             # pending + escalated
    acknowledged_count: int = 0
    expired_count: int = 0
    escalated_count: int = 0
    resolved_count: int = 0

    total_created: int = 0
    total_acknowledged: int = 0
    total_expired: int = 0
    total_escalated: int = 0
    total_resolved: int = 0

    average_ack_time_ms: float = 0.0
    average_timeouts_before_ack: float = 0.0
