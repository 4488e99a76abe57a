"""
Legal status transitions for acknowledgment records.

Expired and resolved are terminal: a new record must be created to track
the same alert again.
"""

from acktracker.exceptions import IllegalTransitionError
from acktracker.schemas import AckStatus, AcknowledgmentRecord

TERMINAL_STATUSES: frozenset[AckStatus] = frozenset({AckStatus.EXPIRED, AckStatus.RESOLVED})

# Statuses whose deadline means "nobody has responded yet"
OUTSTANDING_STATUSES: frozenset[AckStatus] = frozenset({AckStatus.PENDING, AckStatus.ESCALATED})

LEGAL_TRANSITIONS: dict[AckStatus, frozenset[AckStatus]] = {
    AckStatus.PENDING: frozenset({
        AckStatus.PENDING,          # timeout with retries remaining
        AckStatus.ACKNOWLEDGED,
        AckStatus.ESCALATED,
        AckStatus.EXPIRED,
        AckStatus.RESOLVED,
    }),
    AckStatus.ESCALATED: frozenset({
        AckStatus.ESCALATED,        # re-escalation, level + 1
        AckStatus.ACKNOWLEDGED,
        AckStatus.EXPIRED,
        AckStatus.RESOLVED,
    }),
    AckStatus.ACKNOWLEDGED: frozenset({
        AckStatus.PENDING,          # unacknowledge / ack window elapsed
        AckStatus.ESCALATED,        # manual escalation only
        AckStatus.RESOLVED,
    }),
    AckStatus.EXPIRED: frozenset(),
    AckStatus.RESOLVED: frozenset(),
}


def is_terminal(status: AckStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: AckStatus, target: AckStatus) -> bool:
    return target in LEGAL_TRANSITIONS.get(current, frozenset())


def ensure_transition(record: AcknowledgmentRecord, target: AckStatus, operation: str) -> None:
    """
    Raise if ``record`` may not move to ``target``.

    Raises:
        IllegalTransitionError: naming the operation and current status
    """
    if not can_transition(record.status, target):
        raise _illegal(record, operation)


def require_status(
    record: AcknowledgmentRecord,
    allowed: frozenset[AckStatus],
    operation: str,
) -> None:
    """Raise unless the record is currently in one of ``allowed``."""
    if record.status not in allowed:
        raise _illegal(record, operation)


def _illegal(record: AcknowledgmentRecord, operation: str) -> IllegalTransitionError:
    return IllegalTransitionError(
        f"Cannot {operation} alert {record.alert_id} in status: {record.status.value}",
        current_status=record.status,
        operation=operation,
    )
