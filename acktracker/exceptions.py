"""
Custom exceptions for the acknowledgment tracker.

Provides structured error handling with recovery hints, error codes and the
HTTP status an enclosing service should map each error to.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """Standard error codes for the tracker."""
    # General errors (1xxx)
    UNKNOWN_ERROR = "E1000"
    INVALID_CONFIG = "E1002"

    # Record errors (2xxx)
    NOT_FOUND = "E2000"
    ILLEGAL_TRANSITION = "E2001"
    DUPLICATE_TRACKING = "E2002"


@dataclass
class RecoveryHint:
    """A hint for recovering from an error."""
    action: str
    description: str
    requires_human: bool = False


class AckTrackerError(Exception):
    """
    Base exception for the tracker.

    All tracker exceptions inherit from this class so that callers (and
    bulk operations) can capture domain failures with a single clause.
    """

    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        recovery_hint: Optional[RecoveryHint] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.recovery_hint = recovery_hint
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        result = {
            "error_code": self.error_code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }

        if self.recovery_hint:
            result["recovery"] = {
                "action": self.recovery_hint.action,
                "description": self.recovery_hint.description,
            }

        return result

    def __str__(self) -> str:
        return f"[{self.error_code.value}] {self.message}"


class NotFoundError(AckTrackerError):
    """Raised when no record is tracked for the given alert or record id."""

    http_status = 404

    def __init__(self, message: str, alert_id: Optional[str] = None, record_id: Optional[str] = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.NOT_FOUND,
            recovery_hint=RecoveryHint(
                action="verify_id",
                description="Verify the alert is being tracked",
            ),
        )
        self.alert_id = alert_id
        self.record_id = record_id


class IllegalTransitionError(AckTrackerError):
    """Raised when an operation is not valid from the record's current status."""

    http_status = 409

    def __init__(self, message: str, current_status: Any = None, operation: str = ""):
        super().__init__(
            message=message,
            error_code=ErrorCode.ILLEGAL_TRANSITION,
            recovery_hint=RecoveryHint(
                action="refresh_state",
                description="Reload the record and retry with an operation valid for its status",
            ),
        )
        self.current_status = current_status
        self.operation = operation


class DuplicateTrackingError(AckTrackerError):
    """Raised when creating a record for an alert that is already actively tracked."""

    http_status = 409

    def __init__(self, message: str, alert_id: str = "", existing_record_id: str = ""):
        super().__init__(
            message=message,
            error_code=ErrorCode.DUPLICATE_TRACKING,
            recovery_hint=RecoveryHint(
                action="use_existing",
                description="Operate on the existing record or resolve it first",
            ),
        )
        self.alert_id = alert_id
        self.existing_record_id = existing_record_id


class InvalidConfigError(AckTrackerError):
    """Raised when timeout configuration values are out of range."""

    http_status = 400

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_CONFIG,
            recovery_hint=RecoveryHint(
                action="check_config",
                description="Review timeout configuration settings",
                requires_human=True,
            ),
        )
        self.errors = errors or []
