"""
Record Store: in-memory keyed collection of acknowledgment records.

Owns the record table (record id → record) and the secondary index
(alert id → record id). Both are only mutated here, so the two can never
disagree: every indexed id has a record and every record is indexed.
"""

from typing import Iterator, Optional

import structlog

from acktracker.exceptions import DuplicateTrackingError, NotFoundError
from acktracker.schemas import AckStatus, AcknowledgmentRecord

logger = structlog.get_logger(__name__)


class RecordStore:
    """Keyed record table plus alert index. Not thread-safe on its own."""

    def __init__(self):
        self._records: dict[str, AcknowledgmentRecord] = {}
        self._alert_index: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[AcknowledgmentRecord]:
        return iter(list(self._records.values()))

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def add(self, record: AcknowledgmentRecord) -> Optional[AcknowledgmentRecord]:
        """
        Insert a new record and index it by alert id.

        A terminal record already indexed for the same alert is superseded
        and returned so the caller can release anything tied to it.

        Raises:
            DuplicateTrackingError: if the alert already has an active record
        """
        superseded = None
        existing = self.get_by_alert_id(record.alert_id)
        if existing is not None:
            if not existing.is_terminal:
                raise DuplicateTrackingError(
                    f"Alert {record.alert_id} is already tracked by record {existing.id}",
                    alert_id=record.alert_id,
                    existing_record_id=existing.id,
                )
            superseded = self._remove(existing)
            logger.debug(
                "ack_record_superseded",
                alert_id=record.alert_id,
                old_record_id=existing.id,
                new_record_id=record.id,
            )

        self._records[record.id] = record
        self._alert_index[record.alert_id] = record.id
        return superseded

    def get(self, record_id: str) -> Optional[AcknowledgmentRecord]:
        return self._records.get(record_id)

    def get_by_alert_id(self, alert_id: str) -> Optional[AcknowledgmentRecord]:
        record_id = self._alert_index.get(alert_id)
        if record_id is None:
            return None
        return self._records.get(record_id)

    def require_by_alert_id(self, alert_id: str) -> AcknowledgmentRecord:
        """
        Raises:
            NotFoundError: if no record is tracked for the alert
        """
        record = self.get_by_alert_id(alert_id)
        if record is None:
            raise NotFoundError(
                f"No acknowledgment record found for alert: {alert_id}",
                alert_id=alert_id,
            )
        return record

    def require(self, record_id: str) -> AcknowledgmentRecord:
        """
        Raises:
            NotFoundError: if the record id is unknown
        """
        record = self._records.get(record_id)
        if record is None:
            raise NotFoundError(
                f"Acknowledgment record not found: {record_id}",
                record_id=record_id,
            )
        return record

    def remove_by_alert_id(self, alert_id: str) -> Optional[AcknowledgmentRecord]:
        record = self.get_by_alert_id(alert_id)
        if record is None:
            # Drop a dangling index entry if one exists
            self._alert_index.pop(alert_id, None)
            return None
        return self._remove(record)

    def remove(self, record_id: str) -> Optional[AcknowledgmentRecord]:
        record = self._records.get(record_id)
        if record is None:
            return None
        return self._remove(record)

    def by_status(self, *statuses: AckStatus) -> list[AcknowledgmentRecord]:
        wanted = set(statuses)
        return [r for r in self._records.values() if r.status in wanted]

    def status_counts(self) -> dict[AckStatus, int]:
        counts = {status: 0 for status in AckStatus}
        for record in self._records.values():
            counts[record.status] += 1
        return counts

    def _remove(self, record: AcknowledgmentRecord) -> AcknowledgmentRecord:
        self._records.pop(record.id, None)
        if self._alert_index.get(record.alert_id) == record.id:
            del self._alert_index[record.alert_id]
        return record
