"""
Statistics Aggregator: running counters updated as transitions commit.

Nothing here rescans history. Averages are streaming means (sum + count),
so memory stays constant no matter how many acknowledgments are observed.
"""

from dataclasses import dataclass

from acktracker.schemas import AckStatistics, AckStatus


@dataclass
class _RunningMean:
    total: float = 0.0
    count: int = 0

    def add(self, value: float) -> None:
        self.total += value
        self.count += 1

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0


class StatisticsAggregator:
    """Cumulative transition counters. Callers hold the tracker lock."""

    def __init__(self):
        self.total_created = 0
        self.total_acknowledged = 0
        self.total_expired = 0
        self.total_escalated = 0
        self.total_resolved = 0
        self._ack_time_ms = _RunningMean()
        self._timeouts_before_ack = _RunningMean()

    def record_created(self) -> None:
        self.total_created += 1

    def record_acknowledged(self, ack_time_ms: float, timeout_count: int) -> None:
        self.total_acknowledged += 1
        self._ack_time_ms.add(ack_time_ms)
        self._timeouts_before_ack.add(timeout_count)

    def record_escalated(self) -> None:
        self.total_escalated += 1

    def record_expired(self) -> None:
        self.total_expired += 1

    def record_resolved(self) -> None:
        self.total_resolved += 1

    @property
    def average_ack_time_ms(self) -> float:
        return self._ack_time_ms.mean

    @property
    def average_timeouts_before_ack(self) -> float:
        return self._timeouts_before_ack.mean

    def snapshot(self, status_counts: dict[AckStatus, int]) -> AckStatistics:
        """Combine the cumulative counters with point-in-time status gauges."""
        pending = status_counts.get(AckStatus.PENDING, 0)
        escalated = status_counts.get(AckStatus.ESCALATED, 0)
        return AckStatistics(
            total_acks=self.total_created,
            pending_acks=pending + escalated,
            acknowledged_count=status_counts.get(AckStatus.ACKNOWLEDGED, 0),
            expired_count=status_counts.get(AckStatus.EXPIRED, 0),
            escalated_count=escalated,
            resolved_count=status_counts.get(AckStatus.RESOLVED, 0),
            total_created=self.total_created,
            total_acknowledged=self.total_acknowledged,
            total_expired=self.total_expired,
            total_escalated=self.total_escalated,
            total_resolved=self.total_resolved,
            average_ack_time_ms=self.average_ack_time_ms,
            average_timeouts_before_ack=self.average_timeouts_before_ack,
        )
