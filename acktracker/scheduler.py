"""
Timeout Scheduler: tracks the next deadline of every outstanding record.

Deadlines live in a map (record id → absolute deadline), which is the
source of truth, mirrored by a min-heap ordered by deadline so a sweep only
touches records that are actually due. Re-arming or cancelling leaves the
old heap entry behind; stale entries are skipped when popped and the heap is
compacted once they dominate it.
"""

import heapq
import itertools
from datetime import datetime, timedelta
from typing import Optional

import structlog

from acktracker.config import AckTimeoutConfig

logger = structlog.get_logger(__name__)

BACKOFF_FACTOR = 1.5


def next_timeout_delay_ms(config: AckTimeoutConfig, timeout_count: int) -> float:
    """
    Exponential backoff between successive timeouts of the same record.

    delay = min(initial_timeout_ms * 1.5 ** timeout_count, timeout_escalation_ms)
    """
    calculated = config.initial_timeout_ms * (BACKOFF_FACTOR ** timeout_count)
    return min(calculated, config.timeout_escalation_ms)


def deadline_after(now: datetime, delay_ms: float) -> datetime:
    return now + timedelta(milliseconds=delay_ms)


class TimeoutScheduler:
    """At most one deadline per record."""

    def __init__(self, compaction_slack: int = 64):
        self._deadlines: dict[str, datetime] = {}
        self._heap: list[tuple[datetime, int, str]] = []
        self._seq = itertools.count()
        self._compaction_slack = compaction_slack

    def __len__(self) -> int:
        return len(self._deadlines)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._deadlines

    def arm(self, record_id: str, deadline: datetime) -> None:
        """Set (or replace) the record's deadline."""
        self._deadlines[record_id] = deadline
        heapq.heappush(self._heap, (deadline, next(self._seq), record_id))
        self._maybe_compact()

    def cancel(self, record_id: str) -> bool:
        """Clear the record's deadline. Returns whether one was armed."""
        return self._deadlines.pop(record_id, None) is not None

    def deadline_for(self, record_id: str) -> Optional[datetime]:
        return self._deadlines.get(record_id)

    def is_elapsed(self, record_id: str, now: datetime) -> bool:
        deadline = self._deadlines.get(record_id)
        return deadline is not None and deadline <= now

    def next_deadline(self) -> Optional[datetime]:
        """Earliest armed deadline, if any."""
        while self._heap:
            deadline, _, record_id = self._heap[0]
            if self._deadlines.get(record_id) == deadline:
                return deadline
            heapq.heappop(self._heap)
        return None

    def pop_due(self, now: datetime) -> list[str]:
        """
        Return ids of records whose deadline is at or before ``now``.

        The deadlines stay armed; the caller is expected to re-arm or cancel
        each one while processing it.
        """
        due: list[str] = []
        seen: set[str] = set()
        while self._heap and self._heap[0][0] <= now:
            deadline, _, record_id = heapq.heappop(self._heap)
            if record_id in seen:
                continue
            if self._deadlines.get(record_id) != deadline:
                continue  # stale: re-armed or cancelled since
            seen.add(record_id)
            due.append(record_id)
        return due

    def restore(self, record_ids: list[str]) -> None:
        """
        Put ids returned by ``pop_due`` back on the heap.

        Used when a sweep stops before processing them; ids whose deadline
        was cancelled in the meantime are skipped.
        """
        for record_id in record_ids:
            deadline = self._deadlines.get(record_id)
            if deadline is not None:
                heapq.heappush(self._heap, (deadline, next(self._seq), record_id))

    def clear(self) -> None:
        self._deadlines.clear()
        self._heap.clear()

    def _maybe_compact(self) -> None:
        if len(self._heap) <= 2 * len(self._deadlines) + self._compaction_slack:
            return
        self._heap = [
            (deadline, next(self._seq), record_id)
            for record_id, deadline in self._deadlines.items()
        ]
        heapq.heapify(self._heap)
        logger.debug("timeout_heap_compacted", size=len(self._heap))
