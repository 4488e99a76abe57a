"""
Acknowledgment Tracker: the state machine at the heart of alert follow-up.

Tracks whether someone has acknowledged a fired alert, drives timeout and
escalation when nobody responds, and keeps an auditable history.

Flow:
1. create_record() arms a deadline at now + initial_timeout_ms
2. acknowledge() clears it (or arms the ack validity window)
3. otherwise the sweep finds the elapsed deadline and applies timeout
   processing: exponential backoff, then escalation or expiry
4. every committed transition appends history, updates statistics and
   emits one typed event to the subscribed sinks

All mutations run under one asyncio.Lock and never await between
validation and commit, so concurrent callers see first-committer-wins.
Events are delivered after the lock is released.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional, Union

import structlog

from acktracker.clock import Clock, SystemClock
from acktracker.config import (
    DEFAULT_RETENTION_MAX_AGE_MS,
    DEFAULT_SWEEP_INTERVAL_MS,
    AckTimeoutConfig,
    Settings,
    get_settings,
)
from acktracker.events import (
    AckAcknowledgedEvent,
    AckCreatedEvent,
    AckEscalatedEvent,
    AckEvent,
    AckEventSink,
    AckExpiredEvent,
    AckResolvedEvent,
    AckTimeoutEvent,
    AckUnacknowledgedEvent,
    EventDispatcher,
)
from acktracker.exceptions import AckTrackerError, InvalidConfigError
from acktracker.scheduler import TimeoutScheduler, deadline_after, next_timeout_delay_ms
from acktracker.schemas import (
    AckAction,
    AckHistoryEntry,
    AckRequestOptions,
    AckStatistics,
    AckStatus,
    AcknowledgmentRecord,
)
from acktracker.statistics import StatisticsAggregator
from acktracker.store import RecordStore
from acktracker.transitions import OUTSTANDING_STATUSES, ensure_transition, require_status

logger = structlog.get_logger(__name__)

ConfigOverride = Union[AckTimeoutConfig, Mapping[str, Any]]
BulkResult = dict[str, Union[AcknowledgmentRecord, AckTrackerError]]


class AcknowledgmentTracker:
    """
    Single-process tracking authority for alert acknowledgments.

    Records returned by any method are snapshots; mutating them has no
    effect on the tracker.
    """

    def __init__(
        self,
        config: Optional[ConfigOverride] = None,
        clock: Optional[Clock] = None,
        sinks: Optional[Iterable[AckEventSink]] = None,
        sweep_interval_ms: int = DEFAULT_SWEEP_INTERVAL_MS,
        retention_max_age_ms: int = DEFAULT_RETENTION_MAX_AGE_MS,
    ):
        """
        Initialize the tracker.

        Args:
            config: Global default timeout policy (full config or partial overrides)
            clock: Time source; defaults to the monotonic system clock
            sinks: Event consumers subscribed from the start
            sweep_interval_ms: Period of the background timeout sweep
            retention_max_age_ms: Default age for cleanup_old_records()

        Raises:
            InvalidConfigError: if any value is out of range
        """
        if sweep_interval_ms <= 0:
            raise InvalidConfigError(
                f"sweep_interval_ms must be positive, got {sweep_interval_ms}",
                errors=["sweep_interval_ms: must be greater than 0"],
            )
        if retention_max_age_ms < 0:
            raise InvalidConfigError(
                f"retention_max_age_ms must not be negative, got {retention_max_age_ms}",
                errors=["retention_max_age_ms: must be greater than or equal to 0"],
            )

        self._default_config = AckTimeoutConfig().merged(config)
        self._clock = clock or SystemClock()
        self._sweep_interval_ms = sweep_interval_ms
        self._retention_max_age_ms = retention_max_age_ms

        self._store = RecordStore()
        self._scheduler = TimeoutScheduler()
        self._stats = StatisticsAggregator()
        self._events = EventDispatcher()
        for sink in sinks or ():
            self._events.subscribe(sink)

        self._lock = asyncio.Lock()
        self._running = False
        self._stop_requested = asyncio.Event()
        self._sweep_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "AcknowledgmentTracker":
        """Build a tracker from environment-backed settings."""
        settings = settings or get_settings()
        return cls(
            config=settings.timeout_config(),
            sweep_interval_ms=settings.sweep_interval_ms,
            retention_max_age_ms=settings.retention_max_age_ms,
            **kwargs,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the periodic timeout sweep."""
        if self._running:
            return
        self._running = True
        self._stop_requested.clear()
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("ack_tracker_started", sweep_interval_ms=self._sweep_interval_ms)

    async def stop(self) -> None:
        """
        Stop the sweep. No timeout events are emitted once this returns.

        A sweep already in progress is allowed to finish; only the wait
        between sweeps is interrupted.
        """
        self._running = False
        self._stop_requested.set()
        if self._sweep_task:
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("ack_tracker_stopped")

    async def __aenter__(self) -> "AcknowledgmentTracker":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ── Configuration & subscriptions ─────────────────────────────────

    def update_config(self, **changes: Any) -> AckTimeoutConfig:
        """
        Merge ``changes`` into the global default policy.

        Only records created afterwards use the new values.

        Raises:
            InvalidConfigError: if the merged policy is invalid
        """
        self._default_config = self._default_config.merged(changes)
        logger.debug("ack_timeout_config_updated", changes=sorted(changes))
        return self._default_config

    def get_config(self) -> AckTimeoutConfig:
        return self._default_config

    def subscribe(self, sink: AckEventSink) -> str:
        return self._events.subscribe(sink)

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._events.unsubscribe(subscription_id)

    # ── Transitions ───────────────────────────────────────────────────

    async def create_record(
        self,
        alert_id: str,
        incident_id: Optional[str] = None,
        config: Optional[ConfigOverride] = None,
    ) -> AcknowledgmentRecord:
        """
        Start tracking a newly fired alert.

        Raises:
            DuplicateTrackingError: if the alert already has an active record
            InvalidConfigError: if ``config`` overrides are invalid
        """
        async with self._lock:
            effective = self._default_config.merged(config)
            now = self._clock.now()

            record = AcknowledgmentRecord(
                id=self._generate_id(),
                alert_id=alert_id,
                incident_id=incident_id,
                config=effective,
                created_at=now,
                updated_at=now,
            )
            record.append_history(now, AckStatus.PENDING, AckStatus.PENDING, AckAction.CREATED)

            superseded = self._store.add(record)
            if superseded is not None:
                self._scheduler.cancel(superseded.id)

            timeout_at = deadline_after(now, effective.initial_timeout_ms)
            self._scheduler.arm(record.id, timeout_at)
            self._stats.record_created()

            event = AckCreatedEvent(
                record_id=record.id,
                alert_id=alert_id,
                incident_id=incident_id,
                timeout_at=timeout_at,
                occurred_at=now,
            )
            snapshot = self._snapshot(record)

        logger.debug("ack_record_created", record_id=record.id, alert_id=alert_id)
        await self._events.dispatch([event])
        return snapshot

    async def acknowledge(
        self,
        alert_id: str,
        options: Union[AckRequestOptions, Mapping[str, Any]],
    ) -> AcknowledgmentRecord:
        """
        Acknowledge an alert.

        Raises:
            NotFoundError: if the alert is not tracked
            IllegalTransitionError: if the record is acknowledged or terminal
        """
        options = self._coerce_options(options)
        async with self._lock:
            record = self._store.require_by_alert_id(alert_id)
            event = self._apply_acknowledge(record, options)
            snapshot = self._snapshot(record)

        await self._events.dispatch([event])
        return snapshot

    async def acknowledge_by_id(
        self,
        record_id: str,
        options: Union[AckRequestOptions, Mapping[str, Any]],
    ) -> AcknowledgmentRecord:
        """Acknowledge by record id instead of alert id."""
        options = self._coerce_options(options)
        async with self._lock:
            record = self._store.require(record_id)
            event = self._apply_acknowledge(record, options)
            snapshot = self._snapshot(record)

        await self._events.dispatch([event])
        return snapshot

    async def bulk_acknowledge(
        self,
        alert_ids: Iterable[str],
        options: Union[AckRequestOptions, Mapping[str, Any]],
    ) -> BulkResult:
        """
        Acknowledge each alert independently.

        Never aborts the batch: every alert id maps to either the updated
        record or the error that alert hit. Repeated ids are acknowledged
        once and get a single entry, in first-seen order.
        """
        options = self._coerce_options(options)
        results: BulkResult = {}
        for alert_id in dict.fromkeys(alert_ids):
            try:
                results[alert_id] = await self.acknowledge(alert_id, options)
            except AckTrackerError as e:
                results[alert_id] = e

        failed = sum(1 for r in results.values() if isinstance(r, AckTrackerError))
        logger.info(
            "ack_bulk_acknowledge_completed",
            requested=len(results),
            succeeded=len(results) - failed,
            failed=failed,
        )
        return results

    async def resolve(
        self,
        alert_id: str,
        user_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> AcknowledgmentRecord:
        """
        Resolve the alert's record. Resolving twice returns the resolved record.

        Raises:
            NotFoundError: if the alert is not tracked
            IllegalTransitionError: if the record already expired
        """
        async with self._lock:
            record = self._store.require_by_alert_id(alert_id)
            if record.status == AckStatus.RESOLVED:
                logger.debug("ack_record_already_resolved", record_id=record.id, alert_id=alert_id)
                return self._snapshot(record)

            ensure_transition(record, AckStatus.RESOLVED, "resolve")
            now = self._clock.now()
            previous = record.status

            record.status = AckStatus.RESOLVED
            record.acknowledged_at = None
            record.expires_at = None
            self._scheduler.cancel(record.id)
            record.append_history(
                now, previous, AckStatus.RESOLVED, AckAction.RESOLVED,
                performed_by=user_id, reason=reason,
            )
            self._stats.record_resolved()

            event = AckResolvedEvent(
                record_id=record.id,
                alert_id=alert_id,
                resolved_by=user_id,
                reason=reason,
                occurred_at=now,
            )
            snapshot = self._snapshot(record)

        logger.debug("ack_record_resolved", record_id=record.id, alert_id=alert_id)
        await self._events.dispatch([event])
        return snapshot

    async def manual_escalate(
        self,
        alert_id: str,
        user_id: str,
        reason: Optional[str] = None,
    ) -> AcknowledgmentRecord:
        """
        Escalate by hand, from any non-terminal status.

        Raises:
            NotFoundError: if the alert is not tracked
            IllegalTransitionError: if the record is terminal
        """
        async with self._lock:
            record = self._store.require_by_alert_id(alert_id)
            ensure_transition(record, AckStatus.ESCALATED, "escalate")
            now = self._clock.now()
            event = self._escalate(
                record,
                now,
                action=AckAction.MANUAL_ESCALATE,
                performed_by=user_id,
                reason=reason,
            )
            snapshot = self._snapshot(record)

        logger.info(
            "ack_record_manually_escalated",
            record_id=record.id,
            alert_id=alert_id,
            escalation_level=record.escalation_level,
            user=user_id,
        )
        await self._events.dispatch([event])
        return snapshot

    async def unacknowledge(
        self,
        alert_id: str,
        user_id: str,
        reason: Optional[str] = None,
    ) -> AcknowledgmentRecord:
        """
        Return an acknowledged record to pending with a fresh deadline.

        Raises:
            NotFoundError: if the alert is not tracked
            IllegalTransitionError: unless the record is acknowledged
        """
        async with self._lock:
            record = self._store.require_by_alert_id(alert_id)
            require_status(record, frozenset({AckStatus.ACKNOWLEDGED}), "unacknowledge")
            event = self._revert_to_pending(
                record,
                self._clock.now(),
                action=AckAction.UNACKNOWLEDGED,
                performed_by=user_id,
                reason=reason,
            )
            snapshot = self._snapshot(record)

        logger.debug("ack_record_unacknowledged", record_id=record.id, alert_id=alert_id, user=user_id)
        await self._events.dispatch([event])
        return snapshot

    async def delete_record(self, alert_id: str) -> bool:
        """Stop tracking an alert. Returns whether a record existed."""
        async with self._lock:
            record = self._store.remove_by_alert_id(alert_id)
            if record is None:
                return False
            self._scheduler.cancel(record.id)

        logger.debug("ack_record_deleted", record_id=record.id, alert_id=alert_id)
        return True

    async def cleanup_old_records(self, max_age_ms: Optional[int] = None) -> int:
        """
        Remove resolved/expired records last updated at least ``max_age_ms`` ago.

        Returns:
            Number of records removed
        """
        if max_age_ms is None:
            max_age_ms = self._retention_max_age_ms
        if max_age_ms < 0:
            raise InvalidConfigError(
                f"max_age_ms must not be negative, got {max_age_ms}",
                errors=["max_age_ms: must be greater than or equal to 0"],
            )

        async with self._lock:
            cutoff = self._clock.now() - timedelta(milliseconds=max_age_ms)
            deleted = 0
            for record in self._store:
                if record.is_terminal and record.updated_at <= cutoff:
                    self._store.remove(record.id)
                    self._scheduler.cancel(record.id)
                    deleted += 1

        if deleted > 0:
            logger.info("ack_records_cleaned_up", count=deleted, max_age_ms=max_age_ms)
        return deleted

    # ── Timeout processing ────────────────────────────────────────────

    async def check_timeouts(self) -> int:
        """
        Run one sweep over elapsed deadlines.

        Each due record is re-validated and mutated in its own critical
        section, so an acknowledge that lands between detection and
        processing wins and the stale deadline is ignored.

        Returns:
            Number of records whose state changed
        """
        async with self._lock:
            due = self._scheduler.pop_due(self._clock.now())

        processed = 0
        remaining = list(due)
        failed: list[str] = []
        try:
            while remaining:
                record_id = remaining[0]
                async with self._lock:
                    try:
                        events = self._process_timeout(record_id, self._clock.now())
                    except Exception as e:
                        logger.error("ack_timeout_processing_failed", record_id=record_id, error=str(e))
                        failed.append(record_id)
                        events = None
                    remaining.pop(0)
                if events is None:
                    continue
                processed += 1
                await self._events.dispatch(events)
        finally:
            # Deadlines not processed this sweep must stay reachable for the next one
            unfinished = failed + remaining
            if unfinished:
                self._scheduler.restore(unfinished)
                logger.debug("ack_timeout_deadlines_restored", count=len(unfinished))

        if processed:
            logger.debug("ack_timeout_sweep_completed", due=len(due), processed=processed)
        return processed

    async def _sweep_loop(self) -> None:
        """Background loop for checking timeouts."""
        while self._running:
            try:
                await self.check_timeouts()
            except Exception as e:
                logger.error("ack_timeout_sweep_error", error=str(e))

            try:
                await asyncio.wait_for(
                    self._stop_requested.wait(),
                    timeout=self._sweep_interval_ms / 1000.0,
                )
            except asyncio.TimeoutError:
                pass

    def _process_timeout(self, record_id: str, now: datetime) -> Optional[list[AckEvent]]:
        """Apply timeout processing to one record. None means nothing changed."""
        record = self._store.get(record_id)
        if record is None:
            self._scheduler.cancel(record_id)
            logger.debug("ack_stale_deadline_dropped", record_id=record_id)
            return None

        if not self._scheduler.is_elapsed(record_id, now):
            return None

        if record.status == AckStatus.ACKNOWLEDGED:
            if record.expires_at is not None and record.expires_at <= now:
                event = self._revert_to_pending(
                    record,
                    now,
                    action=AckAction.ACK_EXPIRED,
                    reason="Acknowledgment window elapsed",
                    automatic=True,
                )
                logger.info("ack_window_elapsed", record_id=record.id, alert_id=record.alert_id)
                return [event]
            self._scheduler.cancel(record_id)
            return None

        if record.status not in OUTSTANDING_STATUSES:
            self._scheduler.cancel(record_id)
            return None

        config = record.config
        previous = record.status
        record.timeout_count += 1

        if record.timeout_count >= config.max_timeouts:
            if config.auto_resolve_on_timeout:
                return [self._expire(record, now)]
            if config.escalate_on_timeout:
                return [self._escalate(record, now, action=AckAction.ESCALATED)]

            # Neither policy configured: record stays outstanding with no deadline
            self._scheduler.cancel(record.id)
            record.append_history(
                now, previous, previous, AckAction.TIMEOUT,
                reason=f"Max timeouts ({config.max_timeouts}) reached; no timeout action configured",
            )
            logger.warning(
                "ack_record_timeouts_exhausted",
                record_id=record.id,
                alert_id=record.alert_id,
                timeout_count=record.timeout_count,
            )
            return []

        delay_ms = next_timeout_delay_ms(config, record.timeout_count)
        next_timeout_at = deadline_after(now, delay_ms)
        self._scheduler.arm(record.id, next_timeout_at)
        record.append_history(
            now, previous, previous, AckAction.TIMEOUT,
            reason=f"Timeout {record.timeout_count} of {config.max_timeouts}",
        )

        logger.debug(
            "ack_record_timed_out",
            record_id=record.id,
            timeout_count=record.timeout_count,
            max_timeouts=config.max_timeouts,
            next_delay_ms=delay_ms,
        )

        if not config.notify_on_timeout:
            return []
        return [
            AckTimeoutEvent(
                record_id=record.id,
                alert_id=record.alert_id,
                timeout_count=record.timeout_count,
                max_timeouts=config.max_timeouts,
                next_timeout_at=next_timeout_at,
                occurred_at=now,
            )
        ]

    # ── Queries ───────────────────────────────────────────────────────

    def get_by_alert_id(self, alert_id: str) -> Optional[AcknowledgmentRecord]:
        record = self._store.get_by_alert_id(alert_id)
        return self._snapshot(record) if record else None

    def get_by_id(self, record_id: str) -> Optional[AcknowledgmentRecord]:
        record = self._store.get(record_id)
        return self._snapshot(record) if record else None

    def get_pending_acks(self) -> list[AcknowledgmentRecord]:
        """Records still waiting for someone: pending or escalated."""
        return [self._snapshot(r) for r in self._store.by_status(*OUTSTANDING_STATUSES)]

    def get_by_status(self, status: AckStatus) -> list[AcknowledgmentRecord]:
        return [self._snapshot(r) for r in self._store.by_status(status)]

    def get_history(self, alert_id: str) -> list[AckHistoryEntry]:
        record = self._store.get_by_alert_id(alert_id)
        if record is None:
            return []
        return [entry.model_copy() for entry in record.history]

    def get_deadline(self, alert_id: str) -> Optional[datetime]:
        """Next deadline armed for the alert's record, if any."""
        record = self._store.get_by_alert_id(alert_id)
        if record is None:
            return None
        return self._scheduler.deadline_for(record.id)

    def get_statistics(self) -> AckStatistics:
        return self._stats.snapshot(self._store.status_counts())

    # ── Internals ─────────────────────────────────────────────────────

    def _apply_acknowledge(
        self,
        record: AcknowledgmentRecord,
        options: AckRequestOptions,
    ) -> AckAcknowledgedEvent:
        require_status(record, OUTSTANDING_STATUSES, "acknowledge")

        now = self._clock.now()
        previous = record.status
        ack_time_ms = (now - record.created_at).total_seconds() * 1000

        record.status = AckStatus.ACKNOWLEDGED
        record.source_type = options.source_type
        record.acknowledged_by = options.user_id
        record.acknowledged_at = now
        record.message = options.message
        if options.metadata:
            record.metadata = {**record.metadata, **options.metadata}

        if options.duration_ms:
            record.expires_at = deadline_after(now, options.duration_ms)
            self._scheduler.arm(record.id, record.expires_at)
        else:
            record.expires_at = None
            self._scheduler.cancel(record.id)

        record.append_history(
            now, previous, AckStatus.ACKNOWLEDGED, AckAction.ACKNOWLEDGED,
            performed_by=options.user_id, reason=options.message,
        )
        self._stats.record_acknowledged(ack_time_ms, record.timeout_count)

        logger.debug(
            "ack_record_acknowledged",
            record_id=record.id,
            alert_id=record.alert_id,
            user=options.user_id,
            ack_time_ms=ack_time_ms,
        )

        return AckAcknowledgedEvent(
            record_id=record.id,
            alert_id=record.alert_id,
            acknowledged_by=options.user_id,
            ack_time_ms=ack_time_ms,
            timeout_count=record.timeout_count,
            escalation_level=record.escalation_level,
            source_type=record.source_type,
            expires_at=record.expires_at,
            occurred_at=now,
        )

    def _escalate(
        self,
        record: AcknowledgmentRecord,
        now: datetime,
        action: AckAction,
        performed_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> AckEscalatedEvent:
        previous = record.status
        manual = action == AckAction.MANUAL_ESCALATE

        record.status = AckStatus.ESCALATED
        record.escalation_level += 1
        record.acknowledged_at = None
        record.expires_at = None

        self._scheduler.arm(record.id, deadline_after(now, record.config.timeout_escalation_ms))

        default_reason = (
            f"Manually escalated to level {record.escalation_level}"
            if manual
            else f"Escalated to level {record.escalation_level}"
        )
        record.append_history(
            now, previous, AckStatus.ESCALATED, action,
            performed_by=performed_by, reason=reason or default_reason,
        )
        self._stats.record_escalated()

        if not manual:
            logger.warning(
                "ack_record_escalated",
                record_id=record.id,
                alert_id=record.alert_id,
                escalation_level=record.escalation_level,
                timeout_count=record.timeout_count,
            )

        return AckEscalatedEvent(
            record_id=record.id,
            alert_id=record.alert_id,
            incident_id=record.incident_id,
            escalation_level=record.escalation_level,
            timeout_count=record.timeout_count,
            manual=manual,
            escalated_by=performed_by,
            occurred_at=now,
        )

    def _expire(self, record: AcknowledgmentRecord, now: datetime) -> AckExpiredEvent:
        previous = record.status
        record.status = AckStatus.EXPIRED
        self._scheduler.cancel(record.id)
        record.append_history(
            now, previous, AckStatus.EXPIRED, AckAction.EXPIRED,
            reason=f"Max timeouts ({record.config.max_timeouts}) reached",
        )
        self._stats.record_expired()

        logger.warning(
            "ack_record_expired",
            record_id=record.id,
            alert_id=record.alert_id,
            timeout_count=record.timeout_count,
        )

        return AckExpiredEvent(
            record_id=record.id,
            alert_id=record.alert_id,
            timeout_count=record.timeout_count,
            occurred_at=now,
        )

    def _revert_to_pending(
        self,
        record: AcknowledgmentRecord,
        now: datetime,
        action: AckAction,
        performed_by: Optional[str] = None,
        reason: Optional[str] = None,
        automatic: bool = False,
    ) -> AckUnacknowledgedEvent:
        previous = record.status

        record.status = AckStatus.PENDING
        record.acknowledged_by = None
        record.acknowledged_at = None
        record.expires_at = None

        self._scheduler.arm(record.id, deadline_after(now, record.config.initial_timeout_ms))
        record.append_history(
            now, previous, AckStatus.PENDING, action,
            performed_by=performed_by, reason=reason,
        )

        return AckUnacknowledgedEvent(
            record_id=record.id,
            alert_id=record.alert_id,
            unacknowledged_by=performed_by,
            reason=reason,
            automatic=automatic,
            occurred_at=now,
        )

    @staticmethod
    def _coerce_options(options: Union[AckRequestOptions, Mapping[str, Any]]) -> AckRequestOptions:
        if isinstance(options, AckRequestOptions):
            return options
        return AckRequestOptions.model_validate(dict(options))

    @staticmethod
    def _snapshot(record: AcknowledgmentRecord) -> AcknowledgmentRecord:
        return record.model_copy(deep=True)

    @staticmethod
    def _generate_id() -> str:
        return f"ack_{uuid.uuid4().hex[:16]}"


# ── Global instance ────────────────────────────────────────────────────

_tracker: Optional[AcknowledgmentTracker] = None


def get_tracker() -> AcknowledgmentTracker:
    """Get the process-wide tracker, built from settings on first use."""
    global _tracker
    if _tracker is None:
        _tracker = AcknowledgmentTracker.from_settings()
    return _tracker
