"""Queue Governor: the periodic sweep that guarantees eventual progress.

For every ``running`` item: exhausted items (``attempts >= max_attempts``)
become terminal ``error`` and their ``last_checked`` sentinel is cleared;
otherwise items running longer than the timeout go back to ``pending`` with
one more attempt. Pending items are then dispatched, raw before smart, up to
the in-flight cap, and old completed items are pruned.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from score_engine.config.logging_config import get_logger
from score_engine.domain.models import QueueItem, QueueStatus
from score_engine.observability.metrics import (
    QUEUE_ITEMS_RETRIED_TOTAL,
    QUEUE_ITEMS_TERMINAL_TOTAL,
)
from score_engine.observability.tracing import correlation_scope
from score_engine.ports.dispatcher import DispatcherPort
from score_engine.ports.task_queue import QueueStorePort
from score_engine.services.dedup_guard import DedupGuard
from score_engine.use_cases.fan_out import dispatch_within_capacity

logger = get_logger(__name__)


@dataclass(slots=True)
class GovernorReport:
    errored: int = 0
    reset: int = 0
    dispatched: int = 0
    pruned: int = 0


class QueueGovernor:
    """Recovers stale or lost queue items and re-dispatches pending work."""

    def __init__(
        self,
        *,
        queue: QueueStorePort,
        guard: DedupGuard,
        dispatcher: DispatcherPort,
        max_attempts: int,
        timeout_seconds: int,
        max_in_flight: int,
        completed_retention_days: int,
    ) -> None:
        self._queue = queue
        self._guard = guard
        self._dispatcher = dispatcher
        self._max_attempts = max_attempts
        self._timeout = timedelta(seconds=timeout_seconds)
        self._max_in_flight = max_in_flight
        self._completed_retention = timedelta(days=completed_retention_days)

    def run(
        self, *, now: datetime | None = None, correlation_id: str | None = None
    ) -> GovernorReport:
        now = now or datetime.now(tz=UTC)
        report = GovernorReport()

        with correlation_scope(correlation_id):
            for item in self._queue.list_by_status(QueueStatus.RUNNING):
                if item.attempts >= self._max_attempts:
                    if self._mark_error(item, now):
                        report.errored += 1
                elif self._is_stale(item, now):
                    if self._queue.reset_for_retry(item.id):
                        QUEUE_ITEMS_RETRIED_TOTAL.labels(kind=item.kind.value).inc()
                        logger.warning(
                            "governor_item_reset",
                            queue_item_id=item.id,
                            unique_key=item.unique_key,
                            attempts=item.attempts + 1,
                            started_at=item.started_at.isoformat()
                            if item.started_at
                            else None,
                        )
                        report.reset += 1

            pending = self._queue.list_by_status(QueueStatus.PENDING)
            dispatched = dispatch_within_capacity(
                self._queue,
                self._dispatcher,
                pending,
                max_in_flight=self._max_in_flight,
            )
            report.dispatched = len(dispatched)
            report.pruned = self._queue.prune_completed(
                older_than=now - self._completed_retention
            )

            logger.info(
                "governor_sweep_completed",
                errored=report.errored,
                reset=report.reset,
                pending=len(pending),
                dispatched=report.dispatched,
                pruned=report.pruned,
            )
        return report

    def _is_stale(self, item: QueueItem, now: datetime) -> bool:
        # A running item without a start time cannot be aged; treat it as lost.
        if item.started_at is None:
            return True
        return now - item.started_at > self._timeout

    def _mark_error(self, item: QueueItem, now: datetime) -> bool:
        if not self._queue.mark_error(item.id, now=now):
            return False

        self._guard.clear_in_flight(item.key)
        QUEUE_ITEMS_TERMINAL_TOTAL.labels(
            kind=item.kind.value, status=QueueStatus.ERROR.value
        ).inc()
        logger.error(
            "governor_item_exhausted",
            queue_item_id=item.id,
            unique_key=item.unique_key,
            attempts=item.attempts,
            max_attempts=self._max_attempts,
        )
        return True


__all__ = ["GovernorReport", "QueueGovernor"]
