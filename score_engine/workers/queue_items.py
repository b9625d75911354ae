"""Worker executed for every dispatched queue item.

Each invocation is stateless: it re-reads the item, re-checks capacity, claims
the item with a conditional ``pending -> running`` update and only then runs
the handler for its kind. Duplicate dispatches lose the claim and exit.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Protocol

from score_engine.config.logging_config import get_logger
from score_engine.domain.models import JobKind, QueueItem, QueueStatus, RawScoreRecord
from score_engine.observability.metrics import QUEUE_ITEMS_TERMINAL_TOTAL
from score_engine.observability.tracing import queue_item_scope
from score_engine.ports.dispatcher import DispatcherPort
from score_engine.ports.task_queue import QueueStorePort
from score_engine.use_cases.fan_out import dispatch_within_capacity
from score_engine.use_cases.score_aggregate import AggregateOutcome, AggregateResult

logger = get_logger(__name__)


class RawScorer(Protocol):
    def __call__(self, item: QueueItem) -> RawScoreRecord | None: ...


class AggregateScorer(Protocol):
    def __call__(self, item: QueueItem) -> AggregateResult: ...


class WorkerOutcome(StrEnum):
    MISSING = "missing"
    NOT_PENDING = "not_pending"
    DEFERRED = "deferred"
    LOST_CLAIM = "lost_claim"
    COMPLETED = "completed"
    RELEASED = "released"


class QueueItemWorker:
    """Claim, run and settle one queue item."""

    def __init__(
        self,
        *,
        queue: QueueStorePort,
        dispatcher: DispatcherPort,
        score_raw_day: RawScorer,
        score_aggregate: AggregateScorer,
        max_in_flight: int,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_in_flight <= 0:
            msg = "max_in_flight must be positive"
            raise ValueError(msg)

        self._queue = queue
        self._dispatcher = dispatcher
        self._score_raw_day = score_raw_day
        self._score_aggregate = score_aggregate
        self._max_in_flight = max_in_flight
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def run(self, queue_item_id: int) -> WorkerOutcome:
        item = self._queue.get(queue_item_id)
        if item is None:
            logger.warning("queue_item_missing", queue_item_id=queue_item_id)
            return WorkerOutcome.MISSING
        if item.status is not QueueStatus.PENDING:
            logger.debug(
                "queue_item_not_pending",
                queue_item_id=queue_item_id,
                status=item.status.value,
            )
            return WorkerOutcome.NOT_PENDING

        running = self._queue.count_by_status(QueueStatus.RUNNING)
        if running >= self._max_in_flight:
            logger.info(
                "queue_item_deferred_capacity",
                queue_item_id=queue_item_id,
                running=running,
                max_in_flight=self._max_in_flight,
            )
            return WorkerOutcome.DEFERRED

        claimed = self._queue.claim(queue_item_id, now=self._clock())
        if claimed is None:
            logger.debug("queue_item_claim_lost", queue_item_id=queue_item_id)
            return WorkerOutcome.LOST_CLAIM

        with queue_item_scope(claimed.id, claimed.unique_key, claimed.kind.value):
            logger.info(
                "queue_item_claimed",
                queue_item_id=claimed.id,
                attempts=claimed.attempts,
            )
            try:
                if claimed.kind is JobKind.RAW_SCORE:
                    return self._run_raw(claimed)
                return self._run_aggregate(claimed)
            except Exception:
                # Left running; the Governor retries or errors it.
                logger.exception("queue_item_failed", queue_item_id=claimed.id)
                raise

    def _run_raw(self, item: QueueItem) -> WorkerOutcome:
        self._score_raw_day(item)
        self._complete(item)
        self._trigger_parent(item)
        return WorkerOutcome.COMPLETED

    def _run_aggregate(self, item: QueueItem) -> WorkerOutcome:
        result = self._score_aggregate(item)
        if result.outcome is AggregateOutcome.WAITING:
            self._queue.release(item.id)
            logger.info("queue_item_released_waiting", queue_item_id=item.id)
            # Raw work may have drained between the fan-out check and the release.
            if self._queue.count_outstanding_raw(item.key) == 0:
                self._dispatch_if_pending(item.unique_key)
            return WorkerOutcome.RELEASED

        self._complete(item)
        return WorkerOutcome.COMPLETED

    def _complete(self, item: QueueItem) -> None:
        if self._queue.complete(item.id, now=self._clock()):
            QUEUE_ITEMS_TERMINAL_TOTAL.labels(
                kind=item.kind.value, status=QueueStatus.COMPLETED.value
            ).inc()
            logger.info("queue_item_completed", queue_item_id=item.id)
        else:
            logger.warning("queue_item_complete_conflict", queue_item_id=item.id)

    def _trigger_parent(self, item: QueueItem) -> None:
        """Dispatch the parent aggregate once no raw work is outstanding."""

        if item.parent_unique_key is None:
            return
        outstanding = self._queue.count_outstanding_raw(item.key)
        if outstanding > 0:
            logger.debug(
                "fan_in_waiting",
                parent_unique_key=item.parent_unique_key,
                outstanding=outstanding,
            )
            return
        self._dispatch_if_pending(item.parent_unique_key)

    def _dispatch_if_pending(self, unique_key: str) -> None:
        parent = self._queue.get_by_unique_key(unique_key)
        if parent is None or parent.status is not QueueStatus.PENDING:
            return
        dispatched = dispatch_within_capacity(
            self._queue, self._dispatcher, [parent], max_in_flight=self._max_in_flight
        )
        logger.info(
            "fan_in_dispatch",
            parent_unique_key=unique_key,
            dispatched=bool(dispatched),
        )


__all__ = ["AggregateScorer", "QueueItemWorker", "RawScorer", "WorkerOutcome"]
