"""Raw score fan-out with admission control.

Enqueues one ``raw_score`` item per active-but-unscored day of an aggregate's
lookback window and dispatches as many as the in-flight cap allows. Anything
left ``pending`` is picked up later by the fan-in trigger or the Governor.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta

from score_engine.config.logging_config import get_logger
from score_engine.domain.exceptions import DispatchError
from score_engine.domain.models import (
    JobKind,
    QueueItem,
    QueueItemCreate,
    QueueStatus,
    SignalConfig,
)
from score_engine.domain.protocols import ActivitySourceProtocol, ScoreStoreProtocol
from score_engine.observability.metrics import QUEUE_ITEMS_ENQUEUED_TOTAL
from score_engine.ports.dispatcher import DispatcherPort
from score_engine.ports.task_queue import QueueStorePort

logger = get_logger(__name__)


@dataclass(slots=True)
class FanOutResult:
    """What the fan-out did for one aggregate item."""

    required: bool
    missing_days: list[date] = field(default_factory=list)
    enqueued: int = 0
    dispatched: int = 0
    outstanding: int = 0


def lookback_window(day: date, previous_days: int) -> tuple[date, date]:
    """Inclusive ``previous_days``-long window ending on ``day``."""

    return day - timedelta(days=previous_days - 1), day


def dispatch_within_capacity(
    queue: QueueStorePort,
    dispatcher: DispatcherPort,
    items: Sequence[QueueItem],
    *,
    max_in_flight: int,
) -> list[QueueItem]:
    """Dispatch ``items`` in order until the running count reaches the cap.

    A dispatch failure stops the batch; undispatched items stay ``pending``.

    Returns:
        Items whose dispatch was confirmed as started
    """
    capacity = max_in_flight - queue.count_by_status(QueueStatus.RUNNING)
    if capacity <= 0 or not items:
        if items:
            logger.info(
                "dispatch_deferred_capacity",
                pending=len(items),
                max_in_flight=max_in_flight,
            )
        return []

    dispatched: list[QueueItem] = []
    for item in items[:capacity]:
        try:
            result = dispatcher.dispatch(item.kind, item.id)
        except DispatchError as exc:
            logger.warning(
                "queue_item_dispatch_failed",
                queue_item_id=item.id,
                unique_key=item.unique_key,
                error=str(exc),
            )
            break
        if not result.started:
            logger.warning(
                "queue_item_dispatch_not_started",
                queue_item_id=item.id,
                unique_key=item.unique_key,
            )
            break
        dispatched.append(item)
    return dispatched


class RawScoreFanOut:
    """Admission-controlled fan-out of per-day raw score jobs."""

    def __init__(
        self,
        *,
        store: ScoreStoreProtocol,
        queue: QueueStorePort,
        dispatcher: DispatcherPort,
        activity_source: ActivitySourceProtocol,
        max_in_flight: int,
    ) -> None:
        self._store = store
        self._queue = queue
        self._dispatcher = dispatcher
        self._activity_source = activity_source
        self._max_in_flight = max_in_flight

    def execute(self, parent: QueueItem, signal: SignalConfig) -> FanOutResult:
        """Ensure raw scores exist for every active day of the parent's window.

        Returns:
            ``required`` is true while any raw work for the identity is
            newly enqueued or still pending/running
        """
        key = parent.key
        start, end = lookback_window(parent.day, signal.previous_days)

        active_days = {
            activity.day
            for activity in self._activity_source.get_daily_activity(
                parent.identity, start, end
            )
            if activity.records
        }
        scored_days = self._store.get_scored_raw_days(
            parent.identity,
            start,
            end,
            test_requesting_user=key.test_requesting_user,
        )
        missing_days = sorted(active_days - scored_days)

        inserted: list[QueueItem] = []
        if missing_days:
            inserted = self._queue.enqueue_many(
                [
                    QueueItemCreate(
                        kind=JobKind.RAW_SCORE,
                        identity=parent.identity,
                        day=day,
                        testing=parent.testing,
                        parent_unique_key=parent.unique_key,
                    )
                    for day in missing_days
                ]
            )
            if inserted:
                QUEUE_ITEMS_ENQUEUED_TOTAL.labels(kind=JobKind.RAW_SCORE.value).inc(
                    len(inserted)
                )

        dispatched = dispatch_within_capacity(
            self._queue, self._dispatcher, inserted, max_in_flight=self._max_in_flight
        )
        outstanding = self._queue.count_outstanding_raw(key)
        result = FanOutResult(
            required=bool(inserted) or outstanding > 0,
            missing_days=missing_days,
            enqueued=len(inserted),
            dispatched=len(dispatched),
            outstanding=outstanding,
        )

        logger.info(
            "raw_fan_out_completed",
            identity=str(parent.identity),
            day=parent.day.isoformat(),
            window_start=start.isoformat(),
            active_days=len(active_days),
            missing_days=len(missing_days),
            enqueued=result.enqueued,
            dispatched=result.dispatched,
            outstanding=outstanding,
            required=result.required,
        )
        return result


__all__ = [
    "FanOutResult",
    "RawScoreFanOut",
    "dispatch_within_capacity",
    "lookback_window",
]
