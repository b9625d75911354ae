"""Entry points that put aggregate work on the queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta

from score_engine.config.logging_config import get_logger
from score_engine.domain.models import (
    JobKind,
    QueueItem,
    QueueItemCreate,
    ScoreIdentity,
    TestingContext,
)
from score_engine.domain.protocols import ScoreStoreProtocol
from score_engine.observability.metrics import QUEUE_ITEMS_ENQUEUED_TOTAL
from score_engine.ports.dispatcher import DispatcherPort
from score_engine.ports.task_queue import QueueStorePort
from score_engine.services.signal_registry import SignalTypeRegistry
from score_engine.use_cases.fan_out import dispatch_within_capacity

logger = get_logger(__name__)


@dataclass(slots=True)
class TriggerResult:
    item: QueueItem | None
    inserted: bool = False
    dispatched: bool = False


@dataclass(slots=True)
class DailyTriggerResult:
    day: date
    identities: int = 0
    skipped: int = 0
    enqueued: list[QueueItem] = field(default_factory=list)
    dispatched: int = 0


def default_scoring_day(today: date | None = None) -> date:
    """Yesterday, the most recent complete day."""

    today = today or datetime.now(tz=UTC).date()
    return today - timedelta(days=1)


class ScoringTrigger:
    """Enqueues ``smart_score`` items and dispatches them when capacity allows."""

    def __init__(
        self,
        *,
        store: ScoreStoreProtocol,
        queue: QueueStorePort,
        dispatcher: DispatcherPort,
        registry: SignalTypeRegistry,
        max_in_flight: int,
    ) -> None:
        self._store = store
        self._queue = queue
        self._dispatcher = dispatcher
        self._registry = registry
        self._max_in_flight = max_in_flight

    def request_score(
        self,
        identity: ScoreIdentity,
        day: date | None = None,
        *,
        testing: TestingContext | None = None,
    ) -> TriggerResult:
        """Request one aggregate; repeated requests return the existing item."""

        request = QueueItemCreate(
            kind=JobKind.SMART_SCORE,
            identity=identity,
            day=day or default_scoring_day(),
            testing=testing,
        )
        inserted = self._queue.enqueue_many([request])
        if not inserted:
            existing = self._queue.get_by_unique_key(request.unique_key)
            logger.info(
                "score_request_duplicate",
                unique_key=request.unique_key,
                status=existing.status.value if existing else None,
            )
            return TriggerResult(item=existing)

        QUEUE_ITEMS_ENQUEUED_TOTAL.labels(kind=JobKind.SMART_SCORE.value).inc()
        dispatched = dispatch_within_capacity(
            self._queue, self._dispatcher, inserted, max_in_flight=self._max_in_flight
        )
        logger.info(
            "score_requested",
            unique_key=request.unique_key,
            testing=testing is not None,
            dispatched=bool(dispatched),
        )
        return TriggerResult(item=inserted[0], inserted=True, dispatched=bool(dispatched))

    def enqueue_daily_scoring(self, day: date | None = None) -> DailyTriggerResult:
        """Enqueue a production aggregate for every active, enabled identity."""

        day = day or default_scoring_day()
        result = DailyTriggerResult(day=day)

        signals = {
            (ps.project_id, ps.signal_type_id): ps
            for ps in self._store.list_project_signals()
        }
        self._registry.ensure_known(ps.signal_type_name for ps in signals.values())
        if not signals:
            logger.info("daily_scoring_no_signals", day=day.isoformat())
            return result

        longest_window = max(ps.previous_days for ps in signals.values())
        identities = self._store.list_active_identities(
            day - timedelta(days=longest_window - 1), day
        )
        result.identities = len(identities)

        requests: list[QueueItemCreate] = []
        for identity in identities:
            project_signal = signals.get((identity.project_id, identity.signal_type_id))
            if project_signal is None or not project_signal.enabled:
                result.skipped += 1
                continue
            requests.append(
                QueueItemCreate(kind=JobKind.SMART_SCORE, identity=identity, day=day)
            )

        result.enqueued = self._queue.enqueue_many(requests)
        if result.enqueued:
            QUEUE_ITEMS_ENQUEUED_TOTAL.labels(kind=JobKind.SMART_SCORE.value).inc(
                len(result.enqueued)
            )
        result.dispatched = len(
            dispatch_within_capacity(
                self._queue,
                self._dispatcher,
                result.enqueued,
                max_in_flight=self._max_in_flight,
            )
        )

        logger.info(
            "daily_scoring_enqueued",
            day=day.isoformat(),
            identities=result.identities,
            skipped=result.skipped,
            enqueued=len(result.enqueued),
            dispatched=result.dispatched,
        )
        return result


__all__ = [
    "DailyTriggerResult",
    "ScoringTrigger",
    "TriggerResult",
    "default_scoring_day",
]
