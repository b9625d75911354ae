from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest

from score_engine.domain.models import JobKind, QueueItemCreate, QueueStatus
from score_engine.domain.scoring_constants import LAST_CHECKED_TAG
from score_engine.use_cases.queue_governor import QueueGovernor

DAY = date(2024, 3, 20)
START = datetime(2024, 3, 21, 6, 0, tzinfo=UTC)
TIMEOUT_SECONDS = 52


@pytest.fixture
def build_governor(queue, guard, dispatcher):
    def _build(*, max_attempts: int = 1, max_in_flight: int = 20) -> QueueGovernor:
        return QueueGovernor(
            queue=queue,
            guard=guard,
            dispatcher=dispatcher,
            max_attempts=max_attempts,
            timeout_seconds=TIMEOUT_SECONDS,
            max_in_flight=max_in_flight,
            completed_retention_days=7,
        )

    return _build


def _enqueue(queue, identity, kind: JobKind = JobKind.SMART_SCORE, day: date = DAY):
    (item,) = queue.enqueue_many([QueueItemCreate(kind=kind, identity=identity, day=day)])
    return item


def test_stale_item_is_reset_and_redispatched(
    queue, identity, dispatcher, build_governor
) -> None:
    item = _enqueue(queue, identity)
    queue.claim(item.id, now=START)

    report = build_governor().run(now=START + timedelta(seconds=TIMEOUT_SECONDS + 1))

    refreshed = queue.get(item.id)
    assert report.reset == 1
    assert refreshed.status is QueueStatus.PENDING
    assert refreshed.attempts == 1
    assert dispatcher.dispatched_ids == [item.id]


def test_fresh_running_item_is_left_alone(
    queue, identity, dispatcher, build_governor
) -> None:
    item = _enqueue(queue, identity)
    queue.claim(item.id, now=START)

    report = build_governor().run(now=START + timedelta(seconds=10))

    assert report.reset == 0
    assert report.errored == 0
    assert queue.get(item.id).status is QueueStatus.RUNNING
    assert dispatcher.calls == []


def test_retry_bound_ends_in_error(
    repo, queue, guard, identity, build_governor
) -> None:
    item = _enqueue(queue, identity)
    governor = build_governor(max_attempts=1)
    guard.mark_in_flight(item.key)
    runs = 0
    now = START

    while queue.get(item.id).status is not QueueStatus.ERROR:
        assert queue.claim(item.id, now=now) is not None
        runs += 1
        now += timedelta(seconds=TIMEOUT_SECONDS + 1)
        governor.run(now=now)

    assert runs == 2
    final = queue.get(item.id)
    assert final.attempts == 1
    assert final.finished_at == now
    assert repo.get_sentinel(item.key, LAST_CHECKED_TAG) is None


def test_exhausted_item_errors_even_before_timeout(
    queue, identity, build_governor
) -> None:
    item = _enqueue(queue, identity)
    queue.claim(item.id, now=START)
    queue.reset_for_retry(item.id)
    queue.claim(item.id, now=START)

    report = build_governor(max_attempts=1).run(now=START + timedelta(seconds=1))

    assert report.errored == 1
    assert queue.get(item.id).status is QueueStatus.ERROR


def test_pending_raw_items_dispatch_first(
    queue, identity, dispatcher, build_governor
) -> None:
    smart = _enqueue(queue, identity)
    raw = _enqueue(queue, identity, JobKind.RAW_SCORE, DAY - timedelta(days=1))

    report = build_governor(max_in_flight=1).run(now=START)

    assert report.dispatched == 1
    assert dispatcher.calls == [(JobKind.RAW_SCORE, raw.id)]
    assert queue.get(smart.id).status is QueueStatus.PENDING


def test_old_completed_items_are_pruned(queue, identity, build_governor) -> None:
    item = _enqueue(queue, identity)
    queue.claim(item.id, now=START - timedelta(days=8))
    queue.complete(item.id, now=START - timedelta(days=8))

    report = build_governor().run(now=START)

    assert report.pruned == 1
    assert queue.get(item.id) is None
