from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, date, datetime, timedelta

from score_engine.domain.models import (
    JobKind,
    PromptOverride,
    QueueItemCreate,
    QueueStatus,
    ScoreIdentity,
    TestingContext,
)

DAY = date(2024, 3, 20)
NOW = datetime(2024, 3, 21, 8, 0, tzinfo=UTC)


def _smart(identity: ScoreIdentity, **kwargs) -> QueueItemCreate:
    return QueueItemCreate(kind=JobKind.SMART_SCORE, identity=identity, day=DAY, **kwargs)


def _raw(identity: ScoreIdentity, day: date = DAY, **kwargs) -> QueueItemCreate:
    return QueueItemCreate(kind=JobKind.RAW_SCORE, identity=identity, day=day, **kwargs)


def test_unique_keys(identity) -> None:
    testing = TestingContext(requesting_user_id="tester")

    assert _smart(identity).unique_key == "user-1_proj-1_forum_2024-03-20"
    assert _raw(identity).unique_key == "user-1_proj-1_forum_2024-03-20_RAW"
    assert (
        _raw(identity, testing=testing).unique_key
        == "user-1_proj-1_forum_2024-03-20_RAW_TEST_tester"
    )


def test_enqueue_is_idempotent(queue, identity) -> None:
    first = queue.enqueue_many([_smart(identity)])
    second = queue.enqueue_many([_smart(identity)])

    assert len(first) == 1
    assert first[0].status is QueueStatus.PENDING
    assert first[0].attempts == 0
    assert second == []
    assert queue.count_by_status(QueueStatus.PENDING) == 1


def test_concurrent_enqueue_yields_single_item(queue, identity) -> None:
    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: queue.enqueue_many([_smart(identity)]), range(8)))

    assert sum(len(inserted) for inserted in results) == 1
    assert queue.count_by_status(QueueStatus.PENDING) == 1


def test_testing_context_round_trips(queue, identity) -> None:
    testing = TestingContext(
        requesting_user_id="tester",
        smart=PromptOverride(model="gpt-test", temperature=0.0),
    )

    (item,) = queue.enqueue_many([_smart(identity, testing=testing)])
    loaded = queue.get(item.id)

    assert loaded is not None
    assert loaded.testing == testing
    assert loaded.key.test_requesting_user == "tester"


def test_claim_succeeds_once(queue, identity) -> None:
    (item,) = queue.enqueue_many([_smart(identity)])

    claimed = queue.claim(item.id, now=NOW)
    again = queue.claim(item.id, now=NOW)

    assert claimed is not None
    assert claimed.status is QueueStatus.RUNNING
    assert claimed.started_at == NOW
    assert again is None


def test_transitions_require_running(queue, identity) -> None:
    (item,) = queue.enqueue_many([_smart(identity)])

    assert queue.complete(item.id, now=NOW) is False
    assert queue.mark_error(item.id, now=NOW) is False

    queue.claim(item.id, now=NOW)
    assert queue.complete(item.id, now=NOW) is True

    done = queue.get(item.id)
    assert done.status is QueueStatus.COMPLETED
    assert done.finished_at == NOW
    assert queue.release(item.id) is False


def test_release_and_reset(queue, identity) -> None:
    (item,) = queue.enqueue_many([_smart(identity)])

    queue.claim(item.id, now=NOW)
    assert queue.release(item.id)
    released = queue.get(item.id)
    assert released.status is QueueStatus.PENDING
    assert released.attempts == 0
    assert released.started_at is None

    queue.claim(item.id, now=NOW)
    assert queue.reset_for_retry(item.id)
    assert queue.get(item.id).attempts == 1


def test_list_by_status_puts_raw_first(queue, identity) -> None:
    smart = queue.enqueue_many([_smart(identity)])
    raws = queue.enqueue_many(
        [_raw(identity, DAY - timedelta(days=1)), _raw(identity, DAY)]
    )

    pending = queue.list_by_status(QueueStatus.PENDING)

    assert [item.id for item in pending] == [raws[0].id, raws[1].id, smart[0].id]
    assert len(queue.list_by_status(QueueStatus.PENDING, limit=1)) == 1


def test_count_outstanding_raw_is_namespaced(queue, identity) -> None:
    testing = TestingContext(requesting_user_id="tester")
    items = queue.enqueue_many(
        [
            _raw(identity, DAY - timedelta(days=1)),
            _raw(identity, DAY),
            _raw(identity, DAY, testing=testing),
        ]
    )
    queue.claim(items[0].id, now=NOW)
    queue.complete(items[0].id, now=NOW)

    assert queue.count_outstanding_raw(identity.key(DAY)) == 1
    assert queue.count_outstanding_raw(identity.key(DAY, "tester")) == 1
    assert queue.count_outstanding_raw(identity.key(DAY, "other")) == 0


def test_prune_completed_removes_old_items(queue, identity) -> None:
    old, recent = queue.enqueue_many([_raw(identity, DAY - timedelta(days=1)), _raw(identity)])
    for item, finished in ((old, NOW - timedelta(days=10)), (recent, NOW)):
        queue.claim(item.id, now=finished)
        queue.complete(item.id, now=finished)

    pruned = queue.prune_completed(older_than=NOW - timedelta(days=7))

    assert pruned == 1
    assert queue.get(old.id) is None
    assert queue.get(recent.id) is not None
