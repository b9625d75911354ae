from __future__ import annotations

from datetime import date, timedelta

import pytest

from score_engine.adapters.activity_source import RepositoryActivitySource
from score_engine.domain.exceptions import OracleError
from score_engine.domain.models import (
    JobKind,
    QueueItemCreate,
    QueueStatus,
    TestingContext,
)
from score_engine.domain.scoring_constants import LAST_CHECKED_TAG
from score_engine.use_cases.fan_out import RawScoreFanOut
from score_engine.use_cases.score_aggregate import (
    AggregateOutcome,
    AggregateScoring,
    latest_per_day,
)

DAY = date(2024, 3, 20)


@pytest.fixture
def build_scoring(repo, queue, guard, registry, dispatcher, forum_signal):
    def _build(oracle) -> AggregateScoring:
        fan_out = RawScoreFanOut(
            store=repo,
            queue=queue,
            dispatcher=dispatcher,
            activity_source=RepositoryActivitySource(repo),
            max_in_flight=20,
        )
        return AggregateScoring(
            store=repo,
            guard=guard,
            registry=registry,
            fan_out=fan_out,
            oracle=oracle,
            total_score_cap=100,
        )

    return _build


def _enqueue(queue, identity, testing=None):
    (item,) = queue.enqueue_many(
        [
            QueueItemCreate(
                kind=JobKind.SMART_SCORE, identity=identity, day=DAY, testing=testing
            )
        ]
    )
    return item


def _seed_scored_days(repo, identity, make_raw_score, values, *, tester=None) -> None:
    for offset, value in enumerate(values):
        day = DAY - timedelta(days=offset)
        repo.save_daily_activity(identity, day, [{"post": f"day {offset}"}])
        repo.insert_raw_score(
            make_raw_score(identity, day, value, test_requesting_user=tester)
        )


def test_latest_per_day_keeps_highest_id(identity, make_raw_score) -> None:
    older = make_raw_score(identity, DAY, 2)
    older.id = 1
    newer = make_raw_score(identity, DAY, 9)
    newer.id = 5
    other = make_raw_score(identity, DAY - timedelta(days=1), 4)
    other.id = 3

    result = latest_per_day([newer, other, older])

    assert [(r.day, r.raw_value) for r in result] == [
        (DAY - timedelta(days=1), 4),
        (DAY, 9),
    ]


def test_scores_window_and_updates_total(
    repo, queue, identity, oracle, build_scoring, make_raw_score
) -> None:
    _seed_scored_days(repo, identity, make_raw_score, [10, 9])
    item = _enqueue(queue, identity)

    result = build_scoring(oracle).execute(item)

    assert result.outcome is AggregateOutcome.SCORED
    assert result.record.value == 8
    assert result.record.top_band_days == [DAY - timedelta(days=1), DAY]
    assert result.total_score == 8
    assert repo.get_total_score("user-1", "proj-1", DAY) == 8
    (stored,) = repo.get_smart_scores(identity.key(DAY))
    assert stored.summary == "steady participation"
    assert repo.get_sentinel(identity.key(DAY), LAST_CHECKED_TAG) is None

    (records, prompt) = oracle.calls[0]
    assert len(oracle.calls) == 1
    assert {r["day"] for r in records} == {DAY.isoformat(), (DAY - timedelta(days=1)).isoformat()}
    assert "user-1" in prompt.prompt


def test_waits_for_missing_raw_scores(
    repo, queue, identity, oracle, dispatcher, build_scoring
) -> None:
    repo.save_daily_activity(identity, DAY, [{"post": "hello"}])
    item = _enqueue(queue, identity)

    result = build_scoring(oracle).execute(item)

    assert result.outcome is AggregateOutcome.WAITING
    assert result.fan_out.enqueued == 1
    assert oracle.calls == []
    assert repo.get_smart_scores(identity.key(DAY)) == []
    assert repo.get_sentinel(identity.key(DAY), LAST_CHECKED_TAG) is not None
    assert len(dispatcher.calls) == 1


def test_no_activity_writes_zero_without_oracle(
    repo, queue, identity, oracle, build_scoring
) -> None:
    item = _enqueue(queue, identity)

    result = build_scoring(oracle).execute(item)

    assert result.outcome is AggregateOutcome.SCORED
    assert result.record.value == 0
    assert result.record.summary == "No activity in the past 10 days"
    assert oracle.calls == []


def test_skips_existing_production_score(
    repo, queue, identity, oracle, build_scoring, make_smart_score
) -> None:
    repo.insert_smart_score(make_smart_score(identity, DAY, 5, max_value=10))
    item = _enqueue(queue, identity)

    result = build_scoring(oracle).execute(item)

    assert result.outcome is AggregateOutcome.SKIPPED_EXISTING
    assert oracle.calls == []


def test_duplicate_scores_are_recomputed_and_pruned(
    repo, queue, identity, oracle, build_scoring, make_smart_score, make_raw_score
) -> None:
    repo.insert_smart_score(make_smart_score(identity, DAY, 5, max_value=10))
    repo.insert_smart_score(make_smart_score(identity, DAY, 6, max_value=10))
    _seed_scored_days(repo, identity, make_raw_score, [10, 9])
    item = _enqueue(queue, identity)

    result = build_scoring(oracle).execute(item)

    assert result.outcome is AggregateOutcome.SCORED
    (remaining,) = repo.get_smart_scores(identity.key(DAY))
    assert remaining.id == result.record.id
    assert remaining.value == 8


def test_disabled_signal_is_skipped(
    repo, queue, identity, oracle, build_scoring, forum_signal
) -> None:
    repo.save_project_signal(forum_signal.model_copy(update={"enabled": False}))
    item = _enqueue(queue, identity)

    result = build_scoring(oracle).execute(item)

    assert result.outcome is AggregateOutcome.SKIPPED_DISABLED
    assert queue.count_by_status(QueueStatus.PENDING) == 1


def test_disabled_after_waiting_clears_sentinel(
    repo, queue, identity, oracle, build_scoring, forum_signal
) -> None:
    repo.save_daily_activity(identity, DAY, [{"post": "hello"}])
    item = _enqueue(queue, identity)
    scoring = build_scoring(oracle)
    assert scoring.execute(item).outcome is AggregateOutcome.WAITING
    assert repo.get_sentinel(identity.key(DAY), LAST_CHECKED_TAG) is not None

    repo.save_project_signal(forum_signal.model_copy(update={"enabled": False}))
    result = scoring.execute(item)

    assert result.outcome is AggregateOutcome.SKIPPED_DISABLED
    assert repo.get_sentinel(identity.key(DAY), LAST_CHECKED_TAG) is None


def test_existing_score_after_waiting_clears_sentinel(
    repo, queue, identity, oracle, build_scoring, make_smart_score
) -> None:
    repo.save_daily_activity(identity, DAY, [{"post": "hello"}])
    item = _enqueue(queue, identity)
    scoring = build_scoring(oracle)
    assert scoring.execute(item).outcome is AggregateOutcome.WAITING

    repo.insert_smart_score(make_smart_score(identity, DAY, 5, max_value=10))
    result = scoring.execute(item)

    assert result.outcome is AggregateOutcome.SKIPPED_EXISTING
    assert repo.get_sentinel(identity.key(DAY), LAST_CHECKED_TAG) is None


def test_valueless_score_does_not_block_recompute(
    repo, queue, identity, oracle, build_scoring, make_smart_score, make_raw_score
) -> None:
    repo.insert_smart_score(make_smart_score(identity, DAY, None, max_value=10))
    _seed_scored_days(repo, identity, make_raw_score, [10, 9])
    item = _enqueue(queue, identity)

    result = build_scoring(oracle).execute(item)

    assert result.outcome is AggregateOutcome.SCORED
    assert [s.value for s in repo.get_smart_scores(identity.key(DAY))] == [8]


def test_testing_run_recomputes_in_own_namespace(
    repo, queue, identity, oracle, build_scoring, make_smart_score, make_raw_score
) -> None:
    repo.insert_smart_score(make_smart_score(identity, DAY, 5, max_value=10))
    _seed_scored_days(repo, identity, make_raw_score, [10], tester="tester")
    item = _enqueue(queue, identity, testing=TestingContext(requesting_user_id="tester"))

    result = build_scoring(oracle).execute(item)

    assert result.outcome is AggregateOutcome.SCORED
    assert result.record.test_requesting_user == "tester"
    assert result.total_score is None
    assert repo.get_total_score("user-1", "proj-1", DAY) is None
    assert [s.value for s in repo.get_smart_scores(identity.key(DAY))] == [5]


def test_oracle_failure_clears_sentinel(
    repo, queue, identity, make_oracle, build_scoring, make_raw_score
) -> None:
    _seed_scored_days(repo, identity, make_raw_score, [7])
    item = _enqueue(queue, identity)

    with pytest.raises(OracleError):
        build_scoring(make_oracle(error=OracleError("timeout"))).execute(item)

    assert repo.get_sentinel(identity.key(DAY), LAST_CHECKED_TAG) is None
    assert repo.get_smart_scores(identity.key(DAY)) == []
