from __future__ import annotations

from datetime import date

import pytest

from score_engine.domain.exceptions import UnknownSignalTypeError
from score_engine.domain.models import (
    JobKind,
    ProjectSignal,
    QueueStatus,
    ScoreIdentity,
    TestingContext,
)
from score_engine.use_cases.trigger_scoring import ScoringTrigger, default_scoring_day

DAY = date(2024, 3, 20)


@pytest.fixture
def trigger(repo, queue, dispatcher, registry) -> ScoringTrigger:
    return ScoringTrigger(
        store=repo,
        queue=queue,
        dispatcher=dispatcher,
        registry=registry,
        max_in_flight=20,
    )


def test_default_day_is_yesterday() -> None:
    assert default_scoring_day(date(2024, 3, 1)) == date(2024, 2, 29)


def test_request_score_is_idempotent(trigger, dispatcher, identity) -> None:
    first = trigger.request_score(identity, DAY)
    second = trigger.request_score(identity, DAY)

    assert first.inserted and first.dispatched
    assert second.inserted is False
    assert second.item.id == first.item.id
    assert dispatcher.dispatched_ids == [first.item.id]


def test_testing_request_uses_own_item(trigger, identity) -> None:
    production = trigger.request_score(identity, DAY)
    testing = trigger.request_score(
        identity, DAY, testing=TestingContext(requesting_user_id="tester")
    )

    assert testing.inserted
    assert testing.item.id != production.item.id
    assert testing.item.unique_key.endswith("_TEST_tester")


def test_daily_scoring_enqueues_enabled_active_identities(
    repo, queue, trigger, forum_signal
) -> None:
    repo.save_project_signal(
        ProjectSignal(
            project_id="proj-1",
            signal_type_id="chat",
            signal_type_name="discord",
            max_value=10,
            previous_days=5,
            enabled=False,
        )
    )
    active = ScoreIdentity(user_id="a", project_id="proj-1", signal_type_id="forum")
    disabled = ScoreIdentity(user_id="a", project_id="proj-1", signal_type_id="chat")
    unconfigured = ScoreIdentity(user_id="b", project_id="other", signal_type_id="x")
    for ident in (active, disabled, unconfigured):
        repo.save_daily_activity(ident, date(2024, 3, 15), [{"post": "hi"}])

    result = trigger.enqueue_daily_scoring(DAY)

    assert result.identities == 3
    assert result.skipped == 2
    assert [item.identity for item in result.enqueued] == [active]
    assert result.dispatched == 1
    assert queue.list_by_status(QueueStatus.PENDING)[0].kind is JobKind.SMART_SCORE


def test_daily_scoring_fails_fast_on_unknown_signal_type(repo, trigger) -> None:
    repo.save_project_signal(
        ProjectSignal(
            project_id="p",
            signal_type_id="s",
            signal_type_name="unknown_platform",
            max_value=10,
            previous_days=5,
        )
    )

    with pytest.raises(UnknownSignalTypeError):
        trigger.enqueue_daily_scoring(DAY)
