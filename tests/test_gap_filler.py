from __future__ import annotations

from datetime import date, timedelta

import pytest

from score_engine.domain.exceptions import GapFillSafetyError
from score_engine.domain.models import ScoreGap, ScoreIdentity
from score_engine.services.gap_filler import (
    ensure_gaps_safe,
    gap_fill_request_id,
    interpolate_gap,
    per_day_step,
)
from score_engine.use_cases.fill_gaps import GapFilling

TODAY = date(2024, 4, 1)


def _gap(start: date, end: date, before: int, after: int, **kwargs) -> ScoreGap:
    values = {
        "user_id": "u",
        "project_id": "p",
        "signal_type_id": "s",
        "gap_start": start,
        "gap_end": end,
        "value_before": before,
        "value_after": after,
        "max_value_before": 100,
        "max_value_after": 100,
        "previous_days_before": 10,
        "previous_days_after": 10,
    }
    values.update(kwargs)
    return ScoreGap(**values)


def test_interpolation_example() -> None:
    gap = _gap(date(2024, 3, 2), date(2024, 3, 4), 10, 40)

    rows = interpolate_gap(gap)

    assert per_day_step(10, 40, 3) == 8
    assert [row.value for row in rows] == [18, 26, 34]
    assert [row.day for row in rows] == [
        date(2024, 3, 2),
        date(2024, 3, 3),
        date(2024, 3, 4),
    ]
    assert rows[0].request_id == "u_p_s_2024-03-02_GAP_FILL"
    assert all(row.max_value == 100 and row.previous_days == 10 for row in rows)
    assert all(row.test_requesting_user is None for row in rows)


def test_descending_interpolation_never_overshoots() -> None:
    gap = _gap(date(2024, 3, 2), date(2024, 3, 3), 40, 10, max_value_after=70)

    rows = interpolate_gap(gap)

    assert [row.value for row in rows] == [30, 20]
    assert [row.max_value for row in rows] == [90, 80]


def test_safety_rejects_gap_reaching_yesterday() -> None:
    safe = _gap(TODAY - timedelta(days=5), TODAY - timedelta(days=2), 1, 2)
    unsafe = _gap(TODAY - timedelta(days=3), TODAY - timedelta(days=1), 1, 2)

    ensure_gaps_safe([safe], TODAY)
    with pytest.raises(GapFillSafetyError):
        ensure_gaps_safe([safe, unsafe], TODAY)


@pytest.fixture
def gap_filling(repo) -> GapFilling:
    return GapFilling(store=repo, batch_limit=10, total_score_cap=100)


def test_fills_gap_and_updates_totals(
    repo, identity, gap_filling, make_smart_score
) -> None:
    start = TODAY - timedelta(days=10)
    repo.insert_smart_score(make_smart_score(identity, start, 10))
    repo.insert_smart_score(make_smart_score(identity, start + timedelta(days=4), 40))

    report = gap_filling.execute(today=TODAY)

    assert (report.gaps, report.inserted, report.already_filled) == (1, 3, 0)
    filled = repo.get_smart_scores(identity.key(start + timedelta(days=2)))
    assert [row.value for row in filled] == [26]
    assert repo.get_total_score("user-1", "proj-1", start + timedelta(days=3)) == 34
    assert repo.find_score_gaps(limit=10) == []


def test_rerun_counts_already_filled_rows(
    repo, identity, gap_filling, make_smart_score
) -> None:
    start = TODAY - timedelta(days=10)
    gap_day = start + timedelta(days=1)
    repo.insert_smart_score(make_smart_score(identity, start, 10))
    repo.insert_smart_score(make_smart_score(identity, start + timedelta(days=3), 40))
    gap = _gap(
        gap_day,
        gap_day,
        10,
        40,
        user_id=identity.user_id,
        project_id=identity.project_id,
        signal_type_id=identity.signal_type_id,
    )
    # A test-namespace row holding the production request id is invisible to
    # gap detection but still collides on insert.
    repo.insert_smart_score(
        make_smart_score(
            identity,
            gap_day,
            1,
            test_requesting_user="tester",
            request_id=gap_fill_request_id(gap, gap_day),
        )
    )

    report = gap_filling.execute(today=TODAY)

    assert report.already_filled == 1
    assert report.inserted == 1


def test_unsafe_gap_aborts_before_writing(
    repo, identity, gap_filling, make_smart_score
) -> None:
    repo.insert_smart_score(make_smart_score(identity, TODAY - timedelta(days=4), 10))
    repo.insert_smart_score(make_smart_score(identity, TODAY, 40))
    other = ScoreIdentity(user_id="early", project_id="proj-1", signal_type_id="forum")
    repo.insert_smart_score(make_smart_score(other, TODAY - timedelta(days=20), 10))
    repo.insert_smart_score(make_smart_score(other, TODAY - timedelta(days=15), 20))

    with pytest.raises(GapFillSafetyError):
        gap_filling.execute(today=TODAY)

    assert len(repo.find_score_gaps(limit=10)) == 2
