"""Linear interpolation of missing smart score ranges."""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import date, timedelta

from score_engine.domain.exceptions import GapFillSafetyError
from score_engine.domain.models import ScoreGap, SmartScoreRecord
from score_engine.domain.scoring_constants import GAP_FILL_REQUEST_SUFFIX


def per_day_step(before: int, after: int, length: int) -> int:
    """``ceil((after - before) / (length + 1))`` for a gap of ``length`` days."""

    return math.ceil((after - before) / (length + 1))


def gap_fill_request_id(gap: ScoreGap, day: date) -> str:
    return f"{gap.identity}_{day.isoformat()}_{GAP_FILL_REQUEST_SUFFIX}"


def ensure_gaps_safe(gaps: Sequence[ScoreGap], today: date) -> None:
    """Reject the whole batch if any gap reaches the most recent expected day.

    Raises:
        GapFillSafetyError: Before anything is written
    """
    yesterday = today - timedelta(days=1)
    for gap in gaps:
        if gap.gap_end >= yesterday:
            raise GapFillSafetyError(gap.gap_end, yesterday)


def interpolate_gap(gap: ScoreGap) -> list[SmartScoreRecord]:
    """Synthetic production rows for every day of ``gap``."""

    length = gap.length
    value_step = per_day_step(gap.value_before, gap.value_after, length)
    max_value_step = per_day_step(gap.max_value_before, gap.max_value_after, length)
    previous_days_step = per_day_step(
        gap.previous_days_before, gap.previous_days_after, length
    )

    rows: list[SmartScoreRecord] = []
    for offset in range(length):
        day = gap.gap_start + timedelta(days=offset)
        rows.append(
            SmartScoreRecord(
                user_id=gap.user_id,
                project_id=gap.project_id,
                signal_type_id=gap.signal_type_id,
                day=day,
                value=gap.value_before + value_step * (offset + 1),
                max_value=gap.max_value_before + max_value_step * (offset + 1),
                previous_days=gap.previous_days_before
                + previous_days_step * (offset + 1),
                summary=f"Gap fill for {day.isoformat()}",
                request_id=gap_fill_request_id(gap, day),
            )
        )
    return rows


__all__ = [
    "ensure_gaps_safe",
    "gap_fill_request_id",
    "interpolate_gap",
    "per_day_step",
]
