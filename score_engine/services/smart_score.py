"""Decay-weighted top-band aggregation of raw per-day scores.

The computation is deterministic and must stay bit-for-bit stable across
releases, because stored smart scores are compared day over day. Rounding is
half-up (``floor(x + 0.5)``) rather than Python's banker's rounding.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date

from score_engine.domain.models import RawScoreRecord, SmartScoreTuning


@dataclass(frozen=True, slots=True)
class Observation:
    """One day's raw value and the scale it was scored against."""

    day: date
    raw_value: float
    max_value: float


@dataclass(frozen=True, slots=True)
class WeightedDay:
    day: date
    value: float


@dataclass(frozen=True, slots=True)
class SmartScoreResult:
    """Aggregate score plus the days that formed the top band."""

    score: int
    top_band_days: tuple[date, ...]

    @property
    def is_empty(self) -> bool:
        return not self.top_band_days


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def round2(value: float) -> float:
    return math.floor(value * 100 + 0.5) / 100


def observations_from_records(records: Iterable[RawScoreRecord]) -> list[Observation]:
    return [
        Observation(day=r.day, raw_value=r.raw_value, max_value=r.max_value)
        for r in records
    ]


def decay_multiplier(
    age_in_days: int, previous_days: int, time_decay_fraction: float
) -> float:
    """Weight for an observation ``age_in_days`` old; 0 outside the window.

    The oldest ``time_decay_fraction`` of the window decays linearly to zero.
    """
    if age_in_days < 0 or age_in_days > previous_days:
        return 0.0

    decay_start = math.floor(previous_days * (1 - time_decay_fraction))
    multiplier = 1.0
    if age_in_days > decay_start:
        progress = (age_in_days - decay_start) / (previous_days - decay_start)
        multiplier = 1 - progress
    return max(0.0, min(1.0, multiplier))


def weigh_observation(
    observation: Observation,
    *,
    reference_date: date,
    previous_days: int,
    tuning: SmartScoreTuning,
) -> WeightedDay:
    normalized = observation.raw_value / observation.max_value
    age_in_days = (reference_date - observation.day).days
    multiplier = decay_multiplier(
        age_in_days, previous_days, tuning.time_decay_fraction
    )
    return WeightedDay(day=observation.day, value=round2(normalized * multiplier))


def frequency_multiplier(count: int, tuning: SmartScoreTuning) -> float:
    # Three reachable tiers: below lower, [lower, upper), upper and above.
    if count < tuning.lower_freq_count:
        return tuning.freq_low
    if count < tuning.upper_freq_count:
        return tuning.freq_mid
    return tuning.freq_high


def select_top_band(
    weighted: Sequence[WeightedDay], tuning: SmartScoreTuning
) -> list[WeightedDay]:
    if not weighted:
        return []

    top = max(weighted, key=lambda entry: entry.value)
    threshold = round2(max(0.0, top.value - tuning.top_threshold_lower_bound))
    band = [entry for entry in weighted if entry.value >= threshold]
    if len(band) > tuning.top_band_max_length:
        band = sorted(band, key=lambda entry: entry.value, reverse=True)
        band = band[: tuning.top_band_max_length]
    return band


def compute_smart_score(
    observations: Sequence[Observation],
    *,
    previous_days: int,
    max_value: int,
    tuning: SmartScoreTuning,
    reference_date: date,
) -> SmartScoreResult:
    """Roll a window of raw observations into one score in ``[1, max_value]``.

    Args:
        observations: One entry per day (already collapsed to the newest row)
        previous_days: Lookback window length
        max_value: Scale of the resulting score
        tuning: Signal type tuning tuple
        reference_date: "Today" for age computation

    Returns:
        Score ``0`` with no top-band days when nothing qualifies
    """
    weighted = [
        weigh_observation(
            observation,
            reference_date=reference_date,
            previous_days=previous_days,
            tuning=tuning,
        )
        for observation in observations
    ]
    band = select_top_band(weighted, tuning)
    if not band:
        return SmartScoreResult(score=0, top_band_days=())

    average = round2(sum(entry.value for entry in band) / len(band))
    multiplier = frequency_multiplier(len(band), tuning)
    score = round_half_up(average * max_value * multiplier)
    score = max(1, min(max_value, score))
    return SmartScoreResult(
        score=score, top_band_days=tuple(entry.day for entry in band)
    )


__all__ = [
    "Observation",
    "SmartScoreResult",
    "compute_smart_score",
    "decay_multiplier",
    "frequency_multiplier",
    "observations_from_records",
    "round2",
    "round_half_up",
    "select_top_band",
]
