"""Aggregate (smart score) use case.

1. Resolve the project signal; disabled signals end the job.
2. Production runs skip when exactly one smart score already exists for the
   day. More than one means an unresolved race and the job proceeds so the
   dedup guard can clean up.
3. Set the ``last_checked`` sentinel and fan out raw work. While raw work is
   outstanding the job reports ``waiting`` and keeps the sentinel.
4. Collapse the raw window to the newest row per day, run the top-band
   aggregation, ask the oracle to explain the top-band days, persist through
   the dedup guard and refresh the daily total.
5. Clear the sentinel, also when anything above raises. The skips in steps 1
   and 2 clear a sentinel left behind by an earlier waiting run.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from enum import StrEnum

from score_engine.config.logging_config import get_logger
from score_engine.domain.exceptions import ScoreEngineError
from score_engine.domain.models import (
    JobKind,
    QueueItem,
    RawScoreRecord,
    SignalConfig,
    SmartScoreRecord,
)
from score_engine.domain.protocols import ScoreStoreProtocol, ScoringOracleProtocol
from score_engine.domain.scoring_constants import NO_ACTIVITY_SUMMARY_TEMPLATE
from score_engine.observability.metrics import ORACLE_CALLS_TOTAL
from score_engine.services.dedup_guard import DedupGuard
from score_engine.services.signal_registry import SignalTypeRegistry
from score_engine.services.smart_score import (
    compute_smart_score,
    observations_from_records,
)
from score_engine.use_cases.fan_out import FanOutResult, RawScoreFanOut, lookback_window

logger = get_logger(__name__)


class AggregateOutcome(StrEnum):
    SCORED = "scored"
    WAITING = "waiting"
    SKIPPED_EXISTING = "skipped_existing"
    SKIPPED_DISABLED = "skipped_disabled"


@dataclass(slots=True)
class AggregateResult:
    outcome: AggregateOutcome
    record: SmartScoreRecord | None = None
    fan_out: FanOutResult | None = None
    total_score: int | None = None


def latest_per_day(records: list[RawScoreRecord]) -> list[RawScoreRecord]:
    """Keep the highest-id row for each day, ordered by day."""

    newest: dict[date, RawScoreRecord] = {}
    for record in records:
        current = newest.get(record.day)
        if current is None or (record.id or 0) > (current.id or 0):
            newest[record.day] = record
    return [newest[day] for day in sorted(newest)]


class AggregateScoring:
    """Computes and persists one day's smart score for a queue item."""

    def __init__(
        self,
        *,
        store: ScoreStoreProtocol,
        guard: DedupGuard,
        registry: SignalTypeRegistry,
        fan_out: RawScoreFanOut,
        oracle: ScoringOracleProtocol,
        total_score_cap: int,
    ) -> None:
        self._store = store
        self._guard = guard
        self._registry = registry
        self._fan_out = fan_out
        self._oracle = oracle
        self._total_score_cap = total_score_cap

    def execute(self, item: QueueItem) -> AggregateResult:
        signal = self._registry.resolve(
            self._store, item.project_id, item.signal_type_id
        )
        key = item.key
        log_context = {
            "identity": str(item.identity),
            "day": item.day.isoformat(),
            "testing": key.is_testing,
        }

        if not signal.enabled:
            logger.info("smart_score_skipped_disabled", **log_context)
            self._guard.clear_in_flight(key)
            return AggregateResult(outcome=AggregateOutcome.SKIPPED_DISABLED)

        if not key.is_testing:
            existing = self._store.get_smart_scores(key)
            if len(existing) == 1:
                logger.info(
                    "smart_score_skipped_existing",
                    existing_id=existing[0].id,
                    **log_context,
                )
                self._guard.clear_in_flight(key)
                return AggregateResult(outcome=AggregateOutcome.SKIPPED_EXISTING)

        self._guard.mark_in_flight(key)
        try:
            fan_out = self._fan_out.execute(item, signal)
            if fan_out.required:
                logger.info(
                    "smart_score_waiting_for_raw",
                    outstanding=fan_out.outstanding,
                    enqueued=fan_out.enqueued,
                    **log_context,
                )
                return AggregateResult(
                    outcome=AggregateOutcome.WAITING, fan_out=fan_out
                )

            record = self._build_record(item, signal)
            record.id = self._guard.write_smart_score(record)

            total_score: int | None = None
            if not key.is_testing:
                total_score = self._store.update_total_score_history(
                    item.user_id, item.project_id, item.day, cap=self._total_score_cap
                )
        except Exception:
            self._guard.clear_in_flight(key)
            raise

        self._guard.clear_in_flight(key)
        logger.info(
            "smart_score_written",
            value=record.value,
            max_value=record.max_value,
            top_band_days=len(record.top_band_days),
            total_score=total_score,
            **log_context,
        )
        return AggregateResult(
            outcome=AggregateOutcome.SCORED,
            record=record,
            fan_out=fan_out,
            total_score=total_score,
        )

    def _build_record(self, item: QueueItem, signal: SignalConfig) -> SmartScoreRecord:
        key = item.key
        start, end = lookback_window(item.day, signal.previous_days)
        raw_records = latest_per_day(
            self._store.get_raw_scores(
                item.identity,
                start,
                end,
                test_requesting_user=key.test_requesting_user,
            )
        )

        base = {
            "user_id": item.user_id,
            "project_id": item.project_id,
            "signal_type_id": item.signal_type_id,
            "day": item.day,
            "max_value": signal.max_value,
            "previous_days": signal.previous_days,
            "test_requesting_user": key.test_requesting_user,
        }

        result = compute_smart_score(
            observations_from_records(raw_records),
            previous_days=signal.previous_days,
            max_value=signal.max_value,
            tuning=signal.tuning,
            reference_date=item.day + timedelta(days=1),
        )
        if result.is_empty:
            return SmartScoreRecord(
                **base,
                value=0,
                summary=NO_ACTIVITY_SUMMARY_TEMPLATE.format(
                    previous_days=signal.previous_days
                ),
            )

        top_band = set(result.top_band_days)
        band_payload = [
            {
                "day": record.day.isoformat(),
                "raw_value": record.raw_value,
                "max_value": record.max_value,
                "description": record.description,
                "explanation": record.explanation,
            }
            for record in raw_records
            if record.day in top_band
        ]
        prompt = signal.prompt_for(
            JobKind.SMART_SCORE,
            testing=item.testing,
            username=item.user_id,
            day=item.day,
        )
        try:
            oracle_result = self._oracle.score(band_payload, prompt)
        except ScoreEngineError:
            ORACLE_CALLS_TOTAL.labels(
                kind=JobKind.SMART_SCORE.value, outcome="error"
            ).inc()
            raise
        ORACLE_CALLS_TOTAL.labels(kind=JobKind.SMART_SCORE.value, outcome="success").inc()

        if round(oracle_result.value) != result.score:
            logger.debug(
                "smart_score_oracle_value_overridden",
                oracle_value=oracle_result.value,
                computed=result.score,
            )

        return SmartScoreRecord(
            **base,
            value=result.score,
            summary=oracle_result.summary,
            description=oracle_result.description,
            explanation=oracle_result.explanation,
            top_band_days=sorted(top_band),
            request_id=oracle_result.request_id,
            model=oracle_result.model,
            prompt_tokens=oracle_result.prompt_tokens,
            completion_tokens=oracle_result.completion_tokens,
            logs=oracle_result.logs,
        )


__all__ = [
    "AggregateOutcome",
    "AggregateResult",
    "AggregateScoring",
    "latest_per_day",
]
