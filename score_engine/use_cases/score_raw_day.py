"""Raw score use case: one oracle call for one day of activity."""

from __future__ import annotations

from score_engine.config.logging_config import get_logger
from score_engine.domain.exceptions import MissingActivityError, ScoreEngineError
from score_engine.domain.models import JobKind, QueueItem, RawScoreRecord
from score_engine.domain.protocols import (
    ActivitySourceProtocol,
    ScoreStoreProtocol,
    ScoringOracleProtocol,
)
from score_engine.observability.metrics import ORACLE_CALLS_TOTAL
from score_engine.services.dedup_guard import DedupGuard
from score_engine.services.signal_registry import SignalTypeRegistry
from score_engine.services.smart_score import round_half_up

logger = get_logger(__name__)


class RawDayScoring:
    """Scores a single day and persists it through the dedup guard."""

    def __init__(
        self,
        *,
        store: ScoreStoreProtocol,
        guard: DedupGuard,
        registry: SignalTypeRegistry,
        activity_source: ActivitySourceProtocol,
        oracle: ScoringOracleProtocol,
    ) -> None:
        self._store = store
        self._guard = guard
        self._registry = registry
        self._activity_source = activity_source
        self._oracle = oracle

    def execute(self, item: QueueItem) -> RawScoreRecord | None:
        """Score ``item.day``.

        Returns:
            The persisted record, or ``None`` when the signal is disabled

        Raises:
            MissingActivityError: No activity is stored for the day
            OracleError: Oracle call failed
            RepositoryError: Storage failed
        """
        signal = self._registry.resolve(
            self._store, item.project_id, item.signal_type_id
        )
        if not signal.enabled:
            logger.info(
                "raw_score_skipped_disabled",
                identity=str(item.identity),
                day=item.day.isoformat(),
            )
            return None

        activity = self._activity_source.get_daily_activity(
            item.identity, item.day, item.day
        )
        records = [record for day in activity for record in day.records]
        if not records:
            raise MissingActivityError(
                f"No activity for {item.identity} on {item.day.isoformat()}"
            )

        prompt = signal.prompt_for(
            JobKind.RAW_SCORE,
            testing=item.testing,
            username=item.user_id,
            day=item.day,
        )
        try:
            result = self._oracle.score(records, prompt)
        except ScoreEngineError:
            ORACLE_CALLS_TOTAL.labels(kind=JobKind.RAW_SCORE.value, outcome="error").inc()
            raise
        ORACLE_CALLS_TOTAL.labels(kind=JobKind.RAW_SCORE.value, outcome="success").inc()

        raw_value = round_half_up(result.value)
        if raw_value > signal.max_value:
            logger.warning(
                "raw_score_value_clamped",
                identity=str(item.identity),
                day=item.day.isoformat(),
                oracle_value=result.value,
                max_value=signal.max_value,
            )
            raw_value = signal.max_value

        record = RawScoreRecord(
            user_id=item.user_id,
            project_id=item.project_id,
            signal_type_id=item.signal_type_id,
            day=item.day,
            raw_value=raw_value,
            max_value=signal.max_value,
            description=result.description or result.summary,
            explanation=result.explanation,
            request_id=result.request_id,
            model=result.model,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            logs=result.logs,
            test_requesting_user=item.key.test_requesting_user,
        )
        record.id = self._guard.write_raw_score(record)

        logger.info(
            "raw_score_written",
            identity=str(item.identity),
            day=item.day.isoformat(),
            raw_value=raw_value,
            max_value=signal.max_value,
            tokens_used=result.tokens_used,
            testing=item.testing is not None,
        )
        return record


__all__ = ["RawDayScoring"]
