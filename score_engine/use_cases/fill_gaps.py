"""Gap Filler run: repair historical holes in production smart scores."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime

from score_engine.config.logging_config import get_logger
from score_engine.domain.exceptions import DuplicateRecordError
from score_engine.domain.protocols import ScoreStoreProtocol
from score_engine.observability.metrics import GAP_FILL_ROWS_TOTAL
from score_engine.observability.tracing import correlation_scope
from score_engine.services.gap_filler import ensure_gaps_safe, interpolate_gap

logger = get_logger(__name__)


@dataclass(slots=True)
class GapFillReport:
    gaps: int = 0
    inserted: int = 0
    already_filled: int = 0


class GapFilling:
    """Finds gaps, checks them all for safety, then interpolates row by row."""

    def __init__(
        self, *, store: ScoreStoreProtocol, batch_limit: int, total_score_cap: int
    ) -> None:
        self._store = store
        self._batch_limit = batch_limit
        self._total_score_cap = total_score_cap

    def execute(
        self, *, today: date | None = None, correlation_id: str | None = None
    ) -> GapFillReport:
        """Fill up to ``batch_limit`` gaps.

        Raises:
            GapFillSafetyError: Any gap reaches yesterday; nothing is written
            RepositoryError: Insert failed for a reason other than uniqueness
        """
        today = today or datetime.now(tz=UTC).date()
        report = GapFillReport()

        with correlation_scope(correlation_id):
            gaps = self._store.find_score_gaps(limit=self._batch_limit)
            report.gaps = len(gaps)
            ensure_gaps_safe(gaps, today)

            for gap in gaps:
                logger.info(
                    "gap_fill_started",
                    identity=str(gap.identity),
                    gap_start=gap.gap_start.isoformat(),
                    gap_end=gap.gap_end.isoformat(),
                    value_before=gap.value_before,
                    value_after=gap.value_after,
                )
                for record in interpolate_gap(gap):
                    try:
                        self._store.insert_smart_score(record)
                    except DuplicateRecordError:
                        report.already_filled += 1
                        GAP_FILL_ROWS_TOTAL.labels(outcome="duplicate").inc()
                        logger.info(
                            "gap_fill_row_exists",
                            request_id=record.request_id,
                        )
                        continue

                    report.inserted += 1
                    GAP_FILL_ROWS_TOTAL.labels(outcome="inserted").inc()
                    self._store.update_total_score_history(
                        record.user_id,
                        record.project_id,
                        record.day,
                        cap=self._total_score_cap,
                    )

            logger.info(
                "gap_fill_completed",
                gaps=report.gaps,
                inserted=report.inserted,
                already_filled=report.already_filled,
            )
        return report


__all__ = ["GapFillReport", "GapFilling"]
