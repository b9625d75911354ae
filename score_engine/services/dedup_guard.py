"""Write-then-prune protocol for rows that concurrent writers may duplicate.

Every racing write path inserts its row and immediately resolves duplicates
for the same logical identity, keeping only the highest insertion id. Whichever
writer's cleanup runs last leaves exactly the newest row, so concurrent
duplicate computations never double-count into totals.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from score_engine.config.logging_config import get_logger
from score_engine.domain.models import (
    RawScoreRecord,
    RecordKind,
    ScoreKey,
    SmartScoreRecord,
)
from score_engine.domain.protocols import ScoreStoreProtocol
from score_engine.domain.scoring_constants import LAST_CHECKED_TAG
from score_engine.observability.metrics import DEDUP_ROWS_PRUNED_TOTAL

logger = get_logger(__name__)


@dataclass(slots=True)
class DedupOutcome:
    kept_id: int | None
    deleted_ids: list[int] = field(default_factory=list)


class DedupGuard:
    """Single entry point for race-prone score and sentinel writes."""

    def __init__(self, store: ScoreStoreProtocol) -> None:
        self._store = store

    def write_raw_score(self, record: RawScoreRecord) -> int:
        row_id = self._store.insert_raw_score(record)
        self.resolve_duplicates(RecordKind.RAW_SCORE, record.key)
        return row_id

    def write_smart_score(self, record: SmartScoreRecord) -> int:
        row_id = self._store.insert_smart_score(record)
        self.resolve_duplicates(RecordKind.SMART_SCORE, record.key)
        return row_id

    def mark_in_flight(self, key: ScoreKey) -> int:
        """Set the ``last_checked`` liveness sentinel for an identity."""

        row_id = self._store.insert_sentinel(key, LAST_CHECKED_TAG)
        self.resolve_duplicates(RecordKind.LAST_CHECKED, key, tag=LAST_CHECKED_TAG)
        return row_id

    def clear_in_flight(self, key: ScoreKey) -> int:
        ids = self._store.find_record_ids(
            RecordKind.LAST_CHECKED, key, tag=LAST_CHECKED_TAG
        )
        if not ids:
            return 0
        removed = self._store.delete_records(RecordKind.LAST_CHECKED, ids)
        logger.debug("last_checked_cleared", identity=str(key.identity))
        return removed

    def resolve_duplicates(
        self, kind: RecordKind, key: ScoreKey, *, tag: str | None = None
    ) -> DedupOutcome:
        """Keep the newest row for ``key`` and delete the rest.

        Safe to run any number of times; a second run finds a single row.
        """
        ids = self._store.find_record_ids(kind, key, tag=tag)
        if not ids:
            return DedupOutcome(kept_id=None)

        kept_id, *superseded = sorted(ids, reverse=True)
        if superseded:
            self._store.delete_records(kind, superseded)
            DEDUP_ROWS_PRUNED_TOTAL.labels(record=kind.value).inc(len(superseded))
            logger.info(
                "dedup_rows_pruned",
                record=kind.value,
                identity=str(key.identity),
                day=key.day.isoformat() if key.day else None,
                kept_id=kept_id,
                deleted=len(superseded),
            )
        return DedupOutcome(kept_id=kept_id, deleted_ids=superseded)


__all__ = ["DedupGuard", "DedupOutcome"]
