"""Protocol definitions for dependency inversion.

These abstract interfaces define contracts that adapters must implement.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Protocol

from score_engine.domain.models import (
    DailyActivity,
    OracleResult,
    ProjectSignal,
    PromptConfig,
    RawScoreRecord,
    RecordKind,
    ScoreGap,
    ScoreIdentity,
    ScoreKey,
    SmartScoreRecord,
)
from score_engine.ports.task_queue import QueueStorePort


class ScoreStoreProtocol(Protocol):
    """Persistence for score records, sentinels and project signal settings."""

    def insert_raw_score(self, record: RawScoreRecord) -> int:
        """Append a raw score row.

        Returns:
            Insertion-order id of the new row

        Raises:
            RepositoryError: On storage errors
        """
        ...

    def insert_smart_score(self, record: SmartScoreRecord) -> int:
        """Append a smart score row.

        Raises:
            DuplicateRecordError: If ``request_id`` is already stored
            RepositoryError: On other storage errors
        """
        ...

    def insert_sentinel(self, key: ScoreKey, tag: str) -> int:
        """Append a sentinel row (e.g. ``last_checked``) for an identity."""
        ...

    def find_record_ids(
        self, kind: RecordKind, key: ScoreKey, *, tag: str | None = None
    ) -> list[int]:
        """Ids of rows matching ``key`` ordered newest first.

        ``key.day`` is ignored for sentinels, which are not keyed by day.
        """
        ...

    def delete_records(self, kind: RecordKind, ids: list[int]) -> int:
        """Delete rows by id and return how many were removed."""
        ...

    def get_sentinel(self, key: ScoreKey, tag: str) -> datetime | None:
        """Timestamp of the newest sentinel row, if any."""
        ...

    def get_raw_scores(
        self,
        identity: ScoreIdentity,
        start: date,
        end: date,
        *,
        test_requesting_user: str | None = None,
    ) -> list[RawScoreRecord]:
        """Raw score rows in ``[start, end]`` ordered by id descending."""
        ...

    def get_scored_raw_days(
        self,
        identity: ScoreIdentity,
        start: date,
        end: date,
        *,
        test_requesting_user: str | None = None,
    ) -> set[date]:
        """Days in ``[start, end]`` that already have a raw score."""
        ...

    def get_smart_scores(self, key: ScoreKey) -> list[SmartScoreRecord]:
        """Smart score rows with a value for ``key``, newest id first."""
        ...

    def find_score_gaps(self, *, limit: int) -> list[ScoreGap]:
        """Contiguous missing production smart score ranges between known values."""
        ...

    def update_total_score_history(
        self, user_id: str, project_id: str, day: date, *, cap: int
    ) -> int:
        """Recompute and upsert the capped per-day total across signal types.

        Returns:
            The stored total
        """
        ...

    def get_total_score(self, user_id: str, project_id: str, day: date) -> int | None:
        ...

    def get_project_signal(
        self, project_id: str, signal_type_id: str
    ) -> ProjectSignal | None:
        ...

    def save_project_signal(self, project_signal: ProjectSignal) -> None:
        ...

    def list_project_signals(self) -> list[ProjectSignal]:
        ...

    def save_daily_activity(
        self, identity: ScoreIdentity, day: date, records: list[dict[str, Any]]
    ) -> int:
        """Replace stored activity records for one identity and day."""
        ...

    def get_daily_activity(
        self, identity: ScoreIdentity, start: date, end: date
    ) -> list[DailyActivity]:
        ...

    def list_active_identities(self, start: date, end: date) -> list[ScoreIdentity]:
        """Identities with any activity in ``[start, end]``."""
        ...


class RepositoryProtocol(ScoreStoreProtocol, Protocol):
    """Score store that also owns the scoring queue table."""

    def task_queue(self) -> QueueStorePort:
        """Queue adapter sharing this repository's database."""
        ...


class ScoringOracleProtocol(Protocol):
    """Opaque, possibly slow and possibly failing natural-language scorer."""

    def score(
        self, activity_records: list[dict[str, Any]], prompt_config: PromptConfig
    ) -> OracleResult:
        """Score activity records.

        Raises:
            OracleError: On API communication errors
            ValidationError: On malformed responses
        """
        ...


class ActivitySourceProtocol(Protocol):
    """Supplier of per-day activity records for a platform."""

    def get_daily_activity(
        self, identity: ScoreIdentity, start: date, end: date
    ) -> list[DailyActivity]:
        """Days in ``[start, end]`` with at least one activity record."""
        ...


__all__ = [
    "ActivitySourceProtocol",
    "RepositoryProtocol",
    "ScoreStoreProtocol",
    "ScoringOracleProtocol",
]
