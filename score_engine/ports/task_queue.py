"""Port definition for the scoring queue backends."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from score_engine.domain.models import (
    QueueItem,
    QueueItemCreate,
    QueueStatus,
    ScoreKey,
)


@runtime_checkable
class QueueStorePort(Protocol):
    """Abstract interface implemented by queue adapters.

    Status transitions are conditional on the current status so that
    concurrent workers and the Governor never overwrite each other.
    """

    def enqueue_many(self, items: list[QueueItemCreate]) -> list[QueueItem]:
        """Insert items ignoring duplicate unique keys.

        Returns:
            Only the items that were newly inserted
        """

    def get(self, item_id: int) -> QueueItem | None:
        """Fetch an item by id."""

    def get_by_unique_key(self, unique_key: str) -> QueueItem | None:
        """Fetch an item by idempotency key."""

    def claim(self, item_id: int, *, now: datetime) -> QueueItem | None:
        """Move ``pending -> running``; ``None`` when another claimer won."""

    def complete(self, item_id: int, *, now: datetime) -> bool:
        """Move ``running -> completed``."""

    def release(self, item_id: int) -> bool:
        """Move ``running -> pending`` without consuming an attempt."""

    def reset_for_retry(self, item_id: int) -> bool:
        """Move ``running -> pending`` and increment attempts."""

    def mark_error(self, item_id: int, *, now: datetime) -> bool:
        """Move ``running -> error`` (terminal)."""

    def list_by_status(
        self, status: QueueStatus, *, limit: int | None = None
    ) -> list[QueueItem]:
        """Items in ``status``; raw_score before smart_score, then by id."""

    def count_by_status(self, status: QueueStatus) -> int:
        """Number of items currently in ``status``."""

    def count_outstanding_raw(self, key: ScoreKey) -> int:
        """Pending or running raw_score items for the key's identity and namespace."""

    def prune_completed(self, *, older_than: datetime) -> int:
        """Delete completed items finished before ``older_than``."""


__all__ = ["QueueStorePort"]
