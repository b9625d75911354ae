"""PostgreSQL implementation of the scoring queue port."""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import UTC, datetime
from typing import Any

from psycopg2.extras import RealDictCursor

from score_engine.config.logging_config import get_logger
from score_engine.domain.models import (
    JobKind,
    QueueItem,
    QueueItemCreate,
    QueueStatus,
    ScoreKey,
)
from score_engine.ports.task_queue import QueueStorePort

logger = get_logger(__name__)

_RAW_FIRST_ORDER = "CASE kind WHEN 'raw_score' THEN 0 ELSE 1 END, id"


class PostgresTaskQueue(QueueStorePort):
    """Queue backed by the ``queue_items`` PostgreSQL table."""

    def __init__(self, connection_provider: Callable[[], AbstractContextManager[Any]]):
        self._connection_provider = connection_provider

    def enqueue_many(self, items: list[QueueItemCreate]) -> list[QueueItem]:
        if not items:
            return []

        inserted_rows: list[dict[str, Any]] = []
        conflicts: list[str] = []

        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                for item in items:
                    cur.execute(
                        """
                        INSERT INTO queue_items (
                            unique_key,
                            parent_unique_key,
                            kind,
                            user_id,
                            project_id,
                            signal_type_id,
                            day,
                            test_requesting_user,
                            testing_context,
                            status,
                            attempts
                        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 0)
                        ON CONFLICT (unique_key) DO NOTHING
                        RETURNING *
                        """,
                        (
                            item.unique_key,
                            item.parent_unique_key,
                            item.kind.value,
                            item.identity.user_id,
                            item.identity.project_id,
                            item.identity.signal_type_id,
                            item.day,
                            item.key.test_requesting_user,
                            item.testing.model_dump_json() if item.testing else None,
                            QueueStatus.PENDING.value,
                        ),
                    )
                    row = cur.fetchone()
                    if row is None:
                        conflicts.append(item.unique_key)
                    else:
                        inserted_rows.append(dict(row))
                conn.commit()

        if conflicts:
            logger.debug("queue_items_duplicate_ignored", count=len(conflicts))
        return [_row_to_item(row) for row in inserted_rows]

    def get(self, item_id: int) -> QueueItem | None:
        row = self._fetchone("SELECT * FROM queue_items WHERE id = %s", (item_id,))
        return _row_to_item(row) if row else None

    def get_by_unique_key(self, unique_key: str) -> QueueItem | None:
        row = self._fetchone(
            "SELECT * FROM queue_items WHERE unique_key = %s", (unique_key,)
        )
        return _row_to_item(row) if row else None

    def claim(self, item_id: int, *, now: datetime) -> QueueItem | None:
        row = self._fetchone(
            """
            UPDATE queue_items
            SET status = %s, started_at = %s
            WHERE id = %s AND status = %s
            RETURNING *
            """,
            (
                QueueStatus.RUNNING.value,
                _ensure_utc(now),
                item_id,
                QueueStatus.PENDING.value,
            ),
        )
        return _row_to_item(row) if row else None

    def complete(self, item_id: int, *, now: datetime) -> bool:
        return self._transition(
            item_id,
            "status = %s, finished_at = %s",
            (QueueStatus.COMPLETED.value, _ensure_utc(now)),
        )

    def release(self, item_id: int) -> bool:
        return self._transition(
            item_id, "status = %s, started_at = NULL", (QueueStatus.PENDING.value,)
        )

    def reset_for_retry(self, item_id: int) -> bool:
        return self._transition(
            item_id,
            "status = %s, started_at = NULL, attempts = attempts + 1",
            (QueueStatus.PENDING.value,),
        )

    def mark_error(self, item_id: int, *, now: datetime) -> bool:
        return self._transition(
            item_id,
            "status = %s, finished_at = %s",
            (QueueStatus.ERROR.value, _ensure_utc(now)),
        )

    def list_by_status(
        self, status: QueueStatus, *, limit: int | None = None
    ) -> list[QueueItem]:
        if limit is not None and limit <= 0:
            return []
        query = f"SELECT * FROM queue_items WHERE status = %s ORDER BY {_RAW_FIRST_ORDER}"
        params: tuple[Any, ...] = (QueueStatus(status).value,)
        if limit is not None:
            query += " LIMIT %s"
            params = (*params, limit)

        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
            conn.commit()
        return [_row_to_item(dict(row)) for row in rows]

    def count_by_status(self, status: QueueStatus) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS total FROM queue_items WHERE status = %s",
            (QueueStatus(status).value,),
        )
        return int(row["total"]) if row else 0

    def count_outstanding_raw(self, key: ScoreKey) -> int:
        row = self._fetchone(
            """
            SELECT COUNT(*) AS total FROM queue_items
            WHERE kind = %s AND status IN (%s, %s)
              AND user_id = %s AND project_id = %s AND signal_type_id = %s
              AND test_requesting_user IS NOT DISTINCT FROM %s
            """,
            (
                JobKind.RAW_SCORE.value,
                QueueStatus.PENDING.value,
                QueueStatus.RUNNING.value,
                key.identity.user_id,
                key.identity.project_id,
                key.identity.signal_type_id,
                key.test_requesting_user,
            ),
        )
        return int(row["total"]) if row else 0

    def prune_completed(self, *, older_than: datetime) -> int:
        with self._connection_provider() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM queue_items WHERE status = %s AND finished_at < %s",
                    (QueueStatus.COMPLETED.value, _ensure_utc(older_than)),
                )
                deleted = cur.rowcount
            conn.commit()
        return deleted

    def _transition(
        self, item_id: int, assignments: str, params: tuple[Any, ...]
    ) -> bool:
        """Apply ``assignments`` only while the item is running."""

        with self._connection_provider() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE queue_items SET {assignments} WHERE id = %s AND status = %s",
                    (*params, item_id, QueueStatus.RUNNING.value),
                )
                updated = cur.rowcount == 1
            conn.commit()
        return updated

    def _fetchone(self, query: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                row = cur.fetchone()
            conn.commit()
        return dict(row) if row else None


def _row_to_item(row: dict[str, Any]) -> QueueItem:
    data = dict(row)
    data.pop("test_requesting_user", None)
    data["testing"] = data.pop("testing_context", None)  # JSONB arrives as a dict
    return QueueItem.model_validate(data)


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


__all__ = ["PostgresTaskQueue"]
