"""SQLite implementation of the scoring queue port."""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from score_engine.config.logging_config import get_logger
from score_engine.domain.exceptions import RepositoryError
from score_engine.domain.models import (
    JobKind,
    QueueItem,
    QueueItemCreate,
    QueueStatus,
    ScoreKey,
    TestingContext,
)
from score_engine.ports.task_queue import QueueStorePort

logger = get_logger(__name__)

_RAW_FIRST_ORDER = "CASE kind WHEN 'raw_score' THEN 0 ELSE 1 END, id"


class SQLiteTaskQueue(QueueStorePort):
    """Queue stored in the ``queue_items`` table of the repository database."""

    def __init__(self, connection_factory: Callable[[], sqlite3.Connection]):
        self._connection_factory = connection_factory

    @contextmanager
    def _connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        conn = self._connection_factory()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise RepositoryError(f"Failed to {operation}: {exc}") from exc
        finally:
            conn.close()

    def enqueue_many(self, items: list[QueueItemCreate]) -> list[QueueItem]:
        if not items:
            return []

        inserted_ids: list[int] = []
        now = datetime.now(tz=UTC).isoformat()
        with self._connection("enqueue queue items") as conn:
            for item in items:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO queue_items (
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
                        attempts,
                        created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                    """,
                    (
                        item.unique_key,
                        item.parent_unique_key,
                        item.kind.value,
                        item.identity.user_id,
                        item.identity.project_id,
                        item.identity.signal_type_id,
                        item.day.isoformat(),
                        item.key.test_requesting_user,
                        item.testing.model_dump_json() if item.testing else None,
                        QueueStatus.PENDING.value,
                        now,
                    ),
                )
                if cursor.rowcount == 1 and cursor.lastrowid is not None:
                    inserted_ids.append(int(cursor.lastrowid))
                else:
                    logger.debug("queue_item_duplicate_ignored", unique_key=item.unique_key)

            rows = self._select_by_ids(conn, inserted_ids)
        return [_row_to_item(row) for row in rows]

    def get(self, item_id: int) -> QueueItem | None:
        with self._connection("get queue item") as conn:
            row = conn.execute(
                "SELECT * FROM queue_items WHERE id = ?", (item_id,)
            ).fetchone()
        return _row_to_item(row) if row else None

    def get_by_unique_key(self, unique_key: str) -> QueueItem | None:
        with self._connection("get queue item by unique key") as conn:
            row = conn.execute(
                "SELECT * FROM queue_items WHERE unique_key = ?", (unique_key,)
            ).fetchone()
        return _row_to_item(row) if row else None

    def claim(self, item_id: int, *, now: datetime) -> QueueItem | None:
        with self._connection("claim queue item") as conn:
            cursor = conn.execute(
                """
                UPDATE queue_items
                SET status = ?, started_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    QueueStatus.RUNNING.value,
                    _ensure_utc(now).isoformat(),
                    item_id,
                    QueueStatus.PENDING.value,
                ),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM queue_items WHERE id = ?", (item_id,)
            ).fetchone()
        return _row_to_item(row)

    def complete(self, item_id: int, *, now: datetime) -> bool:
        return self._transition(
            item_id,
            "status = ?, finished_at = ?",
            (QueueStatus.COMPLETED.value, _ensure_utc(now).isoformat()),
        )

    def release(self, item_id: int) -> bool:
        return self._transition(
            item_id,
            "status = ?, started_at = NULL",
            (QueueStatus.PENDING.value,),
        )

    def reset_for_retry(self, item_id: int) -> bool:
        return self._transition(
            item_id,
            "status = ?, started_at = NULL, attempts = attempts + 1",
            (QueueStatus.PENDING.value,),
        )

    def mark_error(self, item_id: int, *, now: datetime) -> bool:
        return self._transition(
            item_id,
            "status = ?, finished_at = ?",
            (QueueStatus.ERROR.value, _ensure_utc(now).isoformat()),
        )

    def list_by_status(
        self, status: QueueStatus, *, limit: int | None = None
    ) -> list[QueueItem]:
        query = f"SELECT * FROM queue_items WHERE status = ? ORDER BY {_RAW_FIRST_ORDER}"
        params: list[Any] = [QueueStatus(status).value]
        if limit is not None:
            if limit <= 0:
                return []
            query += " LIMIT ?"
            params.append(limit)
        with self._connection("list queue items") as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_item(row) for row in rows]

    def count_by_status(self, status: QueueStatus) -> int:
        with self._connection("count queue items") as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM queue_items WHERE status = ?",
                (QueueStatus(status).value,),
            ).fetchone()
        return int(row["total"])

    def count_outstanding_raw(self, key: ScoreKey) -> int:
        with self._connection("count outstanding raw items") as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total FROM queue_items
                WHERE kind = ? AND status IN (?, ?)
                  AND user_id = ? AND project_id = ? AND signal_type_id = ?
                  AND test_requesting_user IS ?
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
            ).fetchone()
        return int(row["total"])

    def prune_completed(self, *, older_than: datetime) -> int:
        with self._connection("prune completed queue items") as conn:
            cursor = conn.execute(
                "DELETE FROM queue_items WHERE status = ? AND finished_at < ?",
                (QueueStatus.COMPLETED.value, _ensure_utc(older_than).isoformat()),
            )
            return cursor.rowcount

    def _transition(
        self, item_id: int, assignments: str, params: tuple[Any, ...]
    ) -> bool:
        """Apply ``assignments`` only while the item is running."""

        with self._connection("update queue item") as conn:
            cursor = conn.execute(
                f"UPDATE queue_items SET {assignments} WHERE id = ? AND status = ?",
                (*params, item_id, QueueStatus.RUNNING.value),
            )
            return cursor.rowcount == 1

    @staticmethod
    def _select_by_ids(conn: sqlite3.Connection, ids: list[int]) -> list[sqlite3.Row]:
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        return conn.execute(
            f"SELECT * FROM queue_items WHERE id IN ({placeholders}) ORDER BY id",
            ids,
        ).fetchall()


def _row_to_item(row: sqlite3.Row) -> QueueItem:
    data = dict(row)
    testing_raw = data.pop("testing_context", None)
    data.pop("test_requesting_user", None)
    data["testing"] = (
        TestingContext.model_validate_json(testing_raw) if testing_raw else None
    )
    return QueueItem.model_validate(data)


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


__all__ = ["SQLiteTaskQueue"]
