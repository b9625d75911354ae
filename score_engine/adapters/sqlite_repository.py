"""SQLite repository adapter for local storage.

Implements ScoreStoreProtocol with SQLite backend and exposes a SQLite-backed
queue for development and tests.
"""

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any, Final

from score_engine.adapters.sqlite_task_queue import SQLiteTaskQueue
from score_engine.config.logging_config import get_logger
from score_engine.domain.exceptions import DuplicateRecordError, RepositoryError
from score_engine.domain.models import (
    DailyActivity,
    ProjectSignal,
    RawScoreRecord,
    RecordKind,
    ScoreGap,
    ScoreIdentity,
    ScoreKey,
    SmartScoreRecord,
)
from score_engine.ports.task_queue import QueueStorePort

logger = get_logger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS: Final[float] = 30.0

_SCHEMA_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS queue_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        unique_key TEXT NOT NULL UNIQUE,
        parent_unique_key TEXT,
        kind TEXT NOT NULL,
        user_id TEXT NOT NULL,
        project_id TEXT NOT NULL,
        signal_type_id TEXT NOT NULL,
        day TEXT NOT NULL,
        test_requesting_user TEXT,
        testing_context TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        started_at TEXT,
        finished_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_queue_items_status ON queue_items(status)",
    """
    CREATE INDEX IF NOT EXISTS idx_queue_items_identity
    ON queue_items(user_id, project_id, signal_type_id, kind, status)
    """,
    """
    CREATE TABLE IF NOT EXISTS raw_scores (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        project_id TEXT NOT NULL,
        signal_type_id TEXT NOT NULL,
        day TEXT NOT NULL,
        raw_value INTEGER NOT NULL,
        max_value INTEGER NOT NULL,
        description TEXT,
        explanation TEXT,
        request_id TEXT,
        model TEXT,
        prompt_tokens INTEGER DEFAULT 0,
        completion_tokens INTEGER DEFAULT 0,
        logs TEXT,
        test_requesting_user TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_raw_scores_identity_day
    ON raw_scores(user_id, project_id, signal_type_id, day)
    """,
    """
    CREATE TABLE IF NOT EXISTS smart_scores (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        project_id TEXT NOT NULL,
        signal_type_id TEXT NOT NULL,
        day TEXT NOT NULL,
        value INTEGER,
        max_value INTEGER NOT NULL,
        previous_days INTEGER NOT NULL,
        summary TEXT,
        description TEXT,
        explanation TEXT,
        top_band_days TEXT,
        request_id TEXT UNIQUE,
        model TEXT,
        prompt_tokens INTEGER DEFAULT 0,
        completion_tokens INTEGER DEFAULT 0,
        logs TEXT,
        test_requesting_user TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_smart_scores_identity_day
    ON smart_scores(user_id, project_id, signal_type_id, day)
    """,
    """
    CREATE TABLE IF NOT EXISTS score_sentinels (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        project_id TEXT NOT NULL,
        signal_type_id TEXT NOT NULL,
        tag TEXT NOT NULL,
        test_requesting_user TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_project_score_history (
        user_id TEXT NOT NULL,
        project_id TEXT NOT NULL,
        day TEXT NOT NULL,
        total_score INTEGER NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (user_id, project_id, day)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS project_signals (
        project_id TEXT NOT NULL,
        signal_type_id TEXT NOT NULL,
        signal_type_name TEXT NOT NULL,
        max_value INTEGER NOT NULL,
        previous_days INTEGER NOT NULL,
        enabled INTEGER NOT NULL DEFAULT 1,
        PRIMARY KEY (project_id, signal_type_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS daily_activity (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        project_id TEXT NOT NULL,
        signal_type_id TEXT NOT NULL,
        day TEXT NOT NULL,
        payload TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_daily_activity_identity_day
    ON daily_activity(user_id, project_id, signal_type_id, day)
    """,
)

_GAP_QUERY: Final[str] = """
    WITH latest AS (
        SELECT user_id, project_id, signal_type_id, day, value, max_value, previous_days
        FROM smart_scores
        WHERE id IN (
            SELECT MAX(id) FROM smart_scores
            WHERE test_requesting_user IS NULL AND value IS NOT NULL
            GROUP BY user_id, project_id, signal_type_id, day
        )
    ),
    ordered AS (
        SELECT
            latest.*,
            LEAD(day) OVER w AS next_day,
            LEAD(value) OVER w AS next_value,
            LEAD(max_value) OVER w AS next_max_value,
            LEAD(previous_days) OVER w AS next_previous_days
        FROM latest
        WINDOW w AS (PARTITION BY user_id, project_id, signal_type_id ORDER BY day)
    )
    SELECT * FROM ordered
    WHERE next_day IS NOT NULL AND julianday(next_day) - julianday(day) > 1
    ORDER BY user_id, project_id, signal_type_id, day
    LIMIT ?
"""


def _identity_params(identity: ScoreIdentity) -> tuple[str, str, str]:
    return (identity.user_id, identity.project_id, identity.signal_type_id)


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


class SQLiteRepository:
    """SQLite-based repository for local runs and tests."""

    def __init__(self, db_path: str) -> None:
        """Initialize repository and ensure schema.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._task_queue_adapter: SQLiteTaskQueue | None = None
        self._create_schema()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=SQLITE_BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Yield a connection, commit on success and map driver errors."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise RepositoryError(f"Failed to {operation}: {e}") from e
        finally:
            conn.close()

    def _create_schema(self) -> None:
        """Create database schema if not exists."""
        logger.info("sqlite_schema_creation_started", db_path=str(self.db_path))
        with self._transaction("create schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        logger.info("sqlite_schema_ready", db_path=str(self.db_path))

    def task_queue(self) -> QueueStorePort:
        """Provide queue adapter sharing this repository's database file."""

        if self._task_queue_adapter is None:
            self._task_queue_adapter = SQLiteTaskQueue(self._get_connection)
        return self._task_queue_adapter

    # Score records ------------------------------------------------------

    def insert_raw_score(self, record: RawScoreRecord) -> int:
        with self._transaction("insert raw score") as conn:
            cursor = conn.execute(
                """
                INSERT INTO raw_scores (
                    user_id, project_id, signal_type_id, day, raw_value, max_value,
                    description, explanation, request_id, model, prompt_tokens,
                    completion_tokens, logs, test_requesting_user, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.user_id,
                    record.project_id,
                    record.signal_type_id,
                    record.day.isoformat(),
                    record.raw_value,
                    record.max_value,
                    record.description,
                    record.explanation,
                    record.request_id,
                    record.model,
                    record.prompt_tokens,
                    record.completion_tokens,
                    record.logs,
                    record.test_requesting_user,
                    record.created_at.isoformat(),
                ),
            )
            return int(cursor.lastrowid or 0)

    def insert_smart_score(self, record: SmartScoreRecord) -> int:
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                INSERT INTO smart_scores (
                    user_id, project_id, signal_type_id, day, value, max_value,
                    previous_days, summary, description, explanation, top_band_days,
                    request_id, model, prompt_tokens, completion_tokens, logs,
                    test_requesting_user, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.user_id,
                    record.project_id,
                    record.signal_type_id,
                    record.day.isoformat(),
                    record.value,
                    record.max_value,
                    record.previous_days,
                    record.summary,
                    record.description,
                    record.explanation,
                    json.dumps([d.isoformat() for d in record.top_band_days]),
                    record.request_id,
                    record.model,
                    record.prompt_tokens,
                    record.completion_tokens,
                    record.logs,
                    record.test_requesting_user,
                    record.created_at.isoformat(),
                ),
            )
            conn.commit()
            return int(cursor.lastrowid or 0)
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise DuplicateRecordError(
                f"Smart score already exists for request_id={record.request_id}"
            ) from e
        except sqlite3.Error as e:
            conn.rollback()
            raise RepositoryError(f"Failed to insert smart score: {e}") from e
        finally:
            conn.close()

    def insert_sentinel(self, key: ScoreKey, tag: str) -> int:
        with self._transaction("insert sentinel") as conn:
            cursor = conn.execute(
                """
                INSERT INTO score_sentinels (
                    user_id, project_id, signal_type_id, tag,
                    test_requesting_user, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    *_identity_params(key.identity),
                    tag,
                    key.test_requesting_user,
                    _now_iso(),
                ),
            )
            return int(cursor.lastrowid or 0)

    def find_record_ids(
        self, kind: RecordKind, key: ScoreKey, *, tag: str | None = None
    ) -> list[int]:
        table = RecordKind(kind).value
        clauses = [
            "user_id = ?",
            "project_id = ?",
            "signal_type_id = ?",
            "test_requesting_user IS ?",
        ]
        params: list[Any] = [*_identity_params(key.identity), key.test_requesting_user]
        if kind is RecordKind.LAST_CHECKED:
            clauses.append("tag = ?")
            params.append(tag)
        else:
            if key.day is None:
                raise RepositoryError(f"{table} lookup requires a day")
            clauses.append("day = ?")
            params.append(key.day.isoformat())

        with self._transaction(f"query {table}") as conn:
            rows = conn.execute(
                f"SELECT id FROM {table} WHERE {' AND '.join(clauses)} ORDER BY id DESC",
                params,
            ).fetchall()
        return [int(row["id"]) for row in rows]

    def delete_records(self, kind: RecordKind, ids: list[int]) -> int:
        if not ids:
            return 0
        table = RecordKind(kind).value
        placeholders = ", ".join("?" for _ in ids)
        with self._transaction(f"delete from {table}") as conn:
            cursor = conn.execute(
                f"DELETE FROM {table} WHERE id IN ({placeholders})", ids
            )
            return cursor.rowcount

    def get_sentinel(self, key: ScoreKey, tag: str) -> datetime | None:
        with self._transaction("get sentinel") as conn:
            row = conn.execute(
                """
                SELECT created_at FROM score_sentinels
                WHERE user_id = ? AND project_id = ? AND signal_type_id = ?
                  AND tag = ? AND test_requesting_user IS ?
                ORDER BY id DESC LIMIT 1
                """,
                (*_identity_params(key.identity), tag, key.test_requesting_user),
            ).fetchone()
        return datetime.fromisoformat(row["created_at"]) if row else None

    def get_raw_scores(
        self,
        identity: ScoreIdentity,
        start: date,
        end: date,
        *,
        test_requesting_user: str | None = None,
    ) -> list[RawScoreRecord]:
        with self._transaction("get raw scores") as conn:
            rows = conn.execute(
                """
                SELECT * FROM raw_scores
                WHERE user_id = ? AND project_id = ? AND signal_type_id = ?
                  AND day BETWEEN ? AND ? AND test_requesting_user IS ?
                ORDER BY id DESC
                """,
                (
                    *_identity_params(identity),
                    start.isoformat(),
                    end.isoformat(),
                    test_requesting_user,
                ),
            ).fetchall()
        return [self._row_to_raw_score(row) for row in rows]

    def get_scored_raw_days(
        self,
        identity: ScoreIdentity,
        start: date,
        end: date,
        *,
        test_requesting_user: str | None = None,
    ) -> set[date]:
        with self._transaction("get scored raw days") as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT day FROM raw_scores
                WHERE user_id = ? AND project_id = ? AND signal_type_id = ?
                  AND day BETWEEN ? AND ? AND test_requesting_user IS ?
                """,
                (
                    *_identity_params(identity),
                    start.isoformat(),
                    end.isoformat(),
                    test_requesting_user,
                ),
            ).fetchall()
        return {date.fromisoformat(row["day"]) for row in rows}

    def get_smart_scores(self, key: ScoreKey) -> list[SmartScoreRecord]:
        if key.day is None:
            raise RepositoryError("smart score lookup requires a day")
        with self._transaction("get smart scores") as conn:
            rows = conn.execute(
                """
                SELECT * FROM smart_scores
                WHERE user_id = ? AND project_id = ? AND signal_type_id = ?
                  AND day = ? AND test_requesting_user IS ?
                  AND value IS NOT NULL
                ORDER BY id DESC
                """,
                (
                    *_identity_params(key.identity),
                    key.day.isoformat(),
                    key.test_requesting_user,
                ),
            ).fetchall()
        return [self._row_to_smart_score(row) for row in rows]

    def find_score_gaps(self, *, limit: int) -> list[ScoreGap]:
        with self._transaction("find score gaps") as conn:
            rows = conn.execute(_GAP_QUERY, (limit,)).fetchall()
        return [
            ScoreGap(
                user_id=row["user_id"],
                project_id=row["project_id"],
                signal_type_id=row["signal_type_id"],
                gap_start=date.fromisoformat(row["day"]) + timedelta(days=1),
                gap_end=date.fromisoformat(row["next_day"]) - timedelta(days=1),
                value_before=row["value"],
                value_after=row["next_value"],
                max_value_before=row["max_value"],
                max_value_after=row["next_max_value"],
                previous_days_before=row["previous_days"],
                previous_days_after=row["next_previous_days"],
            )
            for row in rows
        ]

    def update_total_score_history(
        self, user_id: str, project_id: str, day: date, *, cap: int
    ) -> int:
        with self._transaction("update total score history") as conn:
            # Take the write lock before reading so concurrent writers wait.
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT COALESCE(SUM(value), 0) AS total FROM smart_scores
                WHERE id IN (
                    SELECT MAX(id) FROM smart_scores
                    WHERE user_id = ? AND project_id = ? AND day = ?
                      AND test_requesting_user IS NULL AND value IS NOT NULL
                    GROUP BY signal_type_id
                )
                """,
                (user_id, project_id, day.isoformat()),
            ).fetchone()
            total = min(cap, int(row["total"]))
            conn.execute(
                """
                INSERT INTO user_project_score_history (
                    user_id, project_id, day, total_score, updated_at
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (user_id, project_id, day) DO UPDATE SET
                    total_score = excluded.total_score,
                    updated_at = excluded.updated_at
                """,
                (user_id, project_id, day.isoformat(), total, _now_iso()),
            )
        return total

    def get_total_score(self, user_id: str, project_id: str, day: date) -> int | None:
        with self._transaction("get total score") as conn:
            row = conn.execute(
                """
                SELECT total_score FROM user_project_score_history
                WHERE user_id = ? AND project_id = ? AND day = ?
                """,
                (user_id, project_id, day.isoformat()),
            ).fetchone()
        return int(row["total_score"]) if row else None

    # Project signals ----------------------------------------------------

    def get_project_signal(
        self, project_id: str, signal_type_id: str
    ) -> ProjectSignal | None:
        with self._transaction("get project signal") as conn:
            row = conn.execute(
                "SELECT * FROM project_signals WHERE project_id = ? AND signal_type_id = ?",
                (project_id, signal_type_id),
            ).fetchone()
        return self._row_to_project_signal(row) if row else None

    def save_project_signal(self, project_signal: ProjectSignal) -> None:
        with self._transaction("save project signal") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO project_signals (
                    project_id, signal_type_id, signal_type_name,
                    max_value, previous_days, enabled
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    project_signal.project_id,
                    project_signal.signal_type_id,
                    project_signal.signal_type_name,
                    project_signal.max_value,
                    project_signal.previous_days,
                    int(project_signal.enabled),
                ),
            )

    def list_project_signals(self) -> list[ProjectSignal]:
        with self._transaction("list project signals") as conn:
            rows = conn.execute(
                "SELECT * FROM project_signals ORDER BY project_id, signal_type_id"
            ).fetchall()
        return [self._row_to_project_signal(row) for row in rows]

    # Activity -----------------------------------------------------------

    def save_daily_activity(
        self, identity: ScoreIdentity, day: date, records: list[dict[str, Any]]
    ) -> int:
        with self._transaction("save daily activity") as conn:
            conn.execute(
                """
                DELETE FROM daily_activity
                WHERE user_id = ? AND project_id = ? AND signal_type_id = ? AND day = ?
                """,
                (*_identity_params(identity), day.isoformat()),
            )
            conn.executemany(
                """
                INSERT INTO daily_activity (
                    user_id, project_id, signal_type_id, day, payload
                ) VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (*_identity_params(identity), day.isoformat(), json.dumps(record))
                    for record in records
                ],
            )
        return len(records)

    def get_daily_activity(
        self, identity: ScoreIdentity, start: date, end: date
    ) -> list[DailyActivity]:
        with self._transaction("get daily activity") as conn:
            rows = conn.execute(
                """
                SELECT day, payload FROM daily_activity
                WHERE user_id = ? AND project_id = ? AND signal_type_id = ?
                  AND day BETWEEN ? AND ?
                ORDER BY day, id
                """,
                (*_identity_params(identity), start.isoformat(), end.isoformat()),
            ).fetchall()

        by_day: dict[date, list[dict[str, Any]]] = {}
        for row in rows:
            by_day.setdefault(date.fromisoformat(row["day"]), []).append(
                json.loads(row["payload"])
            )
        return [DailyActivity(day=day, records=records) for day, records in by_day.items()]

    def list_active_identities(self, start: date, end: date) -> list[ScoreIdentity]:
        with self._transaction("list active identities") as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT user_id, project_id, signal_type_id FROM daily_activity
                WHERE day BETWEEN ? AND ?
                ORDER BY user_id, project_id, signal_type_id
                """,
                (start.isoformat(), end.isoformat()),
            ).fetchall()
        return [
            ScoreIdentity(
                user_id=row["user_id"],
                project_id=row["project_id"],
                signal_type_id=row["signal_type_id"],
            )
            for row in rows
        ]

    # Row mapping --------------------------------------------------------

    def _row_to_raw_score(self, row: sqlite3.Row) -> RawScoreRecord:
        return RawScoreRecord(
            id=row["id"],
            user_id=row["user_id"],
            project_id=row["project_id"],
            signal_type_id=row["signal_type_id"],
            day=date.fromisoformat(row["day"]),
            raw_value=row["raw_value"],
            max_value=row["max_value"],
            description=row["description"],
            explanation=row["explanation"],
            request_id=row["request_id"],
            model=row["model"],
            prompt_tokens=row["prompt_tokens"] or 0,
            completion_tokens=row["completion_tokens"] or 0,
            logs=row["logs"],
            test_requesting_user=row["test_requesting_user"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _row_to_smart_score(self, row: sqlite3.Row) -> SmartScoreRecord:
        top_band_raw = row["top_band_days"]
        return SmartScoreRecord(
            id=row["id"],
            user_id=row["user_id"],
            project_id=row["project_id"],
            signal_type_id=row["signal_type_id"],
            day=date.fromisoformat(row["day"]),
            value=row["value"],
            max_value=row["max_value"],
            previous_days=row["previous_days"],
            summary=row["summary"],
            description=row["description"],
            explanation=row["explanation"],
            top_band_days=[
                date.fromisoformat(d) for d in json.loads(top_band_raw or "[]")
            ],
            request_id=row["request_id"],
            model=row["model"],
            prompt_tokens=row["prompt_tokens"] or 0,
            completion_tokens=row["completion_tokens"] or 0,
            logs=row["logs"],
            test_requesting_user=row["test_requesting_user"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _row_to_project_signal(self, row: sqlite3.Row) -> ProjectSignal:
        return ProjectSignal(
            project_id=row["project_id"],
            signal_type_id=row["signal_type_id"],
            signal_type_name=row["signal_type_name"],
            max_value=row["max_value"],
            previous_days=row["previous_days"],
            enabled=bool(row["enabled"]),
        )


__all__ = ["SQLiteRepository"]
