"""PostgreSQL repository implementation using psycopg2 with connection pooling."""

import json
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import date, datetime, timedelta
from threading import Lock
from time import sleep
from typing import TYPE_CHECKING, Any, Final

from psycopg2 import Error as PsycopgError
from psycopg2 import errors as psycopg2_errors
from psycopg2 import extensions
from psycopg2 import pool as psycopg2_pool
from psycopg2.extras import RealDictCursor

from score_engine.adapters.postgres_task_queue import PostgresTaskQueue
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

if TYPE_CHECKING:
    from score_engine.config.settings import Settings


DEFAULT_POOL_MIN_CONNECTIONS: Final[int] = 1
DEFAULT_POOL_MAX_CONNECTIONS: Final[int] = 10
POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT: Final[int] = 5
POOL_ACQUIRE_BASE_DELAY_SECONDS: Final[float] = 0.1
POOL_ACQUIRE_MAX_DELAY_SECONDS: Final[float] = 2.0
POOL_USAGE_WARNING_THRESHOLD: Final[float] = 0.8

# Production rows carry NULL; NULL-safe equality keeps test namespaces apart.
_NAMESPACE_MATCH: Final[str] = "test_requesting_user IS NOT DISTINCT FROM %s"

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
    WHERE next_day IS NOT NULL AND next_day - day > 1
    ORDER BY user_id, project_id, signal_type_id, day
    LIMIT %s
"""

logger = get_logger(__name__)


def _identity_params(identity: ScoreIdentity) -> tuple[str, str, str]:
    return (identity.user_id, identity.project_id, identity.signal_type_id)


class PostgresRepository:
    """PostgreSQL repository backed by a connection pool."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        settings: "Settings | None" = None,
    ):
        """Initialize PostgreSQL repository with pooled connections."""
        self._host = host
        self._port = port
        self._database = database
        self._user = user
        self._password = password

        self._statement_timeout_ms = (
            settings.postgres_statement_timeout_ms if settings else 10_000
        )
        self._connect_timeout_seconds = (
            settings.postgres_connect_timeout_seconds if settings else 10
        )
        self._application_name = (
            settings.postgres_application_name if settings else "score_engine"
        )
        self._pool_min_connections = (
            settings.postgres_min_connections
            if settings
            else DEFAULT_POOL_MIN_CONNECTIONS
        )
        self._pool_max_connections = (
            settings.postgres_max_connections
            if settings
            else DEFAULT_POOL_MAX_CONNECTIONS
        )

        self._pool_acquire_max_attempts = POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT
        self._pool_acquire_base_delay_seconds = POOL_ACQUIRE_BASE_DELAY_SECONDS
        self._pool_acquire_max_delay_seconds = POOL_ACQUIRE_MAX_DELAY_SECONDS
        self._pool_usage_warning_threshold = POOL_USAGE_WARNING_THRESHOLD
        self._pool_in_use_count = 0
        self._pool_high_watermark = 0
        self._pool_usage_warning_emitted = False
        self._pool_lock = Lock()
        self._task_queue_adapter: PostgresTaskQueue | None = None

        if self._pool_min_connections <= 0:
            raise RepositoryError("postgres_min_connections must be positive")
        if self._pool_max_connections < self._pool_min_connections:
            raise RepositoryError(
                "postgres_max_connections must be greater than or equal to postgres_min_connections"
            )

        self._pool = self._create_pool()

    def _create_pool(self) -> psycopg2_pool.ThreadedConnectionPool:
        """Create a PostgreSQL connection pool with validation."""
        options = (
            f"-c statement_timeout={self._statement_timeout_ms} "
            f"-c application_name={self._application_name}"
        )

        try:
            pool = psycopg2_pool.ThreadedConnectionPool(
                self._pool_min_connections,
                self._pool_max_connections,
                host=self._host,
                port=self._port,
                database=self._database,
                user=self._user,
                password=self._password,
                connect_timeout=self._connect_timeout_seconds,
                options=options,
            )
        except PsycopgError as exc:
            raise RepositoryError(
                f"Failed to initialize PostgreSQL pool: {exc}"
            ) from exc

        try:
            conn = pool.getconn()
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
            finally:
                pool.putconn(conn)
        except PsycopgError as exc:
            pool.closeall()
            raise RepositoryError(f"PostgreSQL validation query failed: {exc}") from exc

        logger.info(
            "postgres_pool_initialized",
            host=self._host,
            port=self._port,
            database=self._database,
            min_connections=self._pool_min_connections,
            max_connections=self._pool_max_connections,
            statement_timeout_ms=self._statement_timeout_ms,
        )
        return pool

    def _acquire_connection_with_retry(self) -> extensions.connection:
        """Acquire a connection from the pool with exponential backoff."""
        attempt = 0
        delay = self._pool_acquire_base_delay_seconds
        while True:
            attempt += 1
            try:
                conn = self._pool.getconn()
            except psycopg2_pool.PoolError as exc:
                if attempt >= self._pool_acquire_max_attempts:
                    logger.error(
                        "postgres_pool_acquire_failed",
                        attempts=attempt,
                        max_connections=self._pool_max_connections,
                        in_use=self._pool_in_use_count,
                    )
                    raise RepositoryError(
                        "Failed to acquire PostgreSQL connection from pool"
                    ) from exc

                logger.warning(
                    "postgres_pool_exhausted_retry",
                    attempt=attempt,
                    wait_seconds=delay,
                    in_use=self._pool_in_use_count,
                )
                sleep(delay)
                delay = min(delay * 2, self._pool_acquire_max_delay_seconds)
                continue

            self._register_connection_checkout()
            return conn

    def _register_connection_checkout(self) -> None:
        with self._pool_lock:
            self._pool_in_use_count += 1
            if self._pool_in_use_count > self._pool_high_watermark:
                self._pool_high_watermark = self._pool_in_use_count

            usage_ratio = self._pool_in_use_count / self._pool_max_connections
            if (
                usage_ratio >= self._pool_usage_warning_threshold
                and not self._pool_usage_warning_emitted
            ):
                self._pool_usage_warning_emitted = True
                logger.warning(
                    "postgres_pool_usage_high",
                    in_use=self._pool_in_use_count,
                    max_connections=self._pool_max_connections,
                )

    def _register_connection_checkin(self) -> None:
        with self._pool_lock:
            if self._pool_in_use_count > 0:
                self._pool_in_use_count -= 1

            usage_ratio = self._pool_in_use_count / self._pool_max_connections
            if usage_ratio < self._pool_usage_warning_threshold:
                self._pool_usage_warning_emitted = False

    def _release_connection(
        self,
        conn: extensions.connection,
        *,
        close: bool,
        reason: str | None,
    ) -> None:
        """Return a connection to the pool and update usage counters."""
        try:
            self._pool.putconn(conn, close=close)
        except PsycopgError:
            logger.warning(
                "postgres_putconn_failed",
                database=self._database,
                close=close,
                reason=reason,
                exc_info=True,
            )
        finally:
            self._register_connection_checkin()
            if close and reason:
                logger.warning("postgres_connection_closed", reason=reason)

    def close(self) -> None:
        """Close all connections in the pool."""
        self._pool.closeall()
        with self._pool_lock:
            self._pool_in_use_count = 0
            self._pool_usage_warning_emitted = False
        logger.info(
            "postgres_pool_closed",
            database=self._database,
            high_watermark=self._pool_high_watermark,
        )

    def task_queue(self) -> QueueStorePort:
        """Provide queue adapter tied to this repository."""

        if self._task_queue_adapter is None:

            def _provider() -> AbstractContextManager[Any]:
                return self._get_connection()

            self._task_queue_adapter = PostgresTaskQueue(_provider)
        return self._task_queue_adapter

    @contextmanager
    def _get_connection(self) -> Iterator[extensions.connection]:
        """Borrow a connection from the pool and ensure cleanup."""
        conn: extensions.connection | None = None
        try:
            conn = self._acquire_connection_with_retry()
            conn.autocommit = False
            yield conn
        except PsycopgError as exc:
            if conn is not None:
                try:
                    conn.rollback()
                except PsycopgError:
                    logger.warning(
                        "postgres_connection_rollback_failed",
                        database=self._database,
                        exc_info=True,
                    )
                finally:
                    self._release_connection(conn, close=True, reason="rollback_error")
                    conn = None
            raise RepositoryError(f"PostgreSQL connection error: {exc}") from exc
        finally:
            if conn is not None:
                try:
                    status = conn.get_transaction_status()
                    if status in (
                        extensions.TRANSACTION_STATUS_INTRANS,
                        extensions.TRANSACTION_STATUS_INERROR,
                    ):
                        conn.rollback()
                except PsycopgError:
                    logger.warning(
                        "postgres_connection_cleanup_failed",
                        database=self._database,
                        exc_info=True,
                    )
                    self._release_connection(conn, close=True, reason="cleanup_error")
                else:
                    self._release_connection(conn, close=False, reason=None)

    def _fetchall(self, query: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                rows = [dict(row) for row in cur.fetchall()]
            conn.commit()
        return rows

    def _fetchone(self, query: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        rows = self._fetchall(query, params)
        return rows[0] if rows else None

    # Score records ------------------------------------------------------

    def insert_raw_score(self, record: RawScoreRecord) -> int:
        row = self._fetchone(
            """
            INSERT INTO raw_scores (
                user_id, project_id, signal_type_id, day, raw_value, max_value,
                description, explanation, request_id, model, prompt_tokens,
                completion_tokens, logs, test_requesting_user, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                record.user_id,
                record.project_id,
                record.signal_type_id,
                record.day,
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
                record.created_at,
            ),
        )
        if row is None:
            raise RepositoryError("raw score insert returned no id")
        return int(row["id"])

    def insert_smart_score(self, record: SmartScoreRecord) -> int:
        with self._get_connection() as conn:
            try:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(
                        """
                        INSERT INTO smart_scores (
                            user_id, project_id, signal_type_id, day, value,
                            max_value, previous_days, summary, description,
                            explanation, top_band_days, request_id, model,
                            prompt_tokens, completion_tokens, logs,
                            test_requesting_user, created_at
                        ) VALUES (
                            %s, %s, %s, %s, %s, %s, %s, %s, %s,
                            %s, %s, %s, %s, %s, %s, %s, %s, %s
                        )
                        RETURNING id
                        """,
                        (
                            record.user_id,
                            record.project_id,
                            record.signal_type_id,
                            record.day,
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
                            record.created_at,
                        ),
                    )
                    row = cur.fetchone()
                conn.commit()
            except psycopg2_errors.UniqueViolation as exc:
                conn.rollback()
                raise DuplicateRecordError(
                    f"Smart score already exists for request_id={record.request_id}"
                ) from exc
        if row is None:
            raise RepositoryError("smart score insert returned no id")
        return int(row["id"])

    def insert_sentinel(self, key: ScoreKey, tag: str) -> int:
        row = self._fetchone(
            """
            INSERT INTO score_sentinels (
                user_id, project_id, signal_type_id, tag, test_requesting_user
            ) VALUES (%s, %s, %s, %s, %s)
            RETURNING id
            """,
            (*_identity_params(key.identity), tag, key.test_requesting_user),
        )
        if row is None:
            raise RepositoryError("sentinel insert returned no id")
        return int(row["id"])

    def find_record_ids(
        self, kind: RecordKind, key: ScoreKey, *, tag: str | None = None
    ) -> list[int]:
        table = RecordKind(kind).value
        clauses = [
            "user_id = %s",
            "project_id = %s",
            "signal_type_id = %s",
            _NAMESPACE_MATCH,
        ]
        params: list[Any] = [*_identity_params(key.identity), key.test_requesting_user]
        if kind is RecordKind.LAST_CHECKED:
            clauses.append("tag = %s")
            params.append(tag)
        else:
            if key.day is None:
                raise RepositoryError(f"{table} lookup requires a day")
            clauses.append("day = %s")
            params.append(key.day)

        rows = self._fetchall(
            f"SELECT id FROM {table} WHERE {' AND '.join(clauses)} ORDER BY id DESC",
            tuple(params),
        )
        return [int(row["id"]) for row in rows]

    def delete_records(self, kind: RecordKind, ids: list[int]) -> int:
        if not ids:
            return 0
        table = RecordKind(kind).value
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {table} WHERE id = ANY(%s)", (list(ids),))
                deleted = cur.rowcount
            conn.commit()
        return deleted

    def get_sentinel(self, key: ScoreKey, tag: str) -> datetime | None:
        row = self._fetchone(
            f"""
            SELECT created_at FROM score_sentinels
            WHERE user_id = %s AND project_id = %s AND signal_type_id = %s
              AND tag = %s AND {_NAMESPACE_MATCH}
            ORDER BY id DESC LIMIT 1
            """,
            (*_identity_params(key.identity), tag, key.test_requesting_user),
        )
        return row["created_at"] if row else None

    def get_raw_scores(
        self,
        identity: ScoreIdentity,
        start: date,
        end: date,
        *,
        test_requesting_user: str | None = None,
    ) -> list[RawScoreRecord]:
        rows = self._fetchall(
            f"""
            SELECT * FROM raw_scores
            WHERE user_id = %s AND project_id = %s AND signal_type_id = %s
              AND day BETWEEN %s AND %s AND {_NAMESPACE_MATCH}
            ORDER BY id DESC
            """,
            (*_identity_params(identity), start, end, test_requesting_user),
        )
        return [RawScoreRecord.model_validate(row) for row in rows]

    def get_scored_raw_days(
        self,
        identity: ScoreIdentity,
        start: date,
        end: date,
        *,
        test_requesting_user: str | None = None,
    ) -> set[date]:
        rows = self._fetchall(
            f"""
            SELECT DISTINCT day FROM raw_scores
            WHERE user_id = %s AND project_id = %s AND signal_type_id = %s
              AND day BETWEEN %s AND %s AND {_NAMESPACE_MATCH}
            """,
            (*_identity_params(identity), start, end, test_requesting_user),
        )
        return {row["day"] for row in rows}

    def get_smart_scores(self, key: ScoreKey) -> list[SmartScoreRecord]:
        if key.day is None:
            raise RepositoryError("smart score lookup requires a day")
        rows = self._fetchall(
            f"""
            SELECT * FROM smart_scores
            WHERE user_id = %s AND project_id = %s AND signal_type_id = %s
              AND day = %s AND {_NAMESPACE_MATCH}
              AND value IS NOT NULL
            ORDER BY id DESC
            """,
            (*_identity_params(key.identity), key.day, key.test_requesting_user),
        )
        return [self._row_to_smart_score(row) for row in rows]

    def find_score_gaps(self, *, limit: int) -> list[ScoreGap]:
        rows = self._fetchall(_GAP_QUERY, (limit,))
        return [
            ScoreGap(
                user_id=row["user_id"],
                project_id=row["project_id"],
                signal_type_id=row["signal_type_id"],
                gap_start=row["day"] + timedelta(days=1),
                gap_end=row["next_day"] - timedelta(days=1),
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
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT COALESCE(SUM(value), 0) AS total FROM smart_scores
                    WHERE id IN (
                        SELECT MAX(id) FROM smart_scores
                        WHERE user_id = %s AND project_id = %s AND day = %s
                          AND test_requesting_user IS NULL AND value IS NOT NULL
                        GROUP BY signal_type_id
                    )
                    """,
                    (user_id, project_id, day),
                )
                row = cur.fetchone()
                total = min(cap, int(row["total"])) if row else 0
                cur.execute(
                    """
                    INSERT INTO user_project_score_history (
                        user_id, project_id, day, total_score, updated_at
                    ) VALUES (%s, %s, %s, %s, NOW())
                    ON CONFLICT (user_id, project_id, day) DO UPDATE SET
                        total_score = EXCLUDED.total_score,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (user_id, project_id, day, total),
                )
            conn.commit()
        return total

    def get_total_score(self, user_id: str, project_id: str, day: date) -> int | None:
        row = self._fetchone(
            """
            SELECT total_score FROM user_project_score_history
            WHERE user_id = %s AND project_id = %s AND day = %s
            """,
            (user_id, project_id, day),
        )
        return int(row["total_score"]) if row else None

    # Project signals ----------------------------------------------------

    def get_project_signal(
        self, project_id: str, signal_type_id: str
    ) -> ProjectSignal | None:
        row = self._fetchone(
            """
            SELECT * FROM project_signals
            WHERE project_id = %s AND signal_type_id = %s
            """,
            (project_id, signal_type_id),
        )
        return ProjectSignal.model_validate(row) if row else None

    def save_project_signal(self, project_signal: ProjectSignal) -> None:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO project_signals (
                        project_id, signal_type_id, signal_type_name,
                        max_value, previous_days, enabled
                    ) VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (project_id, signal_type_id) DO UPDATE SET
                        signal_type_name = EXCLUDED.signal_type_name,
                        max_value = EXCLUDED.max_value,
                        previous_days = EXCLUDED.previous_days,
                        enabled = EXCLUDED.enabled
                    """,
                    (
                        project_signal.project_id,
                        project_signal.signal_type_id,
                        project_signal.signal_type_name,
                        project_signal.max_value,
                        project_signal.previous_days,
                        project_signal.enabled,
                    ),
                )
            conn.commit()

    def list_project_signals(self) -> list[ProjectSignal]:
        rows = self._fetchall(
            "SELECT * FROM project_signals ORDER BY project_id, signal_type_id", ()
        )
        return [ProjectSignal.model_validate(row) for row in rows]

    # Activity -----------------------------------------------------------

    def save_daily_activity(
        self, identity: ScoreIdentity, day: date, records: list[dict[str, Any]]
    ) -> int:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    DELETE FROM daily_activity
                    WHERE user_id = %s AND project_id = %s
                      AND signal_type_id = %s AND day = %s
                    """,
                    (*_identity_params(identity), day),
                )
                cur.executemany(
                    """
                    INSERT INTO daily_activity (
                        user_id, project_id, signal_type_id, day, payload
                    ) VALUES (%s, %s, %s, %s, %s)
                    """,
                    [
                        (*_identity_params(identity), day, json.dumps(record))
                        for record in records
                    ],
                )
            conn.commit()
        return len(records)

    def get_daily_activity(
        self, identity: ScoreIdentity, start: date, end: date
    ) -> list[DailyActivity]:
        rows = self._fetchall(
            """
            SELECT day, payload FROM daily_activity
            WHERE user_id = %s AND project_id = %s AND signal_type_id = %s
              AND day BETWEEN %s AND %s
            ORDER BY day, id
            """,
            (*_identity_params(identity), start, end),
        )
        by_day: dict[date, list[dict[str, Any]]] = {}
        for row in rows:
            payload = row["payload"]  # JSONB arrives already parsed
            if isinstance(payload, str):
                payload = json.loads(payload)
            by_day.setdefault(row["day"], []).append(payload)
        return [DailyActivity(day=day, records=records) for day, records in by_day.items()]

    def list_active_identities(self, start: date, end: date) -> list[ScoreIdentity]:
        rows = self._fetchall(
            """
            SELECT DISTINCT user_id, project_id, signal_type_id FROM daily_activity
            WHERE day BETWEEN %s AND %s
            ORDER BY user_id, project_id, signal_type_id
            """,
            (start, end),
        )
        return [ScoreIdentity.model_validate(row) for row in rows]

    def _row_to_smart_score(self, row: dict[str, Any]) -> SmartScoreRecord:
        top_band = row.get("top_band_days") or []
        if isinstance(top_band, str):
            top_band = json.loads(top_band)
        return SmartScoreRecord.model_validate({**row, "top_band_days": top_band})


__all__ = ["PostgresRepository"]
