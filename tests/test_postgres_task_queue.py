from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, date, datetime
from typing import Any, ContextManager

from pytest_mock import MockerFixture

from score_engine.adapters.postgres_task_queue import PostgresTaskQueue
from score_engine.domain.models import (
    JobKind,
    QueueItemCreate,
    QueueStatus,
    ScoreIdentity,
)

IDENTITY = ScoreIdentity(user_id="u1", project_id="p1", signal_type_id="s1")
DAY = date(2024, 3, 20)


def _make_connection(
    mocker: MockerFixture,
) -> tuple[Any, Any, Callable[[], ContextManager[Any]]]:
    """Create mocked psycopg connection and cursor."""

    connection = mocker.MagicMock()
    cursor = mocker.MagicMock()
    cursor_cm = mocker.MagicMock()
    cursor_cm.__enter__.return_value = cursor
    cursor_cm.__exit__.return_value = False
    connection.cursor.return_value = cursor_cm

    @contextmanager
    def _connection_ctx() -> Iterator[Any]:
        yield connection

    def _provider() -> ContextManager[Any]:
        return _connection_ctx()

    return connection, cursor, _provider


def _build_row(item_id: int = 1, **overrides: Any) -> dict[str, Any]:
    """Return dictionary that mirrors a queue row."""

    row = {
        "id": item_id,
        "unique_key": "u1_p1_s1_2024-03-20",
        "parent_unique_key": None,
        "kind": JobKind.SMART_SCORE.value,
        "user_id": "u1",
        "project_id": "p1",
        "signal_type_id": "s1",
        "day": DAY,
        "test_requesting_user": None,
        "testing_context": None,
        "status": QueueStatus.PENDING.value,
        "attempts": 0,
        "created_at": datetime.now(tz=UTC),
        "started_at": None,
        "finished_at": None,
    }
    row.update(overrides)
    return row


def test_enqueue_returns_inserted_rows(mocker: MockerFixture) -> None:
    connection, cursor, provider = _make_connection(mocker)
    cursor.fetchone.return_value = _build_row()

    queue = PostgresTaskQueue(connection_provider=provider)
    created = queue.enqueue_many(
        [QueueItemCreate(kind=JobKind.SMART_SCORE, identity=IDENTITY, day=DAY)]
    )

    sql = cursor.execute.call_args.args[0]
    assert "ON CONFLICT (unique_key) DO NOTHING" in sql
    connection.commit.assert_called_once()
    assert len(created) == 1
    assert created[0].status is QueueStatus.PENDING
    assert created[0].identity == IDENTITY


def test_enqueue_skips_conflicts(mocker: MockerFixture) -> None:
    _, cursor, provider = _make_connection(mocker)
    cursor.fetchone.return_value = None

    queue = PostgresTaskQueue(connection_provider=provider)
    created = queue.enqueue_many(
        [QueueItemCreate(kind=JobKind.SMART_SCORE, identity=IDENTITY, day=DAY)]
    )

    assert created == []


def test_claim_returns_running_item(mocker: MockerFixture) -> None:
    _, cursor, provider = _make_connection(mocker)
    now = datetime.now(tz=UTC)
    cursor.fetchone.return_value = _build_row(
        status=QueueStatus.RUNNING.value,
        started_at=now,
        testing_context={"requesting_user_id": "tester"},
        test_requesting_user="tester",
    )

    queue = PostgresTaskQueue(connection_provider=provider)
    claimed = queue.claim(1, now=now)

    assert claimed is not None
    assert claimed.status is QueueStatus.RUNNING
    assert claimed.testing is not None
    assert claimed.testing.requesting_user_id == "tester"
    params = cursor.execute.call_args.args[1]
    assert params[0] == QueueStatus.RUNNING.value
    assert params[-1] == QueueStatus.PENDING.value


def test_claim_lost_returns_none(mocker: MockerFixture) -> None:
    _, cursor, provider = _make_connection(mocker)
    cursor.fetchone.return_value = None

    queue = PostgresTaskQueue(connection_provider=provider)

    assert queue.claim(1, now=datetime.now(tz=UTC)) is None


def test_transitions_only_touch_running_items(mocker: MockerFixture) -> None:
    connection, cursor, provider = _make_connection(mocker)
    cursor.rowcount = 0

    queue = PostgresTaskQueue(connection_provider=provider)

    assert queue.reset_for_retry(7) is False
    sql, params = cursor.execute.call_args.args
    assert "attempts = attempts + 1" in sql
    assert params[-2:] == (7, QueueStatus.RUNNING.value)
    connection.commit.assert_called_once()

    cursor.rowcount = 1
    assert queue.complete(7, now=datetime.now(tz=UTC)) is True


def test_count_outstanding_raw_matches_namespace(mocker: MockerFixture) -> None:
    _, cursor, provider = _make_connection(mocker)
    cursor.fetchone.return_value = {"total": 3}

    queue = PostgresTaskQueue(connection_provider=provider)
    total = queue.count_outstanding_raw(IDENTITY.key(DAY, "tester"))

    sql, params = cursor.execute.call_args.args
    assert total == 3
    assert "IS NOT DISTINCT FROM" in sql
    assert params[0] == JobKind.RAW_SCORE.value
    assert params[-1] == "tester"


def test_list_by_status_orders_raw_first(mocker: MockerFixture) -> None:
    _, cursor, provider = _make_connection(mocker)
    cursor.fetchall.return_value = [
        _build_row(2, kind=JobKind.RAW_SCORE.value, unique_key="k_RAW"),
        _build_row(1),
    ]

    queue = PostgresTaskQueue(connection_provider=provider)
    items = queue.list_by_status(QueueStatus.PENDING, limit=5)

    sql, params = cursor.execute.call_args.args
    assert "CASE kind WHEN 'raw_score' THEN 0 ELSE 1 END" in sql
    assert params == (QueueStatus.PENDING.value, 5)
    assert [item.kind for item in items] == [JobKind.RAW_SCORE, JobKind.SMART_SCORE]
