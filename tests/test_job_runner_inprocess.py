from __future__ import annotations

import threading

import pytest

from score_engine.adapters.job_runner_inprocess import InProcessDispatcher
from score_engine.domain.exceptions import DispatchError
from score_engine.domain.models import JobKind


def test_dispatch_runs_handler_and_tracks_status() -> None:
    seen: list[int] = []
    dispatcher = InProcessDispatcher({JobKind.RAW_SCORE: seen.append})

    result = dispatcher.dispatch(JobKind.RAW_SCORE, 42)

    assert result.started is True
    assert dispatcher.wait_for_idle(timeout=5)
    assert seen == [42]
    status = dispatcher.status(result.job_id)
    assert status["status"] == "succeeded"
    assert status["queue_item_id"] == 42


def test_dispatch_returns_before_handler_finishes() -> None:
    release = threading.Event()
    dispatcher = InProcessDispatcher()
    dispatcher.register(JobKind.SMART_SCORE, lambda _: release.wait(5))

    result = dispatcher.dispatch(JobKind.SMART_SCORE, 1)

    assert dispatcher.status(result.job_id)["status"] == "running"
    release.set()
    assert dispatcher.wait_for_idle(timeout=5)


def test_failed_handler_is_recorded() -> None:
    def _boom(_: int) -> None:
        raise RuntimeError("oracle down")

    dispatcher = InProcessDispatcher({JobKind.RAW_SCORE: _boom})
    result = dispatcher.dispatch(JobKind.RAW_SCORE, 7)
    dispatcher.wait_for_idle(timeout=5)

    status = dispatcher.status(result.job_id)
    assert status["status"] == "failed"
    assert status["error"] == "oracle down"


def test_unregistered_kind_raises() -> None:
    with pytest.raises(DispatchError):
        InProcessDispatcher().dispatch(JobKind.RAW_SCORE, 1)


def test_unknown_job_id_raises() -> None:
    with pytest.raises(KeyError):
        InProcessDispatcher().status("missing")


def test_finished_jobs_are_released() -> None:
    dispatcher = InProcessDispatcher(
        {JobKind.RAW_SCORE: lambda _: None}, max_finished_jobs=10
    )

    results = [dispatcher.dispatch(JobKind.RAW_SCORE, item_id) for item_id in range(200)]

    assert dispatcher.wait_for_idle(timeout=30)
    assert dispatcher._threads == {}
    assert len(dispatcher._jobs) == 10
    dropped = [r for r in results if r.job_id not in dispatcher._jobs]
    assert len(dropped) == 190


def test_failed_jobs_are_released() -> None:
    def _boom(_: int) -> None:
        raise RuntimeError("oracle down")

    dispatcher = InProcessDispatcher({JobKind.RAW_SCORE: _boom}, max_finished_jobs=2)

    for item_id in range(5):
        dispatcher.dispatch(JobKind.RAW_SCORE, item_id)

    assert dispatcher.wait_for_idle(timeout=30)
    assert dispatcher._threads == {}
    assert len(dispatcher._jobs) == 2
