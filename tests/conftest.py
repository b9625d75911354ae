"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Generator
from datetime import date
from typing import Any
from uuid import uuid4

import pytest

from score_engine.adapters.repository_factory import create_repository
from score_engine.config.settings import Settings
from score_engine.domain.exceptions import DispatchError
from score_engine.domain.models import (
    JobKind,
    OracleResult,
    ProjectSignal,
    PromptConfig,
    RawScoreRecord,
    ScoreIdentity,
    SmartScoreRecord,
)
from score_engine.domain.protocols import RepositoryProtocol
from score_engine.ports.dispatcher import DispatchResult
from score_engine.ports.task_queue import QueueStorePort
from score_engine.services.dedup_guard import DedupGuard
from score_engine.services.signal_registry import SignalTypeRegistry


class FakeOracle:
    """Scoring oracle returning queued values and recording every call."""

    def __init__(
        self,
        values: list[float] | None = None,
        *,
        default: float = 5.0,
        error: Exception | None = None,
    ) -> None:
        self.calls: list[tuple[list[dict[str, Any]], PromptConfig]] = []
        self._values = list(values or [])
        self._default = default
        self._error = error
        self._lock = threading.Lock()

    def score(
        self, activity_records: list[dict[str, Any]], prompt_config: PromptConfig
    ) -> OracleResult:
        with self._lock:
            self.calls.append((activity_records, prompt_config))
            if self._error is not None:
                raise self._error
            value = self._values.pop(0) if self._values else self._default

        return OracleResult(
            value=value,
            summary="steady participation",
            description="answered questions",
            explanation="several helpful replies",
            request_id=f"fake-{uuid4().hex}",
            model=prompt_config.model,
            prompt_tokens=12,
            completion_tokens=4,
            logs="{}",
        )


class RecordingDispatcher:
    """Dispatcher that records calls without running anything."""

    def __init__(self, *, fail_after: int | None = None) -> None:
        self.calls: list[tuple[JobKind, int]] = []
        self._fail_after = fail_after

    def dispatch(self, kind: JobKind, queue_item_id: int) -> DispatchResult:
        if self._fail_after is not None and len(self.calls) >= self._fail_after:
            raise DispatchError("dispatch endpoint unavailable")
        self.calls.append((kind, queue_item_id))
        return DispatchResult(started=True, job_id=f"job-{len(self.calls)}")

    @property
    def dispatched_ids(self) -> list[int]:
        return [queue_item_id for _, queue_item_id in self.calls]


@pytest.fixture
def settings(tmp_path_factory: pytest.TempPathFactory) -> Settings:
    """Settings pointing at a throwaway SQLite database."""

    db_path = tmp_path_factory.mktemp("db") / "scores.sqlite"
    return Settings().model_copy(
        update={
            "database_type": "sqlite",
            "db_path": str(db_path),
            "openai_api_key": None,
        }
    )


@pytest.fixture
def repo(settings: Settings) -> Generator[RepositoryProtocol, None, None]:
    repository = create_repository(settings)
    yield repository
    close = getattr(repository, "close", None)
    if callable(close):
        close()


@pytest.fixture
def queue(repo: RepositoryProtocol) -> QueueStorePort:
    return repo.task_queue()


@pytest.fixture
def guard(repo: RepositoryProtocol) -> DedupGuard:
    return DedupGuard(repo)


@pytest.fixture
def registry(settings: Settings) -> SignalTypeRegistry:
    return SignalTypeRegistry.from_settings(settings)


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def identity() -> ScoreIdentity:
    return ScoreIdentity(user_id="user-1", project_id="proj-1", signal_type_id="forum")


@pytest.fixture
def forum_signal(repo: RepositoryProtocol) -> ProjectSignal:
    """Discourse forum signal on a 0-10 scale with a 10 day window."""

    project_signal = ProjectSignal(
        project_id="proj-1",
        signal_type_id="forum",
        signal_type_name="discourse_forum",
        max_value=10,
        previous_days=10,
    )
    repo.save_project_signal(project_signal)
    return project_signal


@pytest.fixture
def make_raw_score() -> Callable[..., RawScoreRecord]:
    def _make(
        identity: ScoreIdentity,
        day: date,
        raw_value: int,
        *,
        max_value: int = 10,
        test_requesting_user: str | None = None,
    ) -> RawScoreRecord:
        return RawScoreRecord(
            user_id=identity.user_id,
            project_id=identity.project_id,
            signal_type_id=identity.signal_type_id,
            day=day,
            raw_value=raw_value,
            max_value=max_value,
            description=f"activity on {day.isoformat()}",
            test_requesting_user=test_requesting_user,
        )

    return _make


@pytest.fixture
def make_smart_score() -> Callable[..., SmartScoreRecord]:
    def _make(
        identity: ScoreIdentity,
        day: date,
        value: int | None,
        *,
        max_value: int = 100,
        previous_days: int = 10,
        test_requesting_user: str | None = None,
        request_id: str | None = None,
    ) -> SmartScoreRecord:
        return SmartScoreRecord(
            user_id=identity.user_id,
            project_id=identity.project_id,
            signal_type_id=identity.signal_type_id,
            day=day,
            value=value,
            max_value=max_value,
            previous_days=previous_days,
            test_requesting_user=test_requesting_user,
            request_id=request_id,
        )

    return _make


@pytest.fixture
def make_oracle() -> type[FakeOracle]:
    return FakeOracle


@pytest.fixture
def make_dispatcher() -> type[RecordingDispatcher]:
    return RecordingDispatcher
