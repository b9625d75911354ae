"""Factories to compose the scoring pipeline."""

from __future__ import annotations

from dataclasses import dataclass

from score_engine.adapters.activity_source import RepositoryActivitySource
from score_engine.adapters.job_runner_inprocess import InProcessDispatcher
from score_engine.adapters.llm_client import OpenAIScoringOracle
from score_engine.adapters.repository_factory import create_repository
from score_engine.config.settings import Settings
from score_engine.domain.models import JobKind
from score_engine.domain.protocols import (
    ActivitySourceProtocol,
    RepositoryProtocol,
    ScoringOracleProtocol,
)
from score_engine.ports.dispatcher import DispatcherPort
from score_engine.ports.task_queue import QueueStorePort
from score_engine.services.dedup_guard import DedupGuard
from score_engine.services.signal_registry import SignalTypeRegistry
from score_engine.use_cases.fan_out import RawScoreFanOut
from score_engine.use_cases.fill_gaps import GapFilling
from score_engine.use_cases.queue_governor import QueueGovernor
from score_engine.use_cases.score_aggregate import AggregateScoring
from score_engine.use_cases.score_raw_day import RawDayScoring
from score_engine.use_cases.trigger_scoring import ScoringTrigger
from score_engine.workers.queue_items import QueueItemWorker


@dataclass(frozen=True, slots=True)
class ScoringComponents:
    repository: RepositoryProtocol
    queue: QueueStorePort
    dispatcher: DispatcherPort
    registry: SignalTypeRegistry
    guard: DedupGuard
    worker: QueueItemWorker
    governor: QueueGovernor
    trigger: ScoringTrigger


def create_oracle(settings: Settings) -> ScoringOracleProtocol:
    if settings.openai_api_key is None:
        raise ValueError("OPENAI_API_KEY must be set to build the scoring oracle")
    return OpenAIScoringOracle(
        api_key=settings.openai_api_key.get_secret_value(),
        timeout=settings.llm_timeout_seconds,
    )


def create_gap_filling(
    settings: Settings, repository: RepositoryProtocol | None = None
) -> GapFilling:
    return GapFilling(
        store=repository or create_repository(settings),
        batch_limit=settings.gap_fill_batch_limit,
        total_score_cap=settings.total_score_cap,
    )


def create_scoring_components(
    settings: Settings,
    *,
    repository: RepositoryProtocol | None = None,
    oracle: ScoringOracleProtocol | None = None,
    dispatcher: DispatcherPort | None = None,
    activity_source: ActivitySourceProtocol | None = None,
) -> ScoringComponents:
    """Build the queue, worker, Governor and triggers over one repository.

    Without an explicit dispatcher an :class:`InProcessDispatcher` is created
    and the worker is registered for both job kinds.

    Raises:
        UnknownSignalTypeError: A stored project signal names an unknown type
    """
    repository = repository or create_repository(settings)
    queue = repository.task_queue()
    registry = SignalTypeRegistry.from_settings(settings)
    registry.ensure_store_signals_known(repository)

    dispatcher = dispatcher or InProcessDispatcher()
    activity_source = activity_source or RepositoryActivitySource(repository)
    oracle = oracle or create_oracle(settings)
    guard = DedupGuard(repository)

    fan_out = RawScoreFanOut(
        store=repository,
        queue=queue,
        dispatcher=dispatcher,
        activity_source=activity_source,
        max_in_flight=settings.queue_max_in_flight,
    )
    raw_scoring = RawDayScoring(
        store=repository,
        guard=guard,
        registry=registry,
        activity_source=activity_source,
        oracle=oracle,
    )
    aggregate_scoring = AggregateScoring(
        store=repository,
        guard=guard,
        registry=registry,
        fan_out=fan_out,
        oracle=oracle,
        total_score_cap=settings.total_score_cap,
    )
    worker = QueueItemWorker(
        queue=queue,
        dispatcher=dispatcher,
        score_raw_day=raw_scoring.execute,
        score_aggregate=aggregate_scoring.execute,
        max_in_flight=settings.queue_max_in_flight,
    )
    if isinstance(dispatcher, InProcessDispatcher):
        dispatcher.register(JobKind.RAW_SCORE, worker.run)
        dispatcher.register(JobKind.SMART_SCORE, worker.run)

    governor = QueueGovernor(
        queue=queue,
        guard=guard,
        dispatcher=dispatcher,
        max_attempts=settings.queue_max_attempts,
        timeout_seconds=settings.queue_timeout_seconds,
        max_in_flight=settings.queue_max_in_flight,
        completed_retention_days=settings.queue_completed_retention_days,
    )
    trigger = ScoringTrigger(
        store=repository,
        queue=queue,
        dispatcher=dispatcher,
        registry=registry,
        max_in_flight=settings.queue_max_in_flight,
    )
    return ScoringComponents(
        repository=repository,
        queue=queue,
        dispatcher=dispatcher,
        registry=registry,
        guard=guard,
        worker=worker,
        governor=governor,
        trigger=trigger,
    )


__all__ = [
    "ScoringComponents",
    "create_gap_filling",
    "create_oracle",
    "create_scoring_components",
]
