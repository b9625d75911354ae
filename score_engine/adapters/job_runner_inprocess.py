"""In-process dispatcher for development and testing.

Stands in for the remote function runtime: every dispatch starts a daemon
thread that runs the registered handler for the job kind and returns at once.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Final
from uuid import uuid4

from score_engine.config.logging_config import get_logger
from score_engine.domain.exceptions import DispatchError
from score_engine.domain.models import JobKind
from score_engine.observability.metrics import (
    JOB_DURATION_SECONDS,
    QUEUE_ITEMS_DISPATCHED_TOTAL,
)
from score_engine.ports.dispatcher import DispatcherPort, DispatchResult

logger = get_logger(__name__)

QueueItemHandler = Callable[[int], object]

_STATUS_RUNNING: Final[str] = "running"
_STATUS_SUCCEEDED: Final[str] = "succeeded"
_STATUS_FAILED: Final[str] = "failed"
DEFAULT_MAX_FINISHED_JOBS: Final[int] = 256


@dataclass
class JobRecord:
    """Internal representation of a dispatched job."""

    kind: JobKind
    queue_item_id: int
    status: str = field(default=_STATUS_RUNNING)
    submitted_at: float = field(default_factory=time.time)
    finished_at: float | None = field(default=None)
    error: str | None = field(default=None)


class InProcessDispatcher(DispatcherPort):
    """Dispatcher executing queue items on worker threads."""

    def __init__(
        self,
        handlers: dict[JobKind, QueueItemHandler] | None = None,
        *,
        max_finished_jobs: int = DEFAULT_MAX_FINISHED_JOBS,
    ):
        self._handlers: dict[JobKind, QueueItemHandler] = dict(handlers or {})
        self._jobs: dict[str, JobRecord] = {}
        self._threads: dict[str, threading.Thread] = {}
        # Oldest finished job ids first; records beyond the bound are dropped.
        self._finished: deque[str] = deque()
        self._max_finished_jobs = max_finished_jobs
        self._lock = threading.RLock()

    def register(self, kind: JobKind, handler: QueueItemHandler) -> None:
        with self._lock:
            self._handlers[kind] = handler

    def dispatch(self, kind: JobKind, queue_item_id: int) -> DispatchResult:
        with self._lock:
            handler = self._handlers.get(kind)
        if handler is None:
            raise DispatchError(f"No handler registered for job kind: {kind}")

        job_id = str(uuid4())
        thread = threading.Thread(
            target=self._execute_job,
            args=(job_id, handler),
            name=f"{kind.value}-{queue_item_id}",
            daemon=True,
        )
        with self._lock:
            self._jobs[job_id] = JobRecord(kind=kind, queue_item_id=queue_item_id)
            self._threads[job_id] = thread

        logger.info(
            "job_dispatched", job_id=job_id, job_kind=kind.value, queue_item_id=queue_item_id
        )
        QUEUE_ITEMS_DISPATCHED_TOTAL.labels(kind=kind.value).inc()
        thread.start()
        return DispatchResult(started=True, job_id=job_id)

    def status(self, job_id: str) -> dict[str, object]:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                raise KeyError(f"Unknown job_id: {job_id}")
            return {
                "job_id": job_id,
                "kind": record.kind.value,
                "queue_item_id": record.queue_item_id,
                "status": record.status,
                "submitted_at": record.submitted_at,
                "finished_at": record.finished_at,
                "error": record.error,
            }

    def wait_for_idle(self, timeout: float | None = None) -> bool:
        """Join dispatched threads, including ones started while waiting.

        Returns:
            ``True`` when no job is still running
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = [t for t in self._threads.values() if t.is_alive()]
            if not pending:
                return True
            for thread in pending:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                thread.join(remaining)

    # Internal helpers -------------------------------------------------

    def _execute_job(self, job_id: str, handler: QueueItemHandler) -> None:
        with self._lock:
            record = self._jobs[job_id]
            kind = record.kind
            queue_item_id = record.queue_item_id

        start_time = time.perf_counter()
        try:
            handler(queue_item_id)
        except Exception as exc:  # noqa: BLE001
            duration = time.perf_counter() - start_time
            JOB_DURATION_SECONDS.labels(kind=kind.value).observe(duration)
            logger.exception(
                "job_failed", job_id=job_id, job_kind=kind.value, queue_item_id=queue_item_id
            )
            self._finish(job_id, record, _STATUS_FAILED, error=str(exc))
        else:
            duration = time.perf_counter() - start_time
            JOB_DURATION_SECONDS.labels(kind=kind.value).observe(duration)
            logger.info(
                "job_completed",
                job_id=job_id,
                job_kind=kind.value,
                duration_seconds=duration,
            )
            self._finish(job_id, record, _STATUS_SUCCEEDED)

    def _finish(
        self, job_id: str, record: JobRecord, status: str, *, error: str | None = None
    ) -> None:
        with self._lock:
            record.status = status
            record.finished_at = time.time()
            record.error = error
            self._threads.pop(job_id, None)
            self._finished.append(job_id)
            while len(self._finished) > self._max_finished_jobs:
                self._jobs.pop(self._finished.popleft(), None)


__all__ = ["InProcessDispatcher", "JobRecord"]
