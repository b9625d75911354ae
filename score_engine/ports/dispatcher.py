"""Port definition for fire-and-forget dispatch of queue items."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from score_engine.domain.models import JobKind


@dataclass(frozen=True, slots=True)
class DispatchResult:
    """Confirmation that a remote invocation started (not that it finished)."""

    started: bool
    job_id: str | None = None


@runtime_checkable
class DispatcherPort(Protocol):
    """Interface for starting asynchronous work on a queue item."""

    def dispatch(self, kind: JobKind, queue_item_id: int) -> DispatchResult:
        """Start processing a queue item without waiting for it.

        Must return quickly and tolerate duplicate calls for the same item.
        """


__all__ = ["DispatchResult", "DispatcherPort"]
