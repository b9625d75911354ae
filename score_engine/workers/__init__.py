"""Worker package exports."""

from score_engine.workers.queue_items import QueueItemWorker, WorkerOutcome

__all__ = ["QueueItemWorker", "WorkerOutcome"]
