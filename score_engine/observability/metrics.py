"""Prometheus metrics for the scoring queue and aggregation engine.

Metric objects are module-level singletons registered with the default
registry. The HTTP exporter is started explicitly by long-running scripts via
``ensure_metrics_exporter``; importing this module never opens a port.
"""

from __future__ import annotations

import threading
from typing import Final

from prometheus_client import Counter, Histogram, start_http_server

from score_engine.config.logging_config import get_logger

logger = get_logger(__name__)

QUEUE_ITEMS_ENQUEUED_TOTAL: Final[Counter] = Counter(
    "score_queue_items_enqueued_total",
    "Queue items newly inserted (duplicates excluded)",
    labelnames=("kind",),
)

QUEUE_ITEMS_DISPATCHED_TOTAL: Final[Counter] = Counter(
    "score_queue_items_dispatched_total",
    "Queue items handed to the dispatcher",
    labelnames=("kind",),
)

QUEUE_ITEMS_TERMINAL_TOTAL: Final[Counter] = Counter(
    "score_queue_items_terminal_total",
    "Queue items reaching a terminal status",
    labelnames=("kind", "status"),
)

QUEUE_ITEMS_RETRIED_TOTAL: Final[Counter] = Counter(
    "score_queue_items_retried_total",
    "Stale running items reset to pending by the Governor",
    labelnames=("kind",),
)

DEDUP_ROWS_PRUNED_TOTAL: Final[Counter] = Counter(
    "score_dedup_rows_pruned_total",
    "Superseded rows deleted by the dedup guard",
    labelnames=("record",),
)

ORACLE_CALLS_TOTAL: Final[Counter] = Counter(
    "score_oracle_calls_total",
    "Scoring oracle invocations",
    labelnames=("kind", "outcome"),
)

GAP_FILL_ROWS_TOTAL: Final[Counter] = Counter(
    "score_gap_fill_rows_total",
    "Interpolated smart score rows",
    labelnames=("outcome",),
)

JOB_DURATION_SECONDS: Final[Histogram] = Histogram(
    "score_job_duration_seconds",
    "Duration of queue item execution in seconds",
    labelnames=("kind",),
)

_EXPORTER_LOCK = threading.Lock()
_EXPORTER_STARTED = False


def ensure_metrics_exporter(port: int) -> None:
    """Start Prometheus HTTP exporter once per process."""

    global _EXPORTER_STARTED
    with _EXPORTER_LOCK:
        if _EXPORTER_STARTED:
            return

        try:
            start_http_server(port)
        except OSError as exc:
            logger.error(
                "metrics_exporter_start_failed",
                port=port,
                error=str(exc),
            )
            raise

        _EXPORTER_STARTED = True
        logger.info("metrics_exporter_started", port=port)


__all__ = [
    "DEDUP_ROWS_PRUNED_TOTAL",
    "GAP_FILL_ROWS_TOTAL",
    "JOB_DURATION_SECONDS",
    "ORACLE_CALLS_TOTAL",
    "QUEUE_ITEMS_DISPATCHED_TOTAL",
    "QUEUE_ITEMS_ENQUEUED_TOTAL",
    "QUEUE_ITEMS_RETRIED_TOTAL",
    "QUEUE_ITEMS_TERMINAL_TOTAL",
    "ensure_metrics_exporter",
]
