from __future__ import annotations

"""Process plumbing for the scoring scripts: logging, metrics, shutdown, sweeps."""

import signal
import threading
from collections.abc import Callable
from types import FrameType
from typing import Final, Protocol

from score_engine.config.logging_config import get_logger, setup_logging
from score_engine.config.settings import Settings
from score_engine.observability.metrics import ensure_metrics_exporter

logger = get_logger(__name__)

MIN_SWEEP_INTERVAL_SECONDS: Final[float] = 0.1
HANDLED_SIGNALS: Final[tuple[signal.Signals, ...]] = (signal.SIGTERM, signal.SIGINT)


class ShutdownSignal(Protocol):
    def is_set(self) -> bool: ...

    def wait(self, timeout: float) -> bool: ...


class ShutdownController:
    """Stop flag set from a signal handler and polled by the sweep loop."""

    def __init__(self) -> None:
        self._stopped = threading.Event()

    def is_set(self) -> bool:
        return self._stopped.is_set()

    def wait(self, timeout: float) -> bool:
        return self._stopped.wait(timeout)

    def handle(self, signum: int, frame: FrameType | None) -> None:
        logger.info("shutdown_requested", signal=signal.Signals(signum).name)
        self._stopped.set()


def create_shutdown_controller() -> ShutdownController:
    return ShutdownController()


def install_signal_handlers(controller: ShutdownController) -> None:
    for signum in HANDLED_SIGNALS:
        signal.signal(signum, controller.handle)


def initialize_logging(settings: Settings, *, json_logs: bool = False) -> None:
    setup_logging(log_level=settings.log_level, json_logs=json_logs)
    logger.info(
        "logging_initialized",
        level=settings.log_level,
        json_logs=json_logs,
        database_type=settings.database_type,
    )


def start_metrics(settings: Settings, *, enabled: bool) -> None:
    """Start the Prometheus exporter; one-shot runs leave it off."""

    if not enabled:
        logger.debug("metrics_exporter_disabled")
        return
    ensure_metrics_exporter(settings.metrics_port)


def run_scheduler_loop(
    *,
    controller: ShutdownSignal,
    interval_seconds: float,
    run_once: bool,
    action: Callable[[], object],
) -> int:
    """Call ``action`` every ``interval_seconds`` until shutdown.

    A failing sweep is logged and the next one runs on schedule. With
    ``run_once`` the single sweep's exception propagates.

    Returns:
        Number of sweeps that raised
    """
    interval_seconds = max(MIN_SWEEP_INTERVAL_SECONDS, interval_seconds)
    logger.info("sweep_loop_started", interval=interval_seconds, run_once=run_once)

    sweeps = 0
    failures = 0
    while not controller.is_set():
        sweeps += 1
        try:
            action()
        except Exception:  # noqa: BLE001
            failures += 1
            logger.exception("sweep_failed", sweep=sweeps, failures=failures)
            if run_once:
                raise
        if run_once or controller.wait(interval_seconds):
            break

    logger.info("sweep_loop_stopped", sweeps=sweeps, failures=failures)
    return failures


__all__ = [
    "ShutdownController",
    "ShutdownSignal",
    "create_shutdown_controller",
    "initialize_logging",
    "install_signal_handlers",
    "run_scheduler_loop",
    "start_metrics",
]
