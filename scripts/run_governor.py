from __future__ import annotations

"""Periodic Queue Governor: recover stale items and dispatch pending work."""

import argparse
import sys
from pathlib import Path
from uuid import uuid4

sys.path.insert(0, str(Path(__file__).parent.parent))

from scripts import pipeline_runtime
from score_engine.adapters.job_runner_inprocess import InProcessDispatcher
from score_engine.config.logging_config import get_logger
from score_engine.config.settings import get_settings
from score_engine.domain.exceptions import UnknownSignalTypeError
from score_engine.use_cases.pipeline_factories import create_scoring_components

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the scoring queue Governor")
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=None,
        help="Interval between sweeps (defaults to governor.interval_seconds)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs in JSON format",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run a single sweep, wait for dispatched work and exit",
    )
    parser.add_argument(
        "--metrics",
        default=True,
        action=argparse.BooleanOptionalAction,
        help="Expose Prometheus metrics while running",
    )
    args = parser.parse_args(argv)
    if args.interval_seconds is not None and args.interval_seconds <= 0:
        parser.error("--interval-seconds must be greater than 0")
    return args


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    pipeline_runtime.initialize_logging(settings, json_logs=args.json_logs)
    pipeline_runtime.start_metrics(settings, enabled=args.metrics and not args.run_once)

    controller = pipeline_runtime.create_shutdown_controller()
    pipeline_runtime.install_signal_handlers(controller)

    try:
        components = create_scoring_components(settings)
    except (UnknownSignalTypeError, ValueError) as exc:
        logger.error("governor_startup_failed", error=str(exc))
        return 1

    def _sweep() -> None:
        components.governor.run(correlation_id=str(uuid4()))

    pipeline_runtime.run_scheduler_loop(
        controller=controller,
        interval_seconds=args.interval_seconds or settings.governor_interval_seconds,
        run_once=args.run_once,
        action=_sweep,
    )

    if args.run_once and isinstance(components.dispatcher, InProcessDispatcher):
        components.dispatcher.wait_for_idle(timeout=settings.queue_timeout_seconds)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
