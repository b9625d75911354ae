from __future__ import annotations

"""Request smart scores for one identity or for every active identity."""

import argparse
import sys
from datetime import date
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from scripts import pipeline_runtime
from score_engine.adapters.job_runner_inprocess import InProcessDispatcher
from score_engine.config.logging_config import get_logger
from score_engine.config.settings import get_settings
from score_engine.domain.exceptions import UnknownSignalTypeError
from score_engine.domain.models import ScoreIdentity, TestingContext
from score_engine.use_cases.pipeline_factories import create_scoring_components

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Enqueue smart score requests")
    parser.add_argument("--daily", action="store_true", help="Enqueue all identities")
    parser.add_argument("--user-id", help="User identifier")
    parser.add_argument("--project-id", help="Project identifier")
    parser.add_argument("--signal-type-id", help="Signal type identifier")
    parser.add_argument(
        "--day",
        type=date.fromisoformat,
        default=None,
        help="Target day (YYYY-MM-DD); defaults to yesterday",
    )
    parser.add_argument(
        "--test-user",
        default=None,
        help="Run as a testing session on behalf of this user",
    )
    parser.add_argument(
        "--wait-seconds",
        type=float,
        default=0.0,
        help="Wait for in-process work to finish before exiting",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs in JSON format",
    )
    args = parser.parse_args(argv)
    if not args.daily and not (args.user_id and args.project_id and args.signal_type_id):
        parser.error(
            "--user-id, --project-id and --signal-type-id are required without --daily"
        )
    if args.daily and args.test_user:
        parser.error("--test-user cannot be combined with --daily")
    return args


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    pipeline_runtime.initialize_logging(settings, json_logs=args.json_logs)

    try:
        components = create_scoring_components(settings)
    except (UnknownSignalTypeError, ValueError) as exc:
        logger.error("trigger_startup_failed", error=str(exc))
        return 1

    if args.daily:
        components.trigger.enqueue_daily_scoring(args.day)
    else:
        testing = (
            TestingContext(requesting_user_id=args.test_user) if args.test_user else None
        )
        components.trigger.request_score(
            ScoreIdentity(
                user_id=args.user_id,
                project_id=args.project_id,
                signal_type_id=args.signal_type_id,
            ),
            args.day,
            testing=testing,
        )

    if args.wait_seconds > 0 and isinstance(components.dispatcher, InProcessDispatcher):
        if not components.dispatcher.wait_for_idle(timeout=args.wait_seconds):
            logger.warning("trigger_wait_timed_out", wait_seconds=args.wait_seconds)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
