from __future__ import annotations

"""Interpolate historical gaps in production smart scores."""

import argparse
import sys
from datetime import date
from pathlib import Path
from uuid import uuid4

sys.path.insert(0, str(Path(__file__).parent.parent))

from scripts import pipeline_runtime
from score_engine.config.logging_config import get_logger
from score_engine.config.settings import get_settings
from score_engine.domain.exceptions import GapFillSafetyError
from score_engine.use_cases.pipeline_factories import create_gap_filling

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fill gaps in smart score history")
    parser.add_argument(
        "--today",
        type=date.fromisoformat,
        default=None,
        help="Override today's date (YYYY-MM-DD) for the safety check",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs in JSON format",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    pipeline_runtime.initialize_logging(settings, json_logs=args.json_logs)

    gap_filling = create_gap_filling(settings)
    try:
        report = gap_filling.execute(today=args.today, correlation_id=str(uuid4()))
    except GapFillSafetyError as exc:
        logger.error(
            "gap_fill_aborted_unsafe",
            gap_end=exc.gap_end.isoformat(),
            yesterday=exc.yesterday.isoformat(),
        )
        return 2

    logger.info(
        "gap_fill_script_finished",
        gaps=report.gaps,
        inserted=report.inserted,
        already_filled=report.already_filled,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
