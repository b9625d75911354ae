"""Activity source reading per-day records persisted by platform ingestion."""

from datetime import date

from score_engine.config.logging_config import get_logger
from score_engine.domain.models import DailyActivity, ScoreIdentity
from score_engine.domain.protocols import ScoreStoreProtocol

logger = get_logger(__name__)


class RepositoryActivitySource:
    """ActivitySourceProtocol over the ``daily_activity`` table.

    Days whose stored record list is empty are not reported.
    """

    def __init__(self, store: ScoreStoreProtocol) -> None:
        self._store = store

    def get_daily_activity(
        self, identity: ScoreIdentity, start: date, end: date
    ) -> list[DailyActivity]:
        days = [
            activity
            for activity in self._store.get_daily_activity(identity, start, end)
            if activity.records
        ]
        logger.debug(
            "activity_days_loaded",
            identity=str(identity),
            start=start.isoformat(),
            end=end.isoformat(),
            days=len(days),
        )
        return days


__all__ = ["RepositoryActivitySource"]
