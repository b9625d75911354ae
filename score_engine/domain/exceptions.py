"""Custom exception hierarchy for the engagement score engine.

Following error taxonomy: retryable (transient infrastructure) and
non-retryable (validation, configuration, safety).
"""

from __future__ import annotations

from datetime import date


class ScoreEngineError(Exception):
    """Base exception for all application errors."""

    pass


class RetryableError(ScoreEngineError):
    """Errors that can be retried (network issues, temporary failures)."""

    pass


class NonRetryableError(ScoreEngineError):
    """Errors that should not be retried (validation, configuration, logic errors)."""

    pass


class ValidationError(NonRetryableError):
    """Data validation errors."""

    pass


class RepositoryError(RetryableError):
    """Database/storage errors."""

    pass


class DuplicateRecordError(RepositoryError):
    """Insert rejected by a uniqueness constraint."""

    pass


class OracleError(RetryableError):
    """Scoring oracle (LLM) communication errors."""

    pass


class DispatchError(RetryableError):
    """Asynchronous dispatch could not be started."""

    pass


class UnknownSignalTypeError(NonRetryableError):
    """Signal type has no registered tuning profile."""

    def __init__(self, signal_type: str) -> None:
        self.signal_type = signal_type
        super().__init__(f"Unknown signal type: {signal_type}")


class SignalNotConfiguredError(NonRetryableError):
    """Project has no configuration for the requested signal type."""

    pass


class MissingActivityError(NonRetryableError):
    """Raw score requested for a day without activity data."""

    pass


class GapFillSafetyError(NonRetryableError):
    """Gap touches the most recent expected day; filling would mask an outage."""

    def __init__(self, gap_end: date, yesterday: date) -> None:
        self.gap_end = gap_end
        self.yesterday = yesterday
        super().__init__(
            f"Refusing to fill gap ending {gap_end.isoformat()}: "
            f"reaches the most recent expected day ({yesterday.isoformat()})"
        )
