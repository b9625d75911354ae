"""Default tuning and queue constants for engagement scoring.

Per-signal-type tuning is configured in ``config/signal_types.yaml`` and
validated at startup; the values here are the built-in profiles and limits
used when no override exists.
"""

from typing import Final

# Queue limits
DEFAULT_MAX_ATTEMPTS: Final[int] = 1
"""Retries allowed before a running item becomes terminal ``error``.

With the default of 1 an item runs at most twice: the first dispatch plus
one Governor retry.
"""

DEFAULT_TIMEOUT_SECONDS: Final[int] = 52
"""Seconds a ``running`` item may go without finishing before it is reset."""

DEFAULT_MAX_IN_FLIGHT: Final[int] = 20
"""Global cap on concurrently ``running`` queue items (oracle backpressure)."""

DEFAULT_COMPLETED_RETENTION_DAYS: Final[int] = 7

# Aggregate history
DEFAULT_TOTAL_SCORE_CAP: Final[int] = 100
"""Upper bound for the per-(user, project, day) total across signal types."""

# Gap filling
DEFAULT_GAP_FILL_BATCH_LIMIT: Final[int] = 100
GAP_FILL_REQUEST_SUFFIX: Final[str] = "GAP_FILL"

# Sentinel tags
LAST_CHECKED_TAG: Final[str] = "last_checked"

# Discourse forum profile
FORUM_TOP_THRESHOLD_LOWER_BOUND: Final[float] = 0.3
FORUM_TOP_BAND_MAX_LENGTH: Final[int] = 5
FORUM_FREQ_LOW: Final[float] = 0.5
FORUM_FREQ_MID: Final[float] = 0.85
FORUM_FREQ_HIGH: Final[float] = 1.0
FORUM_LOWER_FREQ_COUNT: Final[int] = 2
FORUM_UPPER_FREQ_COUNT: Final[int] = 5
FORUM_TIME_DECAY_FRACTION: Final[float] = 0.3
"""Final 30% of the lookback window decays to zero weight."""

# Discord profile (chattier signal: wider band, more days needed for full credit)
DISCORD_TOP_THRESHOLD_LOWER_BOUND: Final[float] = 0.25
DISCORD_TOP_BAND_MAX_LENGTH: Final[int] = 7
DISCORD_FREQ_LOW: Final[float] = 0.5
DISCORD_FREQ_MID: Final[float] = 0.8
DISCORD_FREQ_HIGH: Final[float] = 1.0
DISCORD_LOWER_FREQ_COUNT: Final[int] = 3
DISCORD_UPPER_FREQ_COUNT: Final[int] = 7
DISCORD_TIME_DECAY_FRACTION: Final[float] = 0.4

# Oracle prompt defaults
DEFAULT_MAX_CHARS: Final[int] = 20_000
NO_ACTIVITY_SUMMARY_TEMPLATE: Final[str] = "No activity in the past {previous_days} days"
