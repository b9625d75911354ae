"""Domain models for the engagement score engine.

All models use Pydantic v2 for validation and serialization.
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from score_engine.domain.scoring_constants import (
    DEFAULT_MAX_CHARS,
    FORUM_FREQ_HIGH,
    FORUM_FREQ_LOW,
    FORUM_FREQ_MID,
    FORUM_LOWER_FREQ_COUNT,
    FORUM_TIME_DECAY_FRACTION,
    FORUM_TOP_BAND_MAX_LENGTH,
    FORUM_TOP_THRESHOLD_LOWER_BOUND,
    FORUM_UPPER_FREQ_COUNT,
)


class JobKind(StrEnum):
    """Kinds of asynchronous work supported by the queue."""

    RAW_SCORE = "raw_score"
    SMART_SCORE = "smart_score"


class QueueStatus(StrEnum):
    """Queue item lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class RecordKind(StrEnum):
    """Record families protected by the dedup guard (values are table names)."""

    RAW_SCORE = "raw_scores"
    SMART_SCORE = "smart_scores"
    LAST_CHECKED = "score_sentinels"


def _ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ScoreIdentity(BaseModel):
    """(user, project, signal type) triple that every score belongs to."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1)
    project_id: str = Field(..., min_length=1)
    signal_type_id: str = Field(..., min_length=1)

    def key(
        self, day: date | None = None, test_requesting_user: str | None = None
    ) -> ScoreKey:
        return ScoreKey(
            identity=self, day=day, test_requesting_user=test_requesting_user
        )

    def __str__(self) -> str:
        return f"{self.user_id}_{self.project_id}_{self.signal_type_id}"


class ScoreKey(BaseModel):
    """Identity narrowed to a day and a namespace (production or a test session).

    Rows written by a testing session carry the requesting user's id so they
    never collide with production rows for the same identity.
    """

    model_config = ConfigDict(frozen=True)

    identity: ScoreIdentity
    day: date | None = None
    test_requesting_user: str | None = None

    @property
    def is_testing(self) -> bool:
        return self.test_requesting_user is not None

    def for_day(self, day: date) -> ScoreKey:
        return self.model_copy(update={"day": day})

    def unique_key(self, kind: JobKind) -> str:
        """Deterministic queue idempotency key for this key and job kind."""

        if self.day is None:
            msg = "unique_key requires a day"
            raise ValueError(msg)

        unique = f"{self.identity}_{self.day.isoformat()}"
        if kind is JobKind.RAW_SCORE:
            unique += "_RAW"
        if self.test_requesting_user is not None:
            unique += f"_TEST_{self.test_requesting_user}"
        return unique


class PromptOverride(BaseModel):
    """Prompt settings supplied by a testing session."""

    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    prompt: str | None = None
    max_chars: int | None = Field(default=None, gt=0)


class TestingContext(BaseModel):
    """Qualifier that makes a scoring run a test run.

    Test runs write into their own namespace, always recompute and never touch
    the total score history.
    """

    __test__ = False

    requesting_user_id: str = Field(..., min_length=1)
    raw: PromptOverride | None = None
    smart: PromptOverride | None = None

    def override_for(self, kind: JobKind) -> PromptOverride | None:
        return self.raw if kind is JobKind.RAW_SCORE else self.smart


class QueueItemCreate(BaseModel):
    """Schema used when enqueuing a new queue item."""

    kind: JobKind
    identity: ScoreIdentity
    day: date
    testing: TestingContext | None = None
    parent_unique_key: str | None = None

    @property
    def key(self) -> ScoreKey:
        return self.identity.key(
            self.day,
            self.testing.requesting_user_id if self.testing else None,
        )

    @property
    def unique_key(self) -> str:
        return self.key.unique_key(self.kind)

    @model_validator(mode="after")
    def _validate_parent(self) -> QueueItemCreate:
        if self.kind is JobKind.SMART_SCORE and self.parent_unique_key is not None:
            msg = "smart_score items cannot have a parent"
            raise ValueError(msg)
        return self


class QueueItem(BaseModel):
    """Persisted queue item representation."""

    id: int
    unique_key: str
    parent_unique_key: str | None = None
    kind: JobKind
    user_id: str
    project_id: str
    signal_type_id: str
    day: date
    testing: TestingContext | None = None
    status: QueueStatus
    attempts: int = Field(default=0, ge=0)
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @field_validator("created_at", "started_at", "finished_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value)

    @property
    def identity(self) -> ScoreIdentity:
        return ScoreIdentity(
            user_id=self.user_id,
            project_id=self.project_id,
            signal_type_id=self.signal_type_id,
        )

    @property
    def key(self) -> ScoreKey:
        return self.identity.key(
            self.day,
            self.testing.requesting_user_id if self.testing else None,
        )


class _ScoreRecordBase(BaseModel):
    id: int | None = None
    user_id: str
    project_id: str
    signal_type_id: str
    day: date
    max_value: int = Field(..., gt=0)
    test_requesting_user: str | None = None
    request_id: str | None = None
    model: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    logs: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))

    @field_validator("created_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        return _ensure_utc(value)  # type: ignore[return-value]

    @property
    def identity(self) -> ScoreIdentity:
        return ScoreIdentity(
            user_id=self.user_id,
            project_id=self.project_id,
            signal_type_id=self.signal_type_id,
        )

    @property
    def key(self) -> ScoreKey:
        return self.identity.key(self.day, self.test_requesting_user)


class RawScoreRecord(_ScoreRecordBase):
    """One day's unweighted observation produced by the scoring oracle."""

    raw_value: int = Field(..., ge=0)
    description: str | None = None
    explanation: str | None = None


class SmartScoreRecord(_ScoreRecordBase):
    """Decay-weighted aggregate for one day."""

    value: int | None = Field(default=None, ge=0)
    previous_days: int = Field(..., gt=0)
    summary: str | None = None
    description: str | None = None
    explanation: str | None = None
    top_band_days: list[date] = Field(default_factory=list)


class SmartScoreTuning(BaseModel):
    """Tuning tuple for the top-band aggregation, selected by signal type."""

    model_config = ConfigDict(frozen=True)

    top_threshold_lower_bound: float = Field(
        default=FORUM_TOP_THRESHOLD_LOWER_BOUND, ge=0.0, le=1.0
    )
    top_band_max_length: int = Field(default=FORUM_TOP_BAND_MAX_LENGTH, gt=0)
    freq_low: float = Field(default=FORUM_FREQ_LOW, gt=0.0)
    freq_mid: float = Field(default=FORUM_FREQ_MID, gt=0.0)
    freq_high: float = Field(default=FORUM_FREQ_HIGH, gt=0.0)
    lower_freq_count: int = Field(default=FORUM_LOWER_FREQ_COUNT, gt=0)
    upper_freq_count: int = Field(default=FORUM_UPPER_FREQ_COUNT, gt=0)
    time_decay_fraction: float = Field(
        default=FORUM_TIME_DECAY_FRACTION, ge=0.0, le=1.0
    )

    @model_validator(mode="after")
    def _validate_counts(self) -> SmartScoreTuning:
        if self.lower_freq_count > self.upper_freq_count:
            msg = "lower_freq_count must not exceed upper_freq_count"
            raise ValueError(msg)
        return self


DEFAULT_RAW_PROMPT = (
    "Rate the engagement of {username} on {day} on a scale from 0 to {max_value}. "
    'Respond with JSON: {"value": <int>, "summary": <str>, '
    '"description": <str>, "explanation": <str>}.'
)
DEFAULT_SMART_PROMPT = (
    "Summarise the engagement of {username} over the {previous_days} days up to "
    "{day}. Scores are out of {max_value}. "
    'Respond with JSON: {"value": <int>, "summary": <str>, '
    '"description": <str>, "explanation": <str>}.'
)


class PromptSettings(BaseModel):
    """Oracle prompt configuration for a signal type.

    Unset model/temperature/max_chars fall back to the global LLM settings.
    """

    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_chars: int | None = Field(default=None, gt=0)
    raw_prompt: str = DEFAULT_RAW_PROMPT
    smart_prompt: str = DEFAULT_SMART_PROMPT

    def template_for(self, kind: JobKind) -> str:
        return self.raw_prompt if kind is JobKind.RAW_SCORE else self.smart_prompt


class SignalTypeSettings(BaseModel):
    """Typed entry of the signal type configuration map."""

    tuning: SmartScoreTuning = Field(default_factory=SmartScoreTuning)
    prompts: PromptSettings = Field(default_factory=PromptSettings)


class ProjectSignal(BaseModel):
    """Per-(project, signal type) settings stored alongside the scores."""

    project_id: str
    signal_type_id: str
    signal_type_name: str
    max_value: int = Field(..., gt=0)
    previous_days: int = Field(..., gt=0)
    enabled: bool = True


class PromptConfig(BaseModel):
    """Fully resolved prompt configuration handed to the scoring oracle."""

    model: str
    temperature: float
    prompt: str
    max_chars: int = DEFAULT_MAX_CHARS


_PLACEHOLDER_PATTERN = re.compile(r"\{(username|max_value|previous_days|day)\}")


def render_prompt(template: str, variables: dict[str, object]) -> str:
    """Substitute known placeholders, leaving any other braces (JSON) intact."""

    return _PLACEHOLDER_PATTERN.sub(lambda m: str(variables[m.group(1)]), template)


class SignalConfig(BaseModel):
    """Project signal settings joined with the signal type's tuning profile."""

    project_signal: ProjectSignal
    tuning: SmartScoreTuning
    prompts: PromptSettings

    @property
    def max_value(self) -> int:
        return self.project_signal.max_value

    @property
    def previous_days(self) -> int:
        return self.project_signal.previous_days

    @property
    def enabled(self) -> bool:
        return self.project_signal.enabled

    @property
    def signal_type_name(self) -> str:
        return self.project_signal.signal_type_name

    def prompt_for(
        self,
        kind: JobKind,
        *,
        testing: TestingContext | None,
        username: str,
        day: date,
    ) -> PromptConfig:
        """Resolve the prompt for one oracle call, applying test overrides."""

        override = testing.override_for(kind) if testing else None
        template = self.prompts.template_for(kind)
        model = self.prompts.model
        temperature = self.prompts.temperature
        max_chars = self.prompts.max_chars or DEFAULT_MAX_CHARS
        if override is not None:
            template = override.prompt or template
            model = override.model or model
            if override.temperature is not None:
                temperature = override.temperature
            max_chars = override.max_chars or max_chars

        if model is None or temperature is None:
            msg = f"prompt model/temperature unresolved for {self.signal_type_name}"
            raise ValueError(msg)

        rendered = render_prompt(
            template,
            {
                "username": username,
                "max_value": self.max_value,
                "previous_days": self.previous_days,
                "day": day.isoformat(),
            },
        )
        return PromptConfig(
            model=model, temperature=temperature, prompt=rendered, max_chars=max_chars
        )


class DailyActivity(BaseModel):
    """Opaque activity records for one day, as supplied by platform adapters."""

    day: date
    records: list[dict[str, Any]] = Field(default_factory=list)


class OracleResult(BaseModel):
    """Bounded value plus explanation returned by the scoring oracle."""

    value: float = Field(..., ge=0)
    summary: str | None = None
    description: str | None = None
    explanation: str | None = None
    request_id: str | None = None
    model: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    logs: str = ""

    @property
    def tokens_used(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ScoreGap(BaseModel):
    """Contiguous range of missing smart scores between two known values."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    project_id: str
    signal_type_id: str
    gap_start: date
    gap_end: date
    value_before: int
    value_after: int
    max_value_before: int
    max_value_after: int
    previous_days_before: int
    previous_days_after: int

    @model_validator(mode="after")
    def _validate_range(self) -> ScoreGap:
        if self.gap_end < self.gap_start:
            msg = "gap_end must not precede gap_start"
            raise ValueError(msg)
        return self

    @property
    def length(self) -> int:
        return (self.gap_end - self.gap_start).days + 1

    @property
    def identity(self) -> ScoreIdentity:
        return ScoreIdentity(
            user_id=self.user_id,
            project_id=self.project_id,
            signal_type_id=self.signal_type_id,
        )


__all__ = [
    "DailyActivity",
    "JobKind",
    "OracleResult",
    "ProjectSignal",
    "PromptConfig",
    "PromptOverride",
    "PromptSettings",
    "QueueItem",
    "QueueItemCreate",
    "QueueStatus",
    "RawScoreRecord",
    "RecordKind",
    "ScoreGap",
    "ScoreIdentity",
    "ScoreKey",
    "SignalConfig",
    "SignalTypeSettings",
    "SmartScoreRecord",
    "SmartScoreTuning",
    "TestingContext",
]
