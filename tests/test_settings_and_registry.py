from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from score_engine.config.settings import Settings, load_all_configs
from score_engine.domain.exceptions import (
    SignalNotConfiguredError,
    UnknownSignalTypeError,
)
from score_engine.domain.models import (
    JobKind,
    ProjectSignal,
    PromptOverride,
    SmartScoreTuning,
    TestingContext,
    render_prompt,
)
from score_engine.services.signal_registry import SignalTypeRegistry

SCHEMA_DIR = Path(__file__).resolve().parents[1] / "config" / "schemas"


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def test_default_queue_tunables(settings: Settings) -> None:
    assert settings.queue_max_attempts == 1
    assert settings.queue_timeout_seconds == 52
    assert settings.queue_max_in_flight == 20
    assert set(settings.signal_types) >= {"discourse_forum", "discord"}


def test_yaml_overrides_are_merged(tmp_path: Path, monkeypatch) -> None:
    _write(
        tmp_path / "config" / "main.yaml",
        "queue:\n  max_in_flight: 3\nscoring:\n  total_score_cap: 50\n",
    )
    _write(
        tmp_path / "config" / "signal_types.yaml",
        "signal_types:\n"
        "  discord:\n"
        "    tuning:\n"
        "      top_band_max_length: 9\n"
        "  telegram:\n"
        "    prompts:\n"
        "      model: gpt-telegram\n",
    )
    monkeypatch.chdir(tmp_path)

    loaded = Settings()

    assert loaded.queue_max_in_flight == 3
    assert loaded.total_score_cap == 50
    assert loaded.signal_types["discord"].tuning.top_band_max_length == 9
    assert loaded.signal_types["discord"].tuning.freq_mid == 0.8
    assert loaded.signal_types["telegram"].prompts.model == "gpt-telegram"
    assert "discourse_forum" in loaded.signal_types


def test_schema_violation_is_rejected(tmp_path: Path) -> None:
    _write(tmp_path / "main.yaml", "queue:\n  max_in_flight: 0\n")
    _write(
        tmp_path / "schemas" / "main.schema.json",
        SCHEMA_DIR.joinpath("main.schema.json").read_text(encoding="utf-8"),
    )

    with pytest.raises(ValueError, match="Config validation failed"):
        load_all_configs(tmp_path)


def test_tuning_rejects_inverted_counts() -> None:
    with pytest.raises(PydanticValidationError):
        SmartScoreTuning(lower_freq_count=6, upper_freq_count=5)


def test_registry_fills_prompt_defaults(settings: Settings) -> None:
    registry = SignalTypeRegistry.from_settings(settings)

    prompts = registry.get("discourse_forum").prompts

    assert prompts.model == settings.llm_model
    assert prompts.temperature == settings.llm_temperature
    assert prompts.max_chars == settings.llm_max_chars


def test_registry_rejects_unknown_signal_types(registry, repo) -> None:
    repo.save_project_signal(
        ProjectSignal(
            project_id="p",
            signal_type_id="s",
            signal_type_name="smoke_signals",
            max_value=10,
            previous_days=7,
        )
    )

    with pytest.raises(UnknownSignalTypeError):
        registry.get("smoke_signals")
    with pytest.raises(UnknownSignalTypeError):
        registry.ensure_store_signals_known(repo)


def test_resolve_requires_project_signal(registry, repo) -> None:
    with pytest.raises(SignalNotConfiguredError):
        registry.resolve(repo, "p", "missing")


def test_prompt_rendering_keeps_json_braces() -> None:
    rendered = render_prompt(
        'Rate {username} out of {max_value}. Respond {"value": <int>}',
        {"username": "alice", "max_value": 10, "previous_days": 7, "day": "x"},
    )

    assert rendered == 'Rate alice out of 10. Respond {"value": <int>}'


def test_prompt_for_applies_testing_overrides(registry, forum_signal) -> None:
    signal = registry.build_config(forum_signal)
    testing = TestingContext(
        requesting_user_id="tester",
        raw=PromptOverride(model="gpt-experiment", temperature=0.0, prompt="Score {day}"),
    )

    raw_prompt = signal.prompt_for(
        JobKind.RAW_SCORE, testing=testing, username="u", day=date(2024, 3, 20)
    )
    smart_prompt = signal.prompt_for(
        JobKind.SMART_SCORE, testing=testing, username="u", day=date(2024, 3, 20)
    )

    assert raw_prompt.model == "gpt-experiment"
    assert raw_prompt.temperature == 0.0
    assert raw_prompt.prompt == "Score 2024-03-20"
    assert smart_prompt.model == signal.prompts.model
    assert "10 days" in smart_prompt.prompt
