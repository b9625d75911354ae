"""Typed map from signal type name to tuning and prompt profile."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from score_engine.config.logging_config import get_logger
from score_engine.config.settings import Settings
from score_engine.domain.exceptions import (
    SignalNotConfiguredError,
    UnknownSignalTypeError,
)
from score_engine.domain.models import (
    ProjectSignal,
    SignalConfig,
    SignalTypeSettings,
)
from score_engine.domain.protocols import ScoreStoreProtocol

logger = get_logger(__name__)


class SignalTypeRegistry:
    """Resolves signal type names to validated profiles.

    Unset prompt model/temperature/max_chars are filled from the global LLM
    settings when the registry is built, so every resolved config is complete.
    """

    def __init__(self, profiles: Mapping[str, SignalTypeSettings]) -> None:
        if not profiles:
            raise ValueError("profiles must not be empty")
        self._profiles = dict(profiles)

    @classmethod
    def from_settings(cls, settings: Settings) -> SignalTypeRegistry:
        profiles: dict[str, SignalTypeSettings] = {}
        for name, profile in settings.signal_types.items():
            prompts = profile.prompts.model_copy(
                update={
                    "model": profile.prompts.model or settings.llm_model,
                    "temperature": (
                        profile.prompts.temperature
                        if profile.prompts.temperature is not None
                        else settings.llm_temperature
                    ),
                    "max_chars": profile.prompts.max_chars or settings.llm_max_chars,
                }
            )
            profiles[name] = profile.model_copy(update={"prompts": prompts})
        return cls(profiles)

    @property
    def names(self) -> list[str]:
        return sorted(self._profiles)

    def get(self, name: str) -> SignalTypeSettings:
        profile = self._profiles.get(name)
        if profile is None:
            raise UnknownSignalTypeError(name)
        return profile

    def ensure_known(self, names: Iterable[str]) -> None:
        """Fail fast if any configured signal type lacks a profile."""

        unknown = sorted({name for name in names if name not in self._profiles})
        if unknown:
            logger.error(
                "signal_types_unknown", unknown=unknown, known=self.names
            )
            raise UnknownSignalTypeError(", ".join(unknown))

    def ensure_store_signals_known(self, store: ScoreStoreProtocol) -> int:
        project_signals = store.list_project_signals()
        self.ensure_known(ps.signal_type_name for ps in project_signals)
        logger.info(
            "signal_types_validated",
            project_signals=len(project_signals),
            signal_types=self.names,
        )
        return len(project_signals)

    def build_config(self, project_signal: ProjectSignal) -> SignalConfig:
        profile = self.get(project_signal.signal_type_name)
        return SignalConfig(
            project_signal=project_signal,
            tuning=profile.tuning,
            prompts=profile.prompts,
        )

    def resolve(
        self, store: ScoreStoreProtocol, project_id: str, signal_type_id: str
    ) -> SignalConfig:
        project_signal = store.get_project_signal(project_id, signal_type_id)
        if project_signal is None:
            raise SignalNotConfiguredError(
                f"Signal {signal_type_id} is not configured for project {project_id}"
            )
        return self.build_config(project_signal)


__all__ = ["SignalTypeRegistry"]
