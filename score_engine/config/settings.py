"""Application settings with Pydantic Settings validation.

Secrets (API keys, database password) are loaded from .env file.
Non-sensitive configuration is loaded from config/*.yaml files.
All configs are automatically merged and validated against JSON schemas.
"""

import json
from pathlib import Path
from typing import Any, Final, Literal, cast

import yaml
from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from score_engine.config.logging_config import get_logger
from score_engine.domain.models import (
    PromptSettings,
    SignalTypeSettings,
    SmartScoreTuning,
)
from score_engine.domain.scoring_constants import (
    DEFAULT_COMPLETED_RETENTION_DAYS,
    DEFAULT_GAP_FILL_BATCH_LIMIT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_CHARS,
    DEFAULT_MAX_IN_FLIGHT,
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_TOTAL_SCORE_CAP,
    DISCORD_FREQ_HIGH,
    DISCORD_FREQ_LOW,
    DISCORD_FREQ_MID,
    DISCORD_LOWER_FREQ_COUNT,
    DISCORD_TIME_DECAY_FRACTION,
    DISCORD_TOP_BAND_MAX_LENGTH,
    DISCORD_TOP_THRESHOLD_LOWER_BOUND,
    DISCORD_UPPER_FREQ_COUNT,
)

POSTGRES_MIN_CONNECTIONS_DEFAULT: Final[int] = 1
POSTGRES_MAX_CONNECTIONS_DEFAULT: Final[int] = 10
POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT: Final[int] = 10_000
POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT: Final[int] = 10
POSTGRES_APPLICATION_NAME_DEFAULT: Final[str] = "score_engine"

CONFIG_DIR: Final[Path] = Path("config")

logger = cast(Any, get_logger(__name__))


def default_signal_types() -> dict[str, SignalTypeSettings]:
    """Built-in signal type profiles."""

    return {
        "discourse_forum": SignalTypeSettings(),
        "discord": SignalTypeSettings(
            tuning=SmartScoreTuning(
                top_threshold_lower_bound=DISCORD_TOP_THRESHOLD_LOWER_BOUND,
                top_band_max_length=DISCORD_TOP_BAND_MAX_LENGTH,
                freq_low=DISCORD_FREQ_LOW,
                freq_mid=DISCORD_FREQ_MID,
                freq_high=DISCORD_FREQ_HIGH,
                lower_freq_count=DISCORD_LOWER_FREQ_COUNT,
                upper_freq_count=DISCORD_UPPER_FREQ_COUNT,
                time_decay_fraction=DISCORD_TIME_DECAY_FRACTION,
            ),
            prompts=PromptSettings(),
        ),
    }


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge into base (takes precedence)

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_schema(schema_name: str, config_dir: Path = CONFIG_DIR) -> dict[str, Any]:
    """Load JSON Schema from config/schemas/.

    Returns:
        JSON Schema dictionary or empty dict if not found
    """
    schema_path = config_dir / "schemas" / f"{schema_name}.schema.json"
    if not schema_path.exists():
        return {}

    try:
        with open(schema_path, encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(
            "config_schema_load_failed",
            schema=schema_name,
            error=str(e),
        )
        return {}


def validate_config_section(
    config: dict[str, Any],
    schema_name: str,
    file_path: str = "",
    config_dir: Path = CONFIG_DIR,
) -> None:
    """Validate config section against JSON Schema.

    Raises:
        ValueError: If validation fails
    """
    schema = load_schema(schema_name, config_dir)
    if not schema:
        return

    try:
        validate(instance=config, schema=schema)
        logger.debug("config_validation_succeeded", schema=schema_name)
    except JSONSchemaValidationError as e:
        error_msg = f"Config validation failed for {schema_name}"
        if file_path:
            error_msg += f" (file: {file_path})"
        error_msg += f": {e.message}"
        raise ValueError(error_msg) from e


def load_all_configs(config_dir: Path = CONFIG_DIR) -> dict[str, Any]:
    """Load and merge all YAML configs from the config directory.

    Loading order (later overrides earlier):
    1. config/main.yaml
    2. All other config/*.yaml files (sorted alphabetically)

    Each file is validated against ``config/schemas/<stem>.schema.json`` if present.
    """
    merged_config: dict[str, Any] = {}
    if not config_dir.exists() or not config_dir.is_dir():
        return merged_config

    main_path = config_dir / "main.yaml"
    yaml_files = sorted(f for f in config_dir.glob("*.yaml") if f.name != "main.yaml")
    if main_path.exists():
        yaml_files.insert(0, main_path)

    for yaml_file in yaml_files:
        schema_name = yaml_file.stem
        try:
            with open(yaml_file, encoding="utf-8") as f:
                file_config = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning(
                "config_file_load_failed",
                path=str(yaml_file),
                error=str(e),
            )
            continue

        try:
            validate_config_section(
                file_config, schema_name, str(yaml_file), config_dir
            )
        except ValueError as e:
            logger.error(
                "config_validation_failed",
                path=str(yaml_file),
                schema=schema_name,
                error=str(e),
            )
            raise

        merged_config = deep_merge(merged_config, file_config)
        logger.debug("config_file_loaded", path=str(yaml_file), schema=schema_name)

    logger.info("config_load_complete", file_count=len(yaml_files))
    return merged_config


class Settings(BaseSettings):
    """Application settings.

    Secrets are loaded from .env file.
    Non-sensitive config is loaded from config/*.yaml with fallback to defaults.
    """

    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === SECRETS (from .env) ===

    # Only required when the OpenAI oracle is constructed
    openai_api_key: SecretStr | None = Field(
        default=None, description="OpenAI API key (from .env)"
    )
    postgres_password: SecretStr | None = Field(
        default=None, description="PostgreSQL password (from .env, optional)"
    )

    def __init__(self, **data: Any):
        """Initialize settings with auto-loaded configs from all YAML files."""
        config = load_all_configs()

        super().__init__(**data)
        self._apply_yaml_defaults(config)

    def _apply_yaml_defaults(self, config: dict[str, Any]) -> None:
        """Apply YAML-sourced defaults without overriding env-provided values."""

        fields_from_env = set(self.model_fields_set)

        def _assign(field_name: str, value: Any) -> None:
            if value is None:
                return
            if field_name in fields_from_env:
                return

            object.__setattr__(self, field_name, value)
            self.model_fields_set.add(field_name)

        llm_config = config.get("llm") or {}
        _assign("llm_model", llm_config.get("model"))
        _assign("llm_temperature", llm_config.get("temperature"))
        _assign("llm_timeout_seconds", llm_config.get("timeout_seconds"))
        _assign("llm_max_chars", llm_config.get("max_chars"))

        database_config = config.get("database") or {}
        _assign("database_type", database_config.get("type"))
        _assign("db_path", database_config.get("path"))

        postgres_config = database_config.get("postgres") or {}
        _assign("postgres_host", postgres_config.get("host"))
        _assign("postgres_port", postgres_config.get("port"))
        _assign("postgres_database", postgres_config.get("database"))
        _assign("postgres_user", postgres_config.get("user"))

        queue_config = config.get("queue") or {}
        _assign("queue_max_attempts", queue_config.get("max_attempts"))
        _assign("queue_timeout_seconds", queue_config.get("timeout_seconds"))
        _assign("queue_max_in_flight", queue_config.get("max_in_flight"))
        _assign(
            "queue_completed_retention_days",
            queue_config.get("completed_retention_days"),
        )

        governor_config = config.get("governor") or {}
        _assign("governor_interval_seconds", governor_config.get("interval_seconds"))

        scoring_config = config.get("scoring") or {}
        _assign("gap_fill_batch_limit", scoring_config.get("gap_fill_batch_limit"))
        _assign("total_score_cap", scoring_config.get("total_score_cap"))

        logging_config = config.get("logging") or {}
        _assign("log_level", logging_config.get("level"))

        signal_types_config = config.get("signal_types")
        if isinstance(signal_types_config, dict) and signal_types_config:
            merged = {
                name: profile.model_dump()
                for name, profile in default_signal_types().items()
            }
            merged = deep_merge(merged, signal_types_config)
            _assign(
                "signal_types",
                {
                    name: SignalTypeSettings.model_validate(profile or {})
                    for name, profile in merged.items()
                },
            )

    # LLM configuration
    llm_model: str = Field(default="gpt-4o-mini", description="OpenAI model to use")
    llm_temperature: float = Field(default=0.7, description="LLM temperature")
    llm_timeout_seconds: int = Field(default=60, description="LLM request timeout")
    llm_max_chars: int = Field(
        default=DEFAULT_MAX_CHARS,
        gt=0,
        description="Activity characters sent to the oracle per call",
    )

    # Database configuration
    database_type: Literal["sqlite", "postgres"] = Field(
        default="sqlite", description="Database type: sqlite or postgres"
    )
    db_path: str = Field(default="data/scores.db", description="SQLite database path")
    postgres_host: str = Field(default="localhost", description="PostgreSQL host")
    postgres_port: int = Field(default=5432, description="PostgreSQL port")
    postgres_database: str = Field(
        default="engagement_scores", description="PostgreSQL database name"
    )
    postgres_user: str = Field(default="postgres", description="PostgreSQL user")
    postgres_min_connections: int = Field(
        default=POSTGRES_MIN_CONNECTIONS_DEFAULT,
        description="Minimum number of connections in PostgreSQL pool",
    )
    postgres_max_connections: int = Field(
        default=POSTGRES_MAX_CONNECTIONS_DEFAULT,
        description="Maximum number of connections in PostgreSQL pool",
    )
    postgres_statement_timeout_ms: int = Field(
        default=POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT,
        description="PostgreSQL statement timeout in milliseconds",
    )
    postgres_connect_timeout_seconds: int = Field(
        default=POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT,
        description="PostgreSQL connection timeout in seconds",
    )
    postgres_application_name: str = Field(
        default=POSTGRES_APPLICATION_NAME_DEFAULT,
        description="Application name for PostgreSQL connections",
    )

    # Queue configuration
    queue_max_attempts: int = Field(
        default=DEFAULT_MAX_ATTEMPTS,
        ge=0,
        description="Governor retries before a running item becomes terminal",
    )
    queue_timeout_seconds: int = Field(
        default=DEFAULT_TIMEOUT_SECONDS,
        gt=0,
        description="Seconds before a running item is considered stale",
    )
    queue_max_in_flight: int = Field(
        default=DEFAULT_MAX_IN_FLIGHT,
        gt=0,
        description="Maximum concurrently running queue items",
    )
    queue_completed_retention_days: int = Field(
        default=DEFAULT_COMPLETED_RETENTION_DAYS,
        ge=0,
        description="Days completed queue items are kept before pruning",
    )
    governor_interval_seconds: float = Field(
        default=60.0, gt=0, description="Seconds between Governor sweeps"
    )

    # Scoring configuration
    gap_fill_batch_limit: int = Field(
        default=DEFAULT_GAP_FILL_BATCH_LIMIT,
        gt=0,
        description="Maximum gaps repaired per Gap Filler run",
    )
    total_score_cap: int = Field(
        default=DEFAULT_TOTAL_SCORE_CAP,
        gt=0,
        description="Upper bound for the daily total across signal types",
    )
    signal_types: dict[str, SignalTypeSettings] = Field(
        default_factory=default_signal_types,
        description="Tuning and prompt profiles keyed by signal type name",
    )

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")
    metrics_port: int = Field(default=9000, description="Prometheus exporter port")

    @field_validator("signal_types")
    @classmethod
    def _require_signal_types(
        cls, value: dict[str, SignalTypeSettings]
    ) -> dict[str, SignalTypeSettings]:
        if not value:
            raise ValueError("at least one signal type must be configured")
        return value


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create global settings instance.

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
