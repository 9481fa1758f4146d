"""Stackwright — Configuration.

Configuration is loaded from (in order of increasing priority):
    1. Built-in defaults (this file)
    2. User config:    ~/.stackwright/config.yaml
    3. Project config: ./stackwright.yaml
    4. An explicit file passed with ``--config``
    5. Environment variables prefixed with STACKWRIGHT_
       (nested keys joined with ``__``, e.g. STACKWRIGHT_CIVO__API_KEY)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from stackwright.exceptions import ConfigurationError

DEFAULT_RESOURCE_TIMEOUT_SECONDS = 600.0


# ---------------------------------------------------------------------------
# Sub-configuration blocks
# ---------------------------------------------------------------------------


class RetryConfig(BaseModel):
    """Bounded exponential backoff for transient provider errors."""

    max_attempts: Annotated[int, Field(ge=1, le=20)] = 3
    delay_seconds: Annotated[float, Field(ge=0.0, le=300.0)] = 2.0
    backoff_factor: Annotated[float, Field(ge=1.0, le=10.0)] = 2.0
    max_delay_seconds: Annotated[float, Field(ge=0.0, le=3600.0)] = 60.0

    def delay_for_attempt(self, attempt: int) -> float:
        """Return the delay in seconds before the *attempt*-th retry (1-indexed)."""
        delay = self.delay_seconds * (self.backoff_factor ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


class EngineConfig(BaseModel):
    max_workers: Annotated[int, Field(ge=1, le=64)] = Field(
        default=4,
        description="Maximum resources reconciled concurrently within one stage.",
    )
    resource_timeout_seconds: Annotated[float, Field(gt=0, le=86_400)] = Field(
        default=DEFAULT_RESOURCE_TIMEOUT_SECONDS,
        description="Timeout applied to every provider call. Cluster creation is slow.",
    )
    retry: RetryConfig = Field(default_factory=RetryConfig)


class StateConfig(BaseModel):
    db_path: Path = Field(
        default=Path(".stackwright/state.db"),
        description="SQLite file holding the last-applied state of every resource.",
    )

    @field_validator("db_path", mode="before")
    @classmethod
    def expand_path(cls, v: object) -> object:
        if isinstance(v, str):
            return Path(v).expanduser()
        return v


class CivoConfig(BaseModel):
    api_key: str | None = Field(default=None, description="Civo API key.")
    region: str = "LON1"
    api_url: str = "https://api.civo.com/v2"
    request_timeout_seconds: Annotated[float, Field(gt=0, le=600)] = 30.0
    poll_interval_seconds: Annotated[float, Field(gt=0, le=600)] = 10.0


class ToolsConfig(BaseModel):
    kubectl_path: str = "kubectl"
    helm_path: str = "helm"


class LoggingConfig(BaseModel):
    level: Literal["debug", "info", "warning", "error", "critical"] = "info"
    format: Literal["json", "console"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="STACKWRIGHT_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    civo: CivoConfig = Field(default_factory=CivoConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        # Environment wins over values read from config files.
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @classmethod
    def load(cls, config_file: Path | None = None) -> "Settings":
        """Load settings from config files + environment variables."""
        data: dict[str, Any] = {}

        candidates = [
            Path.home() / ".stackwright" / "config.yaml",
            Path("stackwright.yaml"),
        ]
        if config_file:
            if not config_file.exists():
                raise ConfigurationError(
                    f"Config file not found: {config_file}",
                    context={"path": str(config_file)},
                )
            candidates.append(config_file)

        for path in candidates:
            if path.exists():
                try:
                    with path.open() as f:
                        loaded = yaml.safe_load(f) or {}
                except yaml.YAMLError as exc:
                    raise ConfigurationError(
                        f"Config file {path} is not valid YAML: {exc}",
                        context={"path": str(path)},
                    ) from exc
                if not isinstance(loaded, dict):
                    raise ConfigurationError(
                        f"Config file {path} must contain a mapping",
                        context={"path": str(path)},
                    )
                _deep_merge(data, loaded)

        return cls(**data)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


# Module-level singleton, replaced by ``Settings.load()`` at CLI startup.
_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def override_settings(settings: Settings) -> None:
    """Replace the module-level singleton. Used by the CLI and in tests."""
    global _settings
    _settings = settings
