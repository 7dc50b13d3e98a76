# config.py
# Immutable configuration values passed explicitly into constructors.
#
# Nothing in the engine reads the environment at call time. The loaders
# below are the only place TASK_RUNNER_* variables are consulted.

import os
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from task_runner.errors import ConfigurationError
from task_runner.models import CompletionConfig, DangerousPattern, RiskLevel

ENV_PREFIX = "TASK_RUNNER_"
DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "anthropic/claude-3.5-haiku"


class EngineConfig(BaseModel):
    """Recognized engine options plus the suspension-point timeouts."""

    model_config = ConfigDict(frozen=True)

    max_retries_per_phase: int = Field(default=3, ge=0)
    require_confirmation: bool = False
    min_confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    enable_auto_rollback: bool = True
    verbose_logging: bool = False

    model_timeout_seconds: float = Field(default=120.0, gt=0)
    tool_timeout_seconds: float = Field(default=60.0, gt=0)
    retry_backoff_seconds: float = Field(default=0.1, ge=0)
    max_tokens: int = Field(default=4096, ge=1)
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)

    def completion(self) -> CompletionConfig:
        return CompletionConfig(max_tokens=self.max_tokens, temperature=self.temperature)


class GuardrailConfig(BaseModel):
    """Policy surface of the guardrail engine. Read-only after construction."""

    model_config = ConfigDict(frozen=True)

    allowed_directories: tuple[str, ...] = ()
    enabled_tools: tuple[str, ...] = ()
    blocked_commands: tuple[str, ...] = ()
    auto_approve_max_risk: RiskLevel = RiskLevel.MEDIUM
    confirmation_timeout_seconds: float = Field(default=120.0, gt=0)
    custom_patterns: tuple[DangerousPattern, ...] = ()


class ModelSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    api_key: str | None = None


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------


def _env(name: str) -> str | None:
    value = os.getenv(ENV_PREFIX + name.upper())
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _env_list(name: str) -> tuple[str, ...] | None:
    raw = _env(name)
    if raw is None:
        return None
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _build(model_cls: type[BaseModel], values: dict[str, Any]) -> Any:
    try:
        return model_cls.model_validate(values)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid {model_cls.__name__}: {exc}") from exc


def load_engine_config(**overrides: Any) -> EngineConfig:
    """Build an EngineConfig from .env / environment, explicit overrides winning."""
    load_dotenv()
    values: dict[str, Any] = {}
    for name in EngineConfig.model_fields:
        raw = _env(name)
        if raw is not None:
            values[name] = raw
    values.update(overrides)
    return _build(EngineConfig, values)


def load_guardrail_config(**overrides: Any) -> GuardrailConfig:
    load_dotenv()
    values: dict[str, Any] = {}
    for name in ("allowed_directories", "enabled_tools", "blocked_commands"):
        items = _env_list(name)
        if items is not None:
            values[name] = items
    raw_risk = _env("auto_approve_max_risk")
    if raw_risk is not None:
        try:
            values["auto_approve_max_risk"] = RiskLevel[raw_risk.upper()]
        except KeyError as exc:
            raise ConfigurationError(f"Unknown risk level: {raw_risk!r}") from exc
    raw_timeout = _env("confirmation_timeout_seconds")
    if raw_timeout is not None:
        values["confirmation_timeout_seconds"] = raw_timeout
    values.update(overrides)
    return _build(GuardrailConfig, values)


def load_model_settings(**overrides: Any) -> ModelSettings:
    load_dotenv()
    values: dict[str, Any] = {
        "model": os.getenv("TASK_RUNNER_MODEL", DEFAULT_MODEL),
        "base_url": os.getenv("TASK_RUNNER_BASE_URL", DEFAULT_BASE_URL),
        "api_key": os.getenv("OPENROUTER_API_KEY"),
    }
    values.update(overrides)
    return _build(ModelSettings, values)
