"""Environment-bound configuration objects.

Pydantic BaseSettings groups loaded from environment variables / ``.env``.
Every field accepts its field name as well, so tests can build a group
directly (``GovernanceSettings(max_iterations=3)``).

Example:
    from statefulAgent.config.settings import get_settings

    settings = get_settings()  # Cached singleton
    max_iterations = settings.governance.max_iterations
    llm_timeout = settings.timeouts.llm_invoke
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


load_dotenv()

DEFAULT_PERMISSION_RULES = Path(__file__).parent / "tool_permissions.yaml"

_COMMON_CONFIG = SettingsConfigDict(
    env_file=".env",
    env_file_encoding="utf-8",
    extra="ignore",
    populate_by_name=True,
)


class GovernanceSettings(BaseSettings):
    """Loop limits and gating switches.

    - max_iterations: model rounds per turn (default: 10)
    - max_empty_responses: consecutive empty replies tolerated before giving up
    - max_repeated_calls: intercepted duplicate tool calls before a hard stop
    - max_render_reminders: "please render" nudges before accepting a text reply
    """

    max_iterations: int = Field(
        default=10, ge=1, le=100,
        validation_alias=AliasChoices("AGENT_MAX_ITERATIONS", "max_iterations"),
    )
    max_empty_responses: int = Field(
        default=3, ge=1, le=20,
        validation_alias=AliasChoices("AGENT_MAX_EMPTY_RESPONSES", "max_empty_responses"),
    )
    max_repeated_calls: int = Field(
        default=2, ge=1, le=10,
        validation_alias=AliasChoices("AGENT_MAX_REPEATED_CALLS", "max_repeated_calls"),
    )
    max_render_reminders: int = Field(
        default=2, ge=0, le=10,
        validation_alias=AliasChoices("AGENT_MAX_RENDER_REMINDERS", "max_render_reminders"),
    )
    enable_confirmation: bool = Field(
        default=True,
        validation_alias=AliasChoices("AGENT_ENABLE_CONFIRMATION", "enable_confirmation"),
    )
    enable_intent_rewrite: bool = Field(
        default=True,
        validation_alias=AliasChoices("AGENT_ENABLE_INTENT_REWRITE", "enable_intent_rewrite"),
    )
    intent_confidence_threshold: float = Field(
        default=0.6, ge=0.0, le=1.0,
        validation_alias=AliasChoices("AGENT_INTENT_CONFIDENCE_THRESHOLD", "intent_confidence_threshold"),
    )
    confirm_high_risk_intents: bool = Field(
        default=True,
        validation_alias=AliasChoices("AGENT_CONFIRM_HIGH_RISK", "confirm_high_risk_intents"),
    )

    model_config = _COMMON_CONFIG


class TimeoutSettings(BaseSettings):
    """Deadlines in seconds."""

    llm_invoke: float = Field(
        default=60.0, gt=0,
        validation_alias=AliasChoices("AGENT_LLM_TIMEOUT", "llm_invoke"),
    )
    llm_invoke_with_image: float = Field(
        default=120.0, gt=0,
        validation_alias=AliasChoices("AGENT_LLM_IMAGE_TIMEOUT", "llm_invoke_with_image"),
    )
    tool_execute: float = Field(
        default=30.0, gt=0,
        validation_alias=AliasChoices("AGENT_TOOL_TIMEOUT", "tool_execute"),
    )

    model_config = _COMMON_CONFIG


class RetrySettings(BaseSettings):
    """Backoff policy for model calls."""

    llm_max_retries: int = Field(
        default=2, ge=0, le=10,
        validation_alias=AliasChoices("AGENT_LLM_MAX_RETRIES", "llm_max_retries"),
    )
    llm_initial_delay: float = Field(
        default=2.0, ge=0,
        validation_alias=AliasChoices("AGENT_LLM_RETRY_DELAY", "llm_initial_delay"),
    )
    llm_max_delay: float = Field(
        default=15.0, ge=0,
        validation_alias=AliasChoices("AGENT_LLM_RETRY_MAX_DELAY", "llm_max_delay"),
    )
    backoff_multiplier: float = Field(
        default=2.0, ge=1.0,
        validation_alias=AliasChoices("AGENT_BACKOFF_MULTIPLIER", "backoff_multiplier"),
    )
    jitter_ratio: float = Field(
        default=0.3, ge=0.0, le=1.0,
        validation_alias=AliasChoices("AGENT_RETRY_JITTER", "jitter_ratio"),
    )

    model_config = _COMMON_CONFIG


class ContextSettings(BaseSettings):
    """Context window budget (estimated tokens)."""

    max_tokens: int = Field(
        default=100_000, ge=100,
        validation_alias=AliasChoices("AGENT_CONTEXT_MAX_TOKENS", "max_tokens"),
    )
    reserved_for_response: int = Field(
        default=8_000, ge=0,
        validation_alias=AliasChoices("AGENT_CONTEXT_RESERVED", "reserved_for_response"),
    )
    usage_warning_ratio: float = Field(
        default=0.7, ge=0.0, le=1.0,
        validation_alias=AliasChoices("AGENT_CONTEXT_WARNING_RATIO", "usage_warning_ratio"),
    )

    model_config = _COMMON_CONFIG

    @property
    def budget(self) -> int:
        return max(0, self.max_tokens - self.reserved_for_response)


class ReflectionSettings(BaseSettings):
    """When the reflector is consulted."""

    enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("AGENT_REFLECTION_ENABLED", "enabled"),
    )
    frequency: Literal["every_step", "on_error", "on_milestone"] = Field(
        default="on_error",
        validation_alias=AliasChoices("AGENT_REFLECTION_FREQUENCY", "frequency"),
    )
    max_reflections: int = Field(
        default=20, ge=1,
        validation_alias=AliasChoices("AGENT_MAX_REFLECTIONS", "max_reflections"),
    )

    model_config = _COMMON_CONFIG


class PermissionSettings(BaseSettings):
    """Tool permission rules."""

    rules_path: Optional[Path] = Field(
        default=DEFAULT_PERMISSION_RULES,
        validation_alias=AliasChoices("AGENT_PERMISSION_RULES", "rules_path"),
    )

    model_config = _COMMON_CONFIG


class ObservabilitySettings(BaseSettings):
    """Logging configuration."""

    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices("AGENT_LOG_LEVEL", "LOG_LEVEL", "log_level"),
    )
    log_dir: str = Field(
        default="logs",
        validation_alias=AliasChoices("AGENT_LOG_DIR", "log_dir"),
    )
    log_to_file: bool = Field(
        default=False,
        validation_alias=AliasChoices("AGENT_LOG_TO_FILE", "log_to_file"),
    )
    log_preview_length: int = Field(
        default=200, ge=50, le=5000,
        validation_alias=AliasChoices("AGENT_LOG_PREVIEW_LENGTH", "log_preview_length"),
    )

    model_config = _COMMON_CONFIG


class Settings(BaseSettings):
    """Root settings aggregating every group.

    Use get_settings() to obtain a cached singleton instance.
    """

    environment: str = Field(default="dev", validation_alias=AliasChoices("APP_ENV", "environment"))
    governance: GovernanceSettings = Field(default_factory=GovernanceSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    context: ContextSettings = Field(default_factory=ContextSettings)
    reflection: ReflectionSettings = Field(default_factory=ReflectionSettings)
    permissions: PermissionSettings = Field(default_factory=PermissionSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
        validate_assignment=True,
        case_sensitive=False,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton Settings instance."""
    return Settings()
