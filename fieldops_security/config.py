"""
Security Core Configuration.

Loaded from environment variables (prefix FIELDOPS_) with sensible defaults.

Components never read this module's cached instance themselves: the
composition root builds a SecurityConfig and hands it to each component.
"""

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitRule(BaseModel):
    """Fixed-window limit for one action class."""

    window_seconds: float = Field(gt=0)
    max_requests: int = Field(ge=1)


def _default_rate_limits() -> dict[str, RateLimitRule]:
    return {
        "default": RateLimitRule(window_seconds=15 * 60, max_requests=100),
        "api": RateLimitRule(window_seconds=60, max_requests=60),
        "auth": RateLimitRule(window_seconds=15 * 60, max_requests=5),
    }


class SecurityConfig(BaseSettings):
    """Configuration for the authorization, audit and protective-control core."""

    model_config = SettingsConfigDict(
        env_prefix="FIELDOPS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # ENVIRONMENT
    # =========================================================================

    environment: Literal["local", "development", "test", "production"] = Field(
        default="local",
        description="Runtime mode; production switches logs to JSON at INFO",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] | None = Field(
        default=None,
        description="Explicit log level override",
    )

    # =========================================================================
    # RETENTION
    # =========================================================================

    log_sink_max_entries: int = Field(
        default=10_000,
        ge=1,
        description="Capacity of the in-memory log trail",
    )
    audit_max_entries: int = Field(
        default=50_000,
        ge=1,
        description="Capacity of the in-memory audit trail",
    )
    audit_critical_drain_seconds: float = Field(
        default=5.0,
        gt=0,
        description="How often the critical-escalation queue is drained",
    )

    # =========================================================================
    # PERMISSIONS
    # =========================================================================

    bypass_role: str = Field(
        default="operations_director",
        description="Role whose holders are granted every permission",
    )
    default_role: str = Field(
        default="field_agent",
        description="Role applied to actors with no recognized role",
    )
    permission_cache_ttl_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Lifetime of a cached permission decision",
    )

    # =========================================================================
    # RATE LIMITING
    # =========================================================================

    rate_limits: dict[str, RateLimitRule] = Field(
        default_factory=_default_rate_limits,
        description="Per action class window/limit pairs",
    )
    rate_limit_cleanup_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Interval of the expired-window sweep",
    )

    # =========================================================================
    # INPUT AND FILE VALIDATION
    # =========================================================================

    max_string_length: int = Field(default=10_000, ge=1)
    max_array_length: int = Field(default=1_000, ge=1)
    allowed_file_types: list[str] = Field(
        default_factory=lambda: ["pdf", "doc", "docx", "txt", "jpg", "jpeg", "png", "gif"],
    )
    max_file_size: int = Field(
        default=10 * 1024 * 1024,
        ge=1,
        description="Maximum accepted upload size in bytes",
    )

    # =========================================================================
    # VALIDATORS
    # =========================================================================

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value):
        return value.upper() if isinstance(value, str) else value

    @field_validator("rate_limits")
    @classmethod
    def _ensure_default_rule(cls, value: dict[str, RateLimitRule]) -> dict[str, RateLimitRule]:
        """Overrides that omit the default class keep the built-in default rule."""
        if "default" not in value:
            value = {"default": _default_rate_limits()["default"], **value}
        return value

    # =========================================================================
    # COMPUTED PROPERTIES
    # =========================================================================

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment in ("local", "development")

    @property
    def effective_log_level(self) -> str:
        if self.log_level:
            return self.log_level.upper()
        return "INFO" if self.is_production else "DEBUG"

    def rate_limit_rule(self, action_class: str) -> RateLimitRule:
        """Rule for an action class, falling back to the default class."""
        return self.rate_limits.get(action_class) or self.rate_limits["default"]


@lru_cache
def get_security_config() -> SecurityConfig:
    """Get cached security config instance."""
    return SecurityConfig()
