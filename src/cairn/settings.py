"""
Orchestrator settings using Pydantic.

Provides environment-based configuration loading with CAIRN_ prefix.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderConfig(BaseModel):
    """Process-wide provider context handed to every driver call.

    Built once before the first driver call and never mutated afterwards.
    """

    model_config = ConfigDict(frozen=True)

    region: str | None = None
    profile: str | None = None
    extra: dict[str, str] = Field(default_factory=dict)


class Settings(BaseSettings):
    """Orchestrator settings."""

    model_config = SettingsConfigDict(env_prefix="CAIRN_", frozen=True)

    # Scheduling
    max_concurrency: int = Field(default=4, ge=1)

    # Retry of transient driver failures
    max_attempts: int = Field(default=5, ge=1)
    backoff_multiplier: float = Field(default=1.0, ge=0)
    backoff_min: float = Field(default=0.0, ge=0)
    backoff_max: float = Field(default=30.0, ge=0)

    # Built-in drivers
    max_wait_seconds: float = Field(default=600.0, ge=0)
    command_timeout: float = Field(default=600.0, gt=0)

    # State
    state_dir: Path = Path(".cairn/state")
    refresh_before_apply: bool = False

    # Logging
    log_level: str = "INFO"

    # Provider
    region: str | None = None
    profile: str | None = None

    def provider_config(self) -> ProviderConfig:
        """Return the immutable provider context for driver calls."""
        return ProviderConfig(region=self.region, profile=self.profile)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
