from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_SEARCH_BUDGET_MS = 300


class SearchSettings(BaseSettings):
    """Configuration for stop search.

    Automatically loads from environment variables and .env file.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    db_path: Path = Field(default=Path("data/stops.db"), alias="STOP_SEARCH_DB_PATH")

    # Whole-call wall-clock budget and per-stage caps, in milliseconds
    budget_ms: int = Field(default=1800, alias="STOP_SEARCH_BUDGET_MS")
    capability_timeout_ms: int = Field(default=250, alias="STOP_SEARCH_CAPABILITY_TIMEOUT_MS")
    primary_timeout_ms: int = Field(default=900, alias="STOP_SEARCH_PRIMARY_TIMEOUT_MS")
    fallback_timeout_ms: int = Field(default=600, alias="STOP_SEARCH_FALLBACK_TIMEOUT_MS")
    alias_timeout_ms: int = Field(default=250, alias="STOP_SEARCH_ALIAS_TIMEOUT_MS")

    capability_ttl_seconds: float = Field(default=60.0, alias="STOP_SEARCH_CAPABILITY_TTL")

    @field_validator("budget_ms")
    @classmethod
    def _budget_floor(cls, value: int) -> int:
        return max(MIN_SEARCH_BUDGET_MS, value)

    @field_validator("capability_timeout_ms")
    @classmethod
    def _capability_cap(cls, value: int) -> int:
        return min(250, max(1, value))

    @field_validator("primary_timeout_ms", "fallback_timeout_ms", "alias_timeout_ms")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("stage timeouts must be positive")
        return value


@lru_cache
def get_search_settings() -> SearchSettings:
    """Get stop search configuration (cached singleton).

    Returns:
        SearchSettings with values from .env file or environment variables.
    """
    return SearchSettings()
