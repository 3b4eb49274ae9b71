"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Constructor arguments
  2. Environment variables  (FLASHCACHE__UPSTREAM__API_KEY=sk-...)
  3. flashcache.yaml        (searched in cwd, then platform config dir)
  4. Hardcoded defaults

Only ``upstream.api_key`` is required.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("flashcache")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "generation_cache.db")


def _find_config_file() -> str | None:
    """Return the path of the first flashcache.yaml found, or None."""
    candidates = [
        Path("flashcache.yaml"),
        Path(platformdirs.user_config_dir("flashcache")) / "flashcache.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class UpstreamSettings(BaseModel):
    api_key: SecretStr
    model: str = "openai/gpt-4o-mini"
    base_url: str = "https://openrouter.ai/api/v1"
    # Total attempts per call, including the first one.
    retries: int = Field(default=2, ge=1, le=5)
    timeout_ms: int = Field(default=60_000, ge=1_000, le=60_000)


class RateLimitSettings(BaseModel):
    max_requests_per_minute: int = Field(default=10, ge=1)
    max_tokens_per_minute: int = Field(default=10_000, ge=1)


class CacheSettings(BaseModel):
    db_path: str = _DEFAULT_DB_PATH
    similarity_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    retention_days: int = Field(default=30, ge=1)


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: FLASHCACHE__UPSTREAM__RETRIES=3
        env_prefix="FLASHCACHE__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    upstream: UpstreamSettings
    rate_limiting: RateLimitSettings = RateLimitSettings()
    cache: CacheSettings = CacheSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
