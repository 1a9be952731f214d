"""Application configuration models."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="BookPicks", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=5000, alias="PORT")

    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-3.5-turbo", alias="OPENAI_MODEL")
    openai_api_url: HttpUrl = Field(
        default="https://api.openai.com/v1", alias="OPENAI_API_URL"
    )
    openai_max_tokens: int = Field(
        default=1_000, alias="OPENAI_MAX_TOKENS", ge=16, le=16_000
    )
    openai_temperature: float = Field(
        default=0.7, alias="OPENAI_TEMPERATURE", ge=0.0, le=2.0
    )
    openai_timeout_seconds: float = Field(
        default=30.0, alias="OPENAI_TIMEOUT", gt=0
    )

    recommendation_cache_seconds: int = Field(
        default=3_600, alias="RECOMMENDATION_CACHE_TTL", ge=60
    )
    ai_candidate_limit: int = Field(
        default=5, alias="AI_CANDIDATE_LIMIT", ge=1, le=5
    )
    prompt_book_limit: int = Field(
        default=5, alias="PROMPT_BOOK_LIMIT", ge=0, le=10
    )
    recent_review_window: int = Field(
        default=10, alias="RECENT_REVIEW_WINDOW", ge=1, le=100
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./bookpicks.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("openai_api_key", mode="before")
    @classmethod
    def _strip_blank_key(cls, value: object) -> object:
        """Treat blank API keys as unset so the AI path stays disabled."""

        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> str:
        if value is None or value == "":
            return "INFO"
        level = str(value).strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {value}")
        return level

    @property
    def ai_enabled(self) -> bool:
        return self.openai_api_key is not None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
