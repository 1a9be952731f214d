"""Configuration settings behaviour tests."""

from __future__ import annotations

import pytest

from app.config import Settings


def test_defaults_match_documented_values() -> None:
    settings = Settings(_env_file=None)

    assert settings.server_port == 5000
    assert settings.openai_model == "gpt-3.5-turbo"
    assert settings.openai_max_tokens == 1000
    assert settings.openai_temperature == pytest.approx(0.7)
    assert settings.recommendation_cache_seconds == 3600
    assert settings.ai_candidate_limit == 5


def test_blank_api_key_disables_ai() -> None:
    """Whitespace-only keys are treated as missing credentials."""

    settings = Settings(_env_file=None, OPENAI_API_KEY="   ")

    assert settings.openai_api_key is None
    assert settings.ai_enabled is False


def test_api_key_is_trimmed() -> None:
    settings = Settings(_env_file=None, OPENAI_API_KEY=" sk-test ")

    assert settings.openai_api_key == "sk-test"
    assert settings.ai_enabled is True


def test_log_level_is_normalised() -> None:
    settings = Settings(_env_file=None, LOG_LEVEL="debug")

    assert settings.log_level == "DEBUG"


def test_unknown_log_level_raises() -> None:
    with pytest.raises(ValueError, match="Unknown log level"):
        Settings(_env_file=None, LOG_LEVEL="chatty")


def test_cache_ttl_has_lower_bound() -> None:
    """Cache lifetimes shorter than a minute are rejected."""

    with pytest.raises(ValueError):
        Settings(_env_file=None, RECOMMENDATION_CACHE_TTL=5)


def test_candidate_limit_is_capped_at_five() -> None:
    assert Settings(_env_file=None, AI_CANDIDATE_LIMIT=5).ai_candidate_limit == 5

    with pytest.raises(ValueError):
        Settings(_env_file=None, AI_CANDIDATE_LIMIT=6)
