import logging

import pytest

from env_validation import (
    DEFAULT_SKILL_CORPUS,
    ConfigurationError,
    get_env_bool,
    get_env_int,
    validate_environment,
)

ENV_VARS = (
    "SKILL_CORPUS_PATH",
    "MISCONCEPTIONS_PATH",
    "SESSION_TOTAL_SLOTS",
    "SESSION_DURATION_MINUTES",
    "DIAGNOSIS_ENABLED",
    "DIAGNOSIS_QUEUE_SIZE",
    "DIAGNOSIS_LLM_URL",
    "DIAGNOSIS_LLM_MODEL",
    "DIAGNOSIS_LLM_TIMEOUT",
    "RECENT_ERRORS_COMPRESSION_CHARS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_point_at_bundled_data(caplog):
    with caplog.at_level(logging.WARNING, logger="env_validation"):
        settings = validate_environment()
    assert settings.skill_corpus_path == DEFAULT_SKILL_CORPUS
    assert settings.session_total_slots == 5
    assert settings.diagnosis_llm_url is None
    assert "DIAGNOSIS_LLM_URL" in caplog.text


def test_overrides_are_parsed(monkeypatch):
    monkeypatch.setenv("SESSION_TOTAL_SLOTS", "8")
    monkeypatch.setenv("DIAGNOSIS_ENABLED", "off")
    monkeypatch.setenv("DIAGNOSIS_LLM_URL", "https://llm.example/v1/chat/completions")
    monkeypatch.setenv("DIAGNOSIS_LLM_TIMEOUT", "12.5")

    settings = validate_environment()

    assert settings.session_total_slots == 8
    assert settings.diagnosis_enabled is False
    assert settings.diagnosis_llm_url.startswith("https://")
    assert settings.diagnosis_llm_timeout == 12.5


def test_missing_corpus_file_is_rejected(monkeypatch, tmp_path):
    monkeypatch.setenv("SKILL_CORPUS_PATH", str(tmp_path / "missing.json"))
    with pytest.raises(ConfigurationError, match="SKILL_CORPUS_PATH"):
        validate_environment()


def test_invalid_url_is_rejected(monkeypatch):
    monkeypatch.setenv("DIAGNOSIS_LLM_URL", "llm.local:8080")
    with pytest.raises(ConfigurationError, match="Invalid URL"):
        validate_environment()


def test_numeric_bounds(monkeypatch):
    monkeypatch.setenv("SESSION_TOTAL_SLOTS", "0")
    with pytest.raises(ConfigurationError):
        validate_environment()
    monkeypatch.setenv("DIAGNOSIS_QUEUE_SIZE", "lots")
    with pytest.raises(ConfigurationError):
        get_env_int("DIAGNOSIS_QUEUE_SIZE", 32)


def test_get_env_bool(monkeypatch):
    assert get_env_bool("DIAGNOSIS_ENABLED", True) is True
    monkeypatch.setenv("DIAGNOSIS_ENABLED", "Yes")
    assert get_env_bool("DIAGNOSIS_ENABLED") is True
