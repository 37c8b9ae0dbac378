import logging

import pytest

import env_validation
from env_validation import (
    EnvironmentError,
    get_env_choice,
    get_env_float,
    get_env_int,
    validate_environment,
)

_MANAGED = (
    "DB_PATH",
    "BILLING_MODE",
    "COMPLETION_PROVIDER",
    "VOICE_PROVIDER",
    "METERED_MIN_BALANCE",
    "TRANSCRIPT_POLL_ATTEMPTS",
    "TRANSCRIPT_POLL_DELAY_SECONDS",
    "LLM_TIMEOUT",
    "COMPLETION_URL",
    "VOICE_ORCHESTRATOR_URL",
    "OPENAI_API_KEY",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in _MANAGED:
        monkeypatch.delenv(name, raising=False)
    # validate_environment writes defaults into os.environ; register them for cleanup
    for name in ("DB_PATH", "BILLING_MODE", "COMPLETION_PROVIDER", "VOICE_PROVIDER"):
        monkeypatch.setenv(name, "")
    return monkeypatch


def test_defaults_are_applied(clean_env):
    validate_environment()

    import os

    assert os.environ["BILLING_MODE"] == "upfront"
    assert os.environ["COMPLETION_PROVIDER"] == "openai"
    assert os.environ["VOICE_PROVIDER"] == "http"
    assert os.environ["DB_PATH"] == "data.db"


@pytest.mark.parametrize(
    "name, value",
    [
        ("BILLING_MODE", "prepaid"),
        ("COMPLETION_PROVIDER", "claude-local"),
        ("TRANSCRIPT_POLL_ATTEMPTS", "0"),
        ("TRANSCRIPT_POLL_ATTEMPTS", "five"),
        ("TRANSCRIPT_POLL_DELAY_SECONDS", "-1"),
        ("LLM_TIMEOUT", "soon"),
        ("VOICE_ORCHESTRATOR_URL", "voice.internal:8000"),
    ],
)
def test_invalid_values_raise(clean_env, name, value):
    clean_env.setenv(name, value)

    with pytest.raises(EnvironmentError):
        validate_environment()


def test_missing_provider_key_only_warns(clean_env, caplog):
    clean_env.setenv("COMPLETION_PROVIDER", "openai")

    with caplog.at_level(logging.WARNING, logger=env_validation.__name__):
        validate_environment()

    assert any("OPENAI_API_KEY" in rec.getMessage() for rec in caplog.records)


def test_env_helpers(monkeypatch):
    monkeypatch.setenv("INT_BAD", "x")
    monkeypatch.setenv("FLOAT_OK", "2.5")
    monkeypatch.setenv("MODE", "METERED")

    assert get_env_int("INT_BAD", 5) == 5
    assert get_env_float("FLOAT_OK", 1.0) == 2.5
    assert get_env_choice("MODE", ("upfront", "metered"), "upfront") == "metered"
    assert get_env_choice("MODE_MISSING", ("upfront", "metered"), "upfront") == "upfront"
