"""Environment variable validation and management."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

BILLING_MODES = ("upfront", "metered")
COMPLETION_PROVIDERS = ("openai", "groq", "gpt4all", "mock")
VOICE_PROVIDERS = ("http", "mock")


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "BILLING_MODE": os.getenv("BILLING_MODE") or "upfront",
        "COMPLETION_PROVIDER": os.getenv("COMPLETION_PROVIDER") or "openai",
        "VOICE_PROVIDER": os.getenv("VOICE_PROVIDER") or "http",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    choices = {
        "BILLING_MODE": BILLING_MODES,
        "COMPLETION_PROVIDER": COMPLETION_PROVIDERS,
        "VOICE_PROVIDER": VOICE_PROVIDERS,
    }
    for var, allowed in choices.items():
        value = os.environ[var].strip().lower()
        if value not in allowed:
            raise EnvironmentError(
                f"Invalid value for {var}: {value!r} (expected one of: {', '.join(allowed)})"
            )

    int_vars = {
        "METERED_MIN_BALANCE": 0,
        "TRANSCRIPT_POLL_ATTEMPTS": 1,
        "LLM_MAX_TOKENS": 1,
    }
    for var, minimum in int_vars.items():
        raw = os.getenv(var)
        if not raw:
            continue
        try:
            parsed = int(raw)
        except ValueError:
            raise EnvironmentError(f"{var} must be an integer, got {raw!r}")
        if parsed < minimum:
            raise EnvironmentError(f"{var} must be >= {minimum}, got {parsed}")

    float_vars = (
        "TRANSCRIPT_POLL_DELAY_SECONDS",
        "LLM_TIMEOUT",
        "LLM_TEMPERATURE",
        "VOICE_ORCHESTRATOR_TIMEOUT",
    )
    for var in float_vars:
        raw = os.getenv(var)
        if not raw:
            continue
        try:
            parsed = float(raw)
        except ValueError:
            raise EnvironmentError(f"{var} must be a number, got {raw!r}")
        if parsed < 0:
            raise EnvironmentError(f"{var} must not be negative, got {parsed}")

    # Validate URLs
    url_vars = {"COMPLETION_URL", "VOICE_ORCHESTRATOR_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    optional_vars: Dict[str, str] = {
        "VOICE_ORCHESTRATOR_URL": "Voice session orchestrator base URL",
        "BACKEND_SHARED_SECRET": "Shared secret for voice transcript write-back",
    }
    provider = os.environ["COMPLETION_PROVIDER"].strip().lower()
    if provider == "openai":
        optional_vars["OPENAI_API_KEY"] = "OpenAI API key for assessment generation"
    elif provider == "groq":
        optional_vars["GROQ_API_KEY"] = "Groq API key for assessment generation"

    # Log optional variables status
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")


def get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def get_env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def get_env_choice(name: str, choices: tuple, default: str) -> str:
    value = (os.getenv(name) or default).strip().lower()
    return value if value in choices else default
