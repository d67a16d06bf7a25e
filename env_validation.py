"""Environment variable validation and typed accessors."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


_DEFAULTS: Dict[str, str] = {
    "DB_PATH": "edurag.db",
    "EMBED_MODEL": "hashing-v1",
    "RAG_VECTOR_BACKEND": "sqlite",
}

_OPTIONAL_VARS = {
    "GENERATION_URL": "OpenAI-compatible chat completions endpoint for the tutor",
    "EMBED_API_URL": "OpenAI-compatible embeddings endpoint",
    "GUARDRAIL_BLOCKED_TOPICS": "Comma-separated topics rejected by the safety gate",
}

_URL_VARS = {"GENERATION_URL", "EMBED_API_URL"}

_INT_VARS = {
    "RAG_CHUNK_SIZE",
    "RAG_CHUNK_OVERLAP",
    "EMBED_MAX_RETRIES",
    "LLM_MAX_RETRIES",
    "LLM_MAX_TOKENS",
    "TUTOR_RETRIEVAL_K",
    "TUTOR_HISTORY_TURNS",
    "TUTOR_SESSION_TIMEOUT_MINUTES",
    "READING_WORDS_PER_MINUTE",
}

_FLOAT_VARS = {
    "EMBED_TIMEOUT_SECONDS",
    "EMBED_RETRY_BACKOFF",
    "LLM_TIMEOUT",
    "LLM_RETRY_BACKOFF",
    "LLM_TEMPERATURE",
    "TUTOR_SWEEP_INTERVAL_SECONDS",
    "PATH_OBJECTIVE_MATCH_THRESHOLD",
}


def validate_environment() -> None:
    """Validate configuration variables and apply defaults.

    Raises EnvironmentError if validation fails.
    """
    for var, value in _DEFAULTS.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    problems = []
    for var in _URL_VARS:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            problems.append(f"Invalid URL format for {var}: {value}")

    for var in _INT_VARS:
        value = os.getenv(var)
        if value is None or value == "":
            continue
        try:
            int(value)
        except ValueError:
            problems.append(f"{var} must be an integer, got {value!r}")

    for var in _FLOAT_VARS:
        value = os.getenv(var)
        if value is None or value == "":
            continue
        try:
            float(value)
        except ValueError:
            problems.append(f"{var} must be a number, got {value!r}")

    backend = os.getenv("RAG_VECTOR_BACKEND", "sqlite").lower()
    if backend not in {"sqlite", "chroma"}:
        problems.append(f"RAG_VECTOR_BACKEND must be 'sqlite' or 'chroma', got {backend!r}")

    if problems:
        raise EnvironmentError("; ".join(problems))

    for var, description in _OPTIONAL_VARS.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    """Get an integer from the environment, falling back on parse errors."""
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid integer for %s; using %s", name, default)
        return default


def get_env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid number for %s; using %s", name, default)
        return default


def get_env_list(name: str) -> list[str]:
    """Comma-separated values, stripped and without empties."""
    raw = os.getenv(name, "")
    return [part.strip() for part in raw.split(",") if part.strip()]
