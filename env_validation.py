"""Environment variable validation and engine settings."""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

_ROOT = Path(__file__).resolve().parent
DEFAULT_SKILL_CORPUS = _ROOT / "competencies" / "math.skillgraph.json"
DEFAULT_MISCONCEPTIONS = _ROOT / "competencies" / "misconceptions.json"


class ConfigurationError(Exception):
    """Raised when environment variables are missing or invalid."""
    pass


@dataclass(frozen=True)
class EngineSettings:
    skill_corpus_path: Path = DEFAULT_SKILL_CORPUS
    misconceptions_path: Path = DEFAULT_MISCONCEPTIONS
    session_total_slots: int = 5
    session_duration_minutes: int = 15
    diagnosis_enabled: bool = True
    diagnosis_queue_size: int = 32
    diagnosis_llm_url: Optional[str] = None
    diagnosis_llm_model: str = "default"
    diagnosis_llm_timeout: float = 30.0
    recent_errors_compression_chars: int = 800


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    """Get integer value from environment variable, enforcing an optional lower bound."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid integer for {name}: {value!r}") from exc
    if minimum is not None and parsed < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {parsed}")
    return parsed


def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid number for {name}: {value!r}") from exc


def validate_environment() -> EngineSettings:
    """Validate engine environment variables and return the resulting settings.

    Raises ConfigurationError if validation fails.
    """
    paths: Dict[str, Path] = {
        "SKILL_CORPUS_PATH": Path(os.getenv("SKILL_CORPUS_PATH") or DEFAULT_SKILL_CORPUS),
        "MISCONCEPTIONS_PATH": Path(os.getenv("MISCONCEPTIONS_PATH") or DEFAULT_MISCONCEPTIONS),
    }

    missing = [f"{var} ({path})" for var, path in paths.items() if not path.is_file()]
    if missing:
        raise ConfigurationError(f"Configured data files not found: {', '.join(missing)}")

    llm_url = os.getenv("DIAGNOSIS_LLM_URL")
    if llm_url and not (llm_url.startswith("http://") or llm_url.startswith("https://")):
        raise ConfigurationError(f"Invalid URL format for DIAGNOSIS_LLM_URL: {llm_url}")

    settings = EngineSettings(
        skill_corpus_path=paths["SKILL_CORPUS_PATH"],
        misconceptions_path=paths["MISCONCEPTIONS_PATH"],
        session_total_slots=get_env_int("SESSION_TOTAL_SLOTS", 5, minimum=1),
        session_duration_minutes=get_env_int("SESSION_DURATION_MINUTES", 15, minimum=1),
        diagnosis_enabled=get_env_bool("DIAGNOSIS_ENABLED", True),
        diagnosis_queue_size=get_env_int("DIAGNOSIS_QUEUE_SIZE", 32, minimum=1),
        diagnosis_llm_url=llm_url or None,
        diagnosis_llm_model=os.getenv("DIAGNOSIS_LLM_MODEL") or "default",
        diagnosis_llm_timeout=get_env_float("DIAGNOSIS_LLM_TIMEOUT", 30.0),
        recent_errors_compression_chars=get_env_int(
            "RECENT_ERRORS_COMPRESSION_CHARS", 800, minimum=1
        ),
    )

    if settings.diagnosis_enabled and not llm_url:
        logger.warning(
            "Optional environment variable not set: DIAGNOSIS_LLM_URL (misconception diagnosis uses rules only)"
        )
    return settings
