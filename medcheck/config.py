"""
MedCheck Configuration

Central settings loaded from environment variables.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

_DEFAULT_PATTERNS_PATH = str(Path(__file__).parent / "patterns" / "data" / "patterns.json")


@dataclass(frozen=True)
class Settings:
    """Immutable application settings."""

    # --- Versioning ---
    ENGINE_VERSION: str = "1.0.0"

    # --- LLM Provider ---
    LLM_PROVIDER: str = os.getenv("MEDCHECK_LLM_PROVIDER", "gemini")
    GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
    LLM_TIMEOUT_SECONDS: float = float(os.getenv("MEDCHECK_LLM_TIMEOUT", "30"))

    # --- Pattern Store ---
    PATTERNS_PATH: str = os.getenv("MEDCHECK_PATTERNS_PATH", _DEFAULT_PATTERNS_PATH)
    EXCEPTIONS_DB_PATH: str = os.getenv("MEDCHECK_EXCEPTIONS_DB", "medcheck_exceptions.db")

    # --- Matching ---
    CONTEXT_WINDOW: int = int(os.getenv("MEDCHECK_CONTEXT_WINDOW", "50"))

    # --- Auditor ---
    MISSED_DETECTION_FLOOR: float = float(os.getenv("MEDCHECK_MISSED_FLOOR", "0.7"))
    DISCLAIMER_WINDOW: int = int(os.getenv("MEDCHECK_DISCLAIMER_WINDOW", "200"))

    # --- Scoring ---
    SEVERITY_ALIASES: str = os.getenv(
        "MEDCHECK_SEVERITY_ALIASES", "high=major,medium=minor,moderate=minor"
    )
    SEVERITY_WEIGHTS: str = os.getenv(
        "MEDCHECK_SEVERITY_WEIGHTS", "critical=20,major=7,minor=3,low=1"
    )
    GRADE_BANDS: str = os.getenv(
        "MEDCHECK_GRADE_BANDS", "S=85,A=70,B=55,C=40,D=25,F=0"
    )

    # --- Learning ---
    FEEDBACK_DB_PATH: str = os.getenv("MEDCHECK_FEEDBACK_DB", "medcheck_feedback.db")
    LEARNING_LOG_DB_PATH: str = os.getenv("MEDCHECK_LEARNING_LOG_DB", "medcheck_learning_log.db")
    SUGGESTION_MIN_OCCURRENCES: int = int(os.getenv("MEDCHECK_SUGGESTION_MIN_OCCURRENCES", "5"))
    SUGGESTION_MIN_CONTEXTS: int = int(os.getenv("MEDCHECK_SUGGESTION_MIN_CONTEXTS", "3"))
    AUTO_APPLY_CONFIDENCE: float = float(os.getenv("MEDCHECK_AUTO_APPLY_CONFIDENCE", "0.95"))

    # --- Batch ---
    BATCH_CONCURRENCY: int = int(os.getenv("MEDCHECK_BATCH_CONCURRENCY", "4"))


def parse_mapping(raw: str) -> dict[str, str]:
    """Parse a ``key=value,key=value`` setting into a dict."""
    result: dict[str, str] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            raise ValueError(f"Malformed setting entry: {part!r}")
        key, value = part.split("=", 1)
        result[key.strip().lower()] = value.strip()
    return result


settings = Settings()
