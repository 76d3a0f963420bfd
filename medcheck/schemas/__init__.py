"""Pydantic models for data crossing the engine boundary."""

from medcheck.schemas.llm_output import (
    GeminiViolationOutput,
    GrayZone,
    LLMViolation,
    MandatoryItems,
    parse_llm_output,
)

__all__ = [
    "GeminiViolationOutput",
    "GrayZone",
    "LLMViolation",
    "MandatoryItems",
    "parse_llm_output",
]
