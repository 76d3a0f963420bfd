"""LLM provider factory."""

from typing import Optional

from medcheck.config import settings
from medcheck.llm import LLMProvider


def get_provider(provider_name: Optional[str] = None) -> LLMProvider:
    """Return the configured LLM provider."""
    provider_name = provider_name or settings.LLM_PROVIDER
    if provider_name == "gemini":
        from medcheck.llm.gemini import GeminiProvider
        return GeminiProvider()
    raise ValueError(f"Unknown LLM provider: {provider_name}")
