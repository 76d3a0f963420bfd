"""
Gemini Provider — Google Gemini via the google.genai SDK.

The client is created on first use, so the engine loads and runs
rule-only analysis without an API key.

- Model fallback: configured model → gemini-2.5-flash
- Circuit breaker: after repeated failures, fail fast for a cool-down
  period so documents fall back to rule-only output immediately
- Exponential backoff on transient errors (429/5xx/timeouts)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from google import genai
from google.genai import types

from medcheck.config import settings
from medcheck.errors import LLMError
from medcheck.llm import LLMProvider

logger = logging.getLogger(__name__)

FALLBACK_MODEL = "gemini-2.5-flash"

_TRANSIENT_MARKERS = (
    "429", "500", "503", "rate", "quota", "timeout",
    "connection", "unavailable", "overloaded",
)


class CircuitOpenError(LLMError):
    """Raised instead of calling the model while the breaker is open."""


class CircuitBreaker:
    """closed → open after N consecutive failures → half-open after a cool-down."""

    def __init__(self, failure_threshold: int = 3, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._failures = 0
        self._opened_at: float = 0.0
        self._state = "closed"

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            self._state = "half-open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_success(self) -> None:
        self._failures = 0
        self._state = "closed"

    def record_failure(self) -> None:
        self._failures += 1
        if self._state == "half-open" or self._failures >= self.failure_threshold:
            self._state = "open"
            self._opened_at = time.monotonic()
            logger.warning(
                "Circuit breaker open after %d consecutive LLM failures; "
                "rule-only analysis for %ds",
                self._failures, self.recovery_timeout,
            )


def _is_transient(error: Exception) -> bool:
    text = str(error).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


class GeminiProvider(LLMProvider):
    """Gemini provider with model fallback and a circuit breaker."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self._api_key = api_key or settings.GEMINI_API_KEY
        self._model = model or settings.GEMINI_MODEL
        self._client: Optional[genai.Client] = None
        self.circuit_breaker = CircuitBreaker()

    def _get_client(self) -> genai.Client:
        if self._client is None:
            if not self._api_key:
                raise LLMError(
                    "GEMINI_API_KEY not set. Get one from "
                    "https://aistudio.google.com/apikey"
                )
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    async def _call_model(
        self,
        model: str,
        prompt: str,
        config: types.GenerateContentConfig,
        attempts: int,
    ) -> str:
        client = self._get_client()
        for attempt in range(attempts):
            try:
                response = await client.aio.models.generate_content(
                    model=model,
                    contents=prompt,
                    config=config,
                )
                return response.text or ""
            except Exception as e:
                if _is_transient(e) and attempt < attempts - 1:
                    await asyncio.sleep(2 ** attempt)
                    continue
                raise
        raise LLMError(f"No attempts made against {model}")

    async def generate(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        json_mode: bool = False,
    ) -> str:
        if self.circuit_breaker.is_open:
            raise CircuitOpenError("LLM circuit breaker is open")

        config = types.GenerateContentConfig(
            temperature=temperature,
            system_instruction=system_instruction,
        )
        if json_mode:
            config.response_mime_type = "application/json"

        models = [self._model]
        if self._model != FALLBACK_MODEL:
            models.append(FALLBACK_MODEL)

        last_error: Optional[Exception] = None
        for i, model in enumerate(models):
            try:
                text = await self._call_model(model, prompt, config, attempts=2 if i == 0 else 1)
            except LLMError:
                self.circuit_breaker.record_failure()
                raise
            except Exception as e:
                last_error = e
                if i + 1 < len(models):
                    logger.warning(
                        "Model %s failed (%s), falling back to %s", model, e, models[i + 1],
                    )
                continue
            self.circuit_breaker.record_success()
            return text

        self.circuit_breaker.record_failure()
        raise LLMError(f"All Gemini models failed: {last_error}") from last_error
