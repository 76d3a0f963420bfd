"""
LLM Provider — Abstract Interface

All model calls go through this interface. Swap providers
by changing MEDCHECK_LLM_PROVIDER in env.

The model is an untrusted collaborator: every call made by the engine
goes through ``request_json`` so it has a hard timeout and a single
error type (LLMError) the auditor can degrade on.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Optional

from medcheck.errors import LLMError, LLMMalformedResponseError, LLMTimeoutError


class LLMProvider(ABC):
    """Abstract base for LLM providers."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        json_mode: bool = False,
    ) -> str:
        """Generate a text response from the LLM."""
        ...

    async def generate_json(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        temperature: float = 0.2,
    ) -> dict:
        """Generate and parse a JSON object response."""
        text = await self.generate(
            prompt=prompt,
            system_instruction=system_instruction,
            temperature=temperature,
            json_mode=True,
        )
        # Strip markdown fences if the LLM wraps JSON in ```json blocks
        cleaned = (text or "").strip()
        if cleaned.startswith("```"):
            cleaned = cleaned.split("\n", 1)[-1].rsplit("```", 1)[0].strip()
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError as e:
            raise LLMMalformedResponseError(
                f"LLM returned invalid JSON: {e}. Raw response: {(text or '')[:300]}"
            ) from e
        if not isinstance(parsed, dict):
            raise LLMMalformedResponseError(
                f"Expected a JSON object, got {type(parsed).__name__}"
            )
        return parsed


async def request_json(
    llm: LLMProvider,
    prompt: str,
    system_instruction: Optional[str] = None,
    timeout: float = 30.0,
) -> dict:
    """Call ``llm.generate_json`` with a hard timeout.

    Raises LLMTimeoutError, LLMMalformedResponseError or LLMError.
    """
    try:
        return await asyncio.wait_for(
            llm.generate_json(prompt, system_instruction=system_instruction),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        raise LLMTimeoutError(f"LLM did not answer within {timeout}s") from e
    except LLMError:
        raise
    except ValueError as e:
        raise LLMMalformedResponseError(str(e)) from e
    except Exception as e:
        raise LLMError(f"LLM call failed: {e}") from e


__all__ = ["LLMProvider", "request_json"]
