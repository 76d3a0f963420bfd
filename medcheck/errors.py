"""
Error taxonomy.

Only IllegalTransitionError and NotFoundError normally reach callers.
The rest are caught inside the pipeline and turned into diagnostics,
warnings or audit issues.
"""

from __future__ import annotations

from typing import Optional


class MedCheckError(Exception):
    """Base class for engine errors."""


class PatternCompileError(MedCheckError):
    """A pattern's regex could not be compiled."""

    def __init__(self, pattern_id: str, message: str):
        self.pattern_id = pattern_id
        super().__init__(f"Pattern {pattern_id}: {message}")


class LLMError(MedCheckError):
    """The external model could not produce a usable answer."""


class LLMTimeoutError(LLMError):
    """The external model did not answer within the configured timeout."""


class LLMMalformedResponseError(LLMError, ValueError):
    """The external model answered with something that is not the expected shape."""


class InvalidConfidenceError(MedCheckError, ValueError):
    """A confidence value fell outside [0, 1]."""

    def __init__(self, value: float, pattern_id: Optional[str] = None):
        self.value = value
        self.pattern_id = pattern_id
        super().__init__(f"Confidence {value!r} outside [0, 1] (pattern={pattern_id})")


class UnknownPatternIdError(MedCheckError, KeyError):
    """A pattern id does not exist in the enabled snapshot."""

    def __init__(self, pattern_id: str):
        self.pattern_id = pattern_id
        super().__init__(pattern_id)

    def __str__(self) -> str:
        return f"Unknown pattern id: {self.pattern_id}"


class IllegalTransitionError(MedCheckError):
    """A state machine was asked to move along an edge it does not have."""

    def __init__(self, machine: str, current: str, target: str):
        self.machine = machine
        self.current = current
        self.target = target
        super().__init__(f"{machine}: illegal transition {current} -> {target}")


class NotFoundError(MedCheckError, LookupError):
    """A stored record does not exist."""
