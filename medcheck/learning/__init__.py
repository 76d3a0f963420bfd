"""Governed learning: false-positive feedback, exception suggestions, learning log."""

from medcheck.learning.feedback import (
    ExceptionSuggestion,
    FalsePositiveCase,
    FeedbackStore,
    PatternFPStats,
)
from medcheck.learning.log import LearningLog
from medcheck.learning.states import (
    CASE_MACHINE,
    SUGGESTION_MACHINE,
    CaseStatus,
    StateMachine,
    SuggestionStatus,
)

__all__ = [
    "CASE_MACHINE",
    "SUGGESTION_MACHINE",
    "CaseStatus",
    "ExceptionSuggestion",
    "FalsePositiveCase",
    "FeedbackStore",
    "LearningLog",
    "PatternFPStats",
    "StateMachine",
    "SuggestionStatus",
]
