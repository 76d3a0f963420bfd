"""
Learning state machines.

Status columns in the feedback store only ever change through
``StateMachine.transition``; any edge not in the table raises
IllegalTransitionError instead of silently writing the new status.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping

from medcheck.errors import IllegalTransitionError


class CaseStatus(str, Enum):
    PENDING = "pending"
    REVIEWING = "reviewing"
    RESOLVED = "resolved"


class SuggestionStatus(str, Enum):
    COLLECTING = "collecting"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"
    MERGED = "merged"


class StateMachine:
    def __init__(self, name: str, transitions: Mapping[Enum, frozenset]):
        self.name = name
        self._transitions = dict(transitions)

    def allowed(self, current: Enum) -> frozenset:
        return self._transitions[current]

    def can_transition(self, current: Enum, target: Enum) -> bool:
        return target in self._transitions[current]

    def transition(self, current: Enum, target: Enum) -> Enum:
        if not self.can_transition(current, target):
            raise IllegalTransitionError(self.name, current.value, target.value)
        return target

    def is_terminal(self, state: Enum) -> bool:
        return not self._transitions[state]


CASE_MACHINE = StateMachine("false_positive_case", {
    CaseStatus.PENDING: frozenset({CaseStatus.REVIEWING, CaseStatus.RESOLVED}),
    CaseStatus.REVIEWING: frozenset({CaseStatus.PENDING, CaseStatus.RESOLVED}),
    CaseStatus.RESOLVED: frozenset(),
})

SUGGESTION_MACHINE = StateMachine("exception_suggestion", {
    SuggestionStatus.COLLECTING: frozenset({
        SuggestionStatus.PENDING, SuggestionStatus.REJECTED, SuggestionStatus.MERGED,
    }),
    SuggestionStatus.PENDING: frozenset({
        SuggestionStatus.APPROVED, SuggestionStatus.REJECTED, SuggestionStatus.MERGED,
    }),
    SuggestionStatus.APPROVED: frozenset({SuggestionStatus.APPLIED, SuggestionStatus.REJECTED}),
    SuggestionStatus.REJECTED: frozenset(),
    SuggestionStatus.APPLIED: frozenset(),
    SuggestionStatus.MERGED: frozenset(),
})
