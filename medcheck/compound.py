"""
Compound evaluation — patterns that fire only when several clauses
hold together.

Each clause is a list of regexes; the first regex that matches satisfies
it. Operators:
  AND       every required clause matches
  OR        at least ``min_conditions`` clauses match
  AND_NOT   required clauses match and no exclusion clause does
  SEQUENCE  clauses match in order, each within ``max_distance`` of the last

A hit spans from the earliest to the latest satisfied clause and carries
the joined clause texts.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from medcheck.errors import PatternCompileError
from medcheck.models import CompoundOperator, Condition, Pattern


@dataclass(frozen=True)
class ClauseMatch:
    condition_id: str
    text: str
    start: int
    end: int


@dataclass(frozen=True)
class CompoundHit:
    start: int
    end: int
    text: str
    met: tuple[ClauseMatch, ...]
    unmet: tuple[str, ...]


@lru_cache(maxsize=1024)
def _compile(pattern_id: str, regex: str) -> re.Pattern:
    try:
        return re.compile(regex, re.IGNORECASE)
    except re.error as e:
        raise PatternCompileError(pattern_id, f"{regex!r}: {e}") from e


def validate_compound(pattern: Pattern) -> None:
    """Compile every clause regex once. Raises PatternCompileError."""
    for condition in pattern.conditions:
        if not condition.patterns:
            raise PatternCompileError(pattern.id, f"condition {condition.id} has no regex")
        for regex in condition.patterns:
            _compile(pattern.id, regex)


def _match_clause(
    pattern_id: str, text: str, condition: Condition, offset: int = 0
) -> Optional[ClauseMatch]:
    for regex in condition.patterns:
        m = _compile(pattern_id, regex).search(text, offset)
        if m and m.end() > m.start():
            return ClauseMatch(condition.id, m.group(0), m.start(), m.end())
    return None


def _hit(met: list[ClauseMatch], unmet: list[str]) -> CompoundHit:
    return CompoundHit(
        start=min(c.start for c in met),
        end=max(c.end for c in met),
        text=" + ".join(c.text for c in met),
        met=tuple(met),
        unmet=tuple(unmet),
    )


def _evaluate_and(pattern: Pattern, text: str, use_exclusions: bool) -> Optional[CompoundHit]:
    met: list[ClauseMatch] = []
    unmet: list[str] = []
    for condition in pattern.conditions:
        if condition.exclusion:
            if use_exclusions and _match_clause(pattern.id, text, condition):
                return None
            continue
        match = _match_clause(pattern.id, text, condition)
        if match:
            met.append(match)
        elif condition.required:
            unmet.append(condition.id)
    if unmet or not met:
        return None
    return _hit(met, unmet)


def _evaluate_or(pattern: Pattern, text: str) -> Optional[CompoundHit]:
    met: list[ClauseMatch] = []
    unmet: list[str] = []
    for condition in pattern.conditions:
        if condition.exclusion:
            continue
        match = _match_clause(pattern.id, text, condition)
        if match:
            met.append(match)
        else:
            unmet.append(condition.id)
    if not met or len(met) < max(1, pattern.min_conditions):
        return None
    return _hit(met, unmet)


def _evaluate_sequence(pattern: Pattern, text: str) -> Optional[CompoundHit]:
    met: list[ClauseMatch] = []
    cursor = 0
    for condition in pattern.conditions:
        if condition.exclusion:
            continue
        match = _match_clause(pattern.id, text, condition, cursor)
        if match is None:
            if condition.required:
                return None
            continue
        if met and condition.max_distance is not None:
            if match.start - met[-1].end > condition.max_distance:
                return None
        met.append(match)
        cursor = match.end
    if not met:
        return None
    return _hit(met, [])


def evaluate_compound(pattern: Pattern, text: str) -> Optional[CompoundHit]:
    """Evaluate one compound pattern against the whole document."""
    if pattern.operator is CompoundOperator.AND:
        return _evaluate_and(pattern, text, use_exclusions=False)
    if pattern.operator is CompoundOperator.AND_NOT:
        return _evaluate_and(pattern, text, use_exclusions=True)
    if pattern.operator is CompoundOperator.OR:
        return _evaluate_or(pattern, text)
    if pattern.operator is CompoundOperator.SEQUENCE:
        return _evaluate_sequence(pattern, text)
    raise ValueError(f"Unhandled compound operator: {pattern.operator!r}")
