"""
Exception Filter — removes known-benign matches.

For each candidate, in order:
  1. Any active exception rule of its pattern that matches drops the
     candidate (hard suppression) and records exactly one hit on that
     rule.
  2. Otherwise, if the candidate sits in a negation, question,
     quotation or disclaimer context and the deployment configured a
     modifier for that (pattern, context), confidence is multiplied by
     the modifier and the candidate is kept.

Hard suppression always wins over confidence modification.
Inactive rules never suppress anything.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Callable, Iterable, Mapping, Optional

from medcheck.models import (
    MODIFIABLE_CONTEXTS,
    ContextType,
    ExceptionRule,
    ExceptionType,
    MatchCandidate,
    Pattern,
)

logger = logging.getLogger(__name__)


def parse_context_value(value: str) -> Optional[ContextType]:
    """Accept ``negation``, ``NEGATION`` or ``NEGATION_CONTEXT``."""
    if isinstance(value, ContextType):
        return value
    key = str(value).strip().lower()
    if key.endswith("_context"):
        key = key[: -len("_context")]
    try:
        return ContextType(key)
    except ValueError:
        return None


@lru_cache(maxsize=512)
def _compile_exception_regex(value: str) -> Optional[re.Pattern]:
    try:
        return re.compile(value, re.IGNORECASE)
    except re.error as e:
        logger.warning("Ignoring exception with invalid regex %r: %s", value, e)
        return None


# ============================================================
# CONFIDENCE MODIFIERS
# ============================================================

class ConfidenceModifierTable:
    """
    Decay multipliers in [0, 1] keyed by (pattern key, context).

    The pattern key is a pattern id, a violation type value, or ``*``;
    lookup tries them in that order.
    """

    def __init__(self, entries: Optional[Mapping[tuple[str, ContextType], float]] = None):
        self._entries: dict[tuple[str, ContextType], float] = {}
        for (key, context), modifier in (entries or {}).items():
            if not 0.0 <= modifier <= 1.0:
                raise ValueError(
                    f"Confidence modifier for {key}/{context} must be within [0, 1], got {modifier!r}"
                )
            self._entries[(key, ContextType(context))] = float(modifier)

    @classmethod
    def from_records(cls, records: Iterable[dict]) -> "ConfidenceModifierTable":
        entries = {}
        for r in records:
            context = parse_context_value(r["context"])
            if context is None:
                raise ValueError(f"Unknown context in modifier table: {r['context']!r}")
            entries[(str(r.get("pattern", "*")), context)] = float(r["modifier"])
        return cls(entries)

    def lookup(self, pattern: Pattern, context: ContextType) -> Optional[float]:
        if context not in MODIFIABLE_CONTEXTS:
            return None
        for key in (pattern.id, pattern.type.value, "*"):
            modifier = self._entries.get((key, context))
            if modifier is not None:
                return modifier
        return None

    def to_records(self) -> list[dict]:
        return [
            {"pattern": key, "context": context.value, "modifier": modifier}
            for (key, context), modifier in sorted(
                self._entries.items(), key=lambda kv: (kv[0][0], kv[0][1].value)
            )
        ]

    def __len__(self) -> int:
        return len(self._entries)


# ============================================================
# FILTER
# ============================================================

@dataclass(frozen=True)
class Suppression:
    candidate: MatchCandidate
    exception_id: str


@dataclass
class FilterOutcome:
    kept: list[MatchCandidate] = field(default_factory=list)
    suppressed: list[Suppression] = field(default_factory=list)
    modified: int = 0


def rule_matches(
    rule: ExceptionRule,
    candidate: MatchCandidate,
    department: Optional[str] = None,
) -> bool:
    """Does this exception rule cover this candidate?"""
    if not rule.is_active:
        return False
    return _condition_matches(rule.exception_type, rule.value, candidate, department)


def _condition_matches(
    exception_type: ExceptionType,
    value: str,
    candidate: MatchCandidate,
    department: Optional[str],
) -> bool:
    if exception_type is ExceptionType.KEYWORD:
        needle = value.strip().lower()
        return bool(needle) and (
            needle in candidate.context.lower()
            or needle in candidate.matched_text.lower()
        )
    if exception_type is ExceptionType.REGEX:
        compiled = _compile_exception_regex(value)
        return compiled is not None and bool(compiled.search(candidate.context))
    if exception_type is ExceptionType.CONTEXT:
        return parse_context_value(value) is candidate.context_type
    if exception_type is ExceptionType.DEPARTMENT:
        return department is not None and value.strip() == department.strip()
    if exception_type is ExceptionType.COMPOSITE:
        try:
            parts = json.loads(value)
            conditions = [(ExceptionType(p["type"]), str(p["value"])) for p in parts]
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("Ignoring malformed composite exception %r: %s", value, e)
            return False
        if not conditions or any(t is ExceptionType.COMPOSITE for t, _ in conditions):
            return False
        return all(
            _condition_matches(t, v, candidate, department) for t, v in conditions
        )
    raise ValueError(f"Unhandled exception type: {exception_type}")


class ExceptionFilter:
    """Applies exception rules and context modifiers to match candidates."""

    def __init__(
        self,
        modifiers: Optional[ConfidenceModifierTable] = None,
        hit_recorder: Optional[Callable[[str], object]] = None,
    ):
        self.modifiers = modifiers or ConfidenceModifierTable()
        self._hit_recorder = hit_recorder

    def apply(
        self,
        candidates: Iterable[MatchCandidate],
        exceptions: Iterable[ExceptionRule],
        patterns: Mapping[str, Pattern],
        department: Optional[str] = None,
    ) -> FilterOutcome:
        by_pattern: dict[str, list[ExceptionRule]] = {}
        for rule in exceptions:
            if rule.is_active:
                by_pattern.setdefault(rule.pattern_id, []).append(rule)
        for rules in by_pattern.values():
            rules.sort(key=lambda r: r.id)

        outcome = FilterOutcome()
        for candidate in candidates:
            hit = next(
                (r for r in by_pattern.get(candidate.pattern_id, ())
                 if rule_matches(r, candidate, department)),
                None,
            )
            if hit is not None:
                outcome.suppressed.append(Suppression(candidate, hit.id))
                if self._hit_recorder:
                    self._hit_recorder(hit.id)
                logger.debug(
                    "Candidate suppressed by exception",
                    extra={"pattern_id": candidate.pattern_id, "exception_id": hit.id},
                )
                continue

            pattern = patterns.get(candidate.pattern_id)
            modifier = (
                self.modifiers.lookup(pattern, candidate.context_type)
                if pattern is not None else None
            )
            if modifier is not None:
                candidate = replace(
                    candidate, confidence=round(candidate.confidence * modifier, 4)
                )
                outcome.modified += 1
            outcome.kept.append(candidate)

        return outcome
