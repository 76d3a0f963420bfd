"""
Rule Engine — Matcher → Exception Filter → ViolationResults.

Deterministic and synchronous. Given the same text and the same
snapshot it produces the same violations, in the same order, every time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from medcheck.config import settings
from medcheck.context import ContextClassifier
from medcheck.errors import InvalidConfidenceError, PatternCompileError
from medcheck.exception_filter import ExceptionFilter, Suppression
from medcheck.matcher import Matcher
from medcheck.models import MatchCandidate, Pattern, ViolationResult, ViolationStatus
from medcheck.patterns.store import PatternSnapshot

logger = logging.getLogger(__name__)


@dataclass
class RuleAnalysis:
    violations: list[ViolationResult] = field(default_factory=list)
    suppressed: list[Suppression] = field(default_factory=list)
    diagnostics: list[PatternCompileError] = field(default_factory=list)
    dropped: list[InvalidConfidenceError] = field(default_factory=list)
    candidate_count: int = 0


def to_violation(candidate: MatchCandidate, pattern: Pattern) -> ViolationResult:
    """Raises InvalidConfidenceError when the candidate's confidence is out of range."""
    return ViolationResult(
        type=pattern.type,
        status=ViolationStatus.from_confidence(candidate.confidence),
        severity=pattern.default_severity,
        matched_text=candidate.matched_text,
        position=candidate.start,
        description=pattern.description or pattern.name,
        legal_basis=pattern.legal_basis,
        confidence=candidate.confidence,
        pattern_id=pattern.id,
        context_type=candidate.context_type,
        suggestion=pattern.suggestion,
    )


class RuleEngine:
    """Runs one snapshot's patterns and exceptions over a document."""

    def __init__(
        self,
        snapshot: PatternSnapshot,
        hit_recorder: Optional[Callable[[str], object]] = None,
        context_window: int = settings.CONTEXT_WINDOW,
    ):
        self.snapshot = snapshot
        self.classifier = ContextClassifier(snapshot.disclaimers)
        self.matcher = Matcher(self.classifier, context_window=context_window)
        self.filter = ExceptionFilter(snapshot.modifiers, hit_recorder=hit_recorder)

    def analyze(self, text: str, department: Optional[str] = None) -> RuleAnalysis:
        scan = self.matcher.scan(text, self.snapshot.enabled_patterns(department))
        outcome = self.filter.apply(
            scan.candidates,
            self.snapshot.active_exceptions(),
            self.snapshot.pattern_index,
            department=department,
        )

        result = RuleAnalysis(
            suppressed=outcome.suppressed,
            diagnostics=scan.diagnostics,
            candidate_count=len(scan.candidates),
        )
        for candidate in outcome.kept:
            pattern = self.snapshot.get_pattern(candidate.pattern_id)
            try:
                result.violations.append(to_violation(candidate, pattern))
            except InvalidConfidenceError as e:
                logger.warning(
                    "Dropping violation with invalid confidence: %s", e,
                    extra={"pattern_id": candidate.pattern_id, "error_type": "data_quality"},
                )
                result.dropped.append(e)
        return result
