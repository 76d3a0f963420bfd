"""
Matcher — scans document text against enabled patterns.

Regex patterns use their compiled expression (non-overlapping
``finditer``). Each keyword of a keyword pattern is scanned on its own,
case-insensitively as a plain substring with no word-boundary
enforcement: recall first, the exception filter trims the false
positives afterwards. Two keywords of one pattern may therefore report
overlapping spans; an identical span is reported once.

Compound patterns are evaluated over the whole document and report at
most one span. A pattern whose exclusion regex occurs anywhere in the
text reports nothing.

A pattern whose regex does not compile is skipped and reported as a
diagnostic. One bad pattern never aborts the scan.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

from medcheck.compound import evaluate_compound, validate_compound
from medcheck.context import ContextClassifier
from medcheck.errors import PatternCompileError
from medcheck.models import MatchCandidate, Pattern

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    candidates: list[MatchCandidate] = field(default_factory=list)
    diagnostics: list[PatternCompileError] = field(default_factory=list)


@dataclass(frozen=True)
class CompiledPattern:
    expressions: tuple[re.Pattern, ...]
    exclusions: tuple[re.Pattern, ...] = ()


def _compile_regex(pattern_id: str, regex: str) -> re.Pattern:
    try:
        return re.compile(regex, re.IGNORECASE)
    except re.error as e:
        raise PatternCompileError(pattern_id, str(e)) from e


def compile_pattern(pattern: Pattern) -> CompiledPattern:
    """
    Compile a pattern's regex, keywords and exclusions.

    Keyword patterns get one literal expression per distinct keyword.
    Compound patterns get no expressions; their clauses are validated
    here and evaluated per document. Raises PatternCompileError.
    """
    exclusions = tuple(_compile_regex(pattern.id, x) for x in pattern.exclusions)
    if pattern.is_compound:
        validate_compound(pattern)
        return CompiledPattern((), exclusions)
    if not pattern.is_keyword:
        return CompiledPattern((_compile_regex(pattern.id, pattern.regex),), exclusions)
    keywords = sorted({k for k in pattern.keywords if k})
    if not keywords:
        raise PatternCompileError(pattern.id, "empty keyword list")
    return CompiledPattern(
        tuple(re.compile(re.escape(k), re.IGNORECASE) for k in keywords),
        exclusions,
    )


class Matcher:
    """Turns text + patterns into ordered match candidates."""

    def __init__(
        self,
        classifier: Optional[ContextClassifier] = None,
        context_window: int = 50,
    ):
        self.classifier = classifier or ContextClassifier()
        self.context_window = context_window
        self._compiled: dict[tuple, CompiledPattern] = {}
        self._lock = threading.Lock()

    def _get_compiled(self, pattern: Pattern) -> CompiledPattern:
        key = (pattern.id, pattern.regex, pattern.keywords, pattern.exclusions, pattern.conditions)
        compiled = self._compiled.get(key)
        if compiled is None:
            compiled = compile_pattern(pattern)
            with self._lock:
                self._compiled[key] = compiled
        return compiled

    def _window(self, text: str, start: int, end: int) -> str:
        left = max(0, start - self.context_window)
        right = min(len(text), end + self.context_window)
        return text[left:right]

    def _spans(
        self, text: str, pattern: Pattern, compiled: CompiledPattern
    ) -> Iterator[tuple[int, int, str, float]]:
        if pattern.is_compound:
            hit = evaluate_compound(pattern, text)
            if hit is not None:
                yield hit.start, hit.end, hit.text, pattern.compound_confidence(len(hit.met))
            return

        seen: set[tuple[int, int]] = set()
        for expression in compiled.expressions:
            for m in expression.finditer(text):
                span = (m.start(), m.end())
                if span[0] == span[1] or span in seen:
                    continue  # zero-width or already reported
                seen.add(span)
                yield span[0], span[1], m.group(0), pattern.base_confidence(m.group(0))

    def scan(self, text: str, patterns: Iterable[Pattern]) -> ScanResult:
        """
        Scan ``text`` with every enabled pattern.

        Returns candidates ordered by start offset, ties broken by
        pattern id, plus one diagnostic per pattern that failed to compile.
        """
        result = ScanResult()
        for pattern in patterns:
            if not pattern.enabled:
                continue
            try:
                compiled = self._get_compiled(pattern)
            except PatternCompileError as e:
                logger.warning(
                    "Skipping pattern with invalid regex: %s", e,
                    extra={"pattern_id": pattern.id, "error": str(e)},
                )
                result.diagnostics.append(e)
                continue

            if any(x.search(text) for x in compiled.exclusions):
                logger.debug("Pattern excluded for document", extra={"pattern_id": pattern.id})
                continue

            for start, end, matched, confidence in self._spans(text, pattern, compiled):
                context_type, sentence = self.classifier.classify_in_text(text, start, end)
                result.candidates.append(MatchCandidate(
                    pattern_id=pattern.id,
                    matched_text=matched,
                    start=start,
                    end=end,
                    context=self._window(text, start, end),
                    sentence=sentence,
                    context_type=context_type,
                    confidence=confidence,
                ))

        result.candidates.sort(key=lambda c: (c.start, c.pattern_id, c.end))
        return result
