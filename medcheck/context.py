"""
Context Classifier — labels a matched span with how it is being said.

A pure function of text: no randomness, no external calls. The same
(span, sentence) pair always yields the same label.

Precedence when several cues are present:
  quotation > question > negation > disclaimer > comparison > normal
"""

from __future__ import annotations

import re
from typing import Iterable, Optional

from medcheck.models import ContextType


# ============================================================
# CUES
# ============================================================

# Paired quotation marks; straight quotes pair with themselves
_QUOTE_PAIRS = {
    '"': '"',
    "'": "'",
    "“": "”",
    "‘": "’",
    "「": "」",
    "『": "』",
}

_QUESTION_END = re.compile(r"[?？]\s*[\"'”’」』)]*\s*$")

# Negation only counts after the span: "보장하지 않습니다" negates "보장"
_NEGATION_CUES = re.compile(
    r"(않[습는아았을]|않다|아닙니다|아니다|아닌|아니라|없습니다|없다|없어요"
    r"|못합니다|못한다|불가능|금지됩니다"
    r"|\bnot\b|\bnever\b|\bno\s+longer\b|\bcannot\b|\bcan't\b|\bdon't\b|\bdoesn't\b)",
    re.IGNORECASE,
)

DEFAULT_DISCLAIMER_MARKERS = ("※", "주의사항", "유의사항", "면책")

_COMPARISON_CUES = re.compile(
    r"(보다|대비|비교|에\s*비해|와\s*달리|과\s*달리|타\s*병원|다른\s*병원"
    r"|\bthan\b|\bcompared\b|\bvs\.?)",
    re.IGNORECASE,
)

_SENTENCE_BREAK = re.compile(r"[.!?？。\n]")


def enclosing_sentence(text: str, start: int, end: int) -> tuple[str, int]:
    """Return the sentence around [start, end) and its offset in ``text``.

    Terminal punctuation stays with the sentence it closes so question
    marks remain visible to the classifier.
    """
    left = 0
    for m in _SENTENCE_BREAK.finditer(text, 0, start):
        left = m.end()
    m = _SENTENCE_BREAK.search(text, end)
    right = m.end() if m else len(text)
    # Keep trailing closing quotes/brackets attached to the sentence
    while right < len(text) and text[right] in "\"'”’」』)":
        right += 1
    return text[left:right], left


def _quoted_regions(sentence: str) -> list[tuple[int, int]]:
    regions: list[tuple[int, int]] = []
    i = 0
    while i < len(sentence):
        closer = _QUOTE_PAIRS.get(sentence[i])
        if closer is None:
            i += 1
            continue
        j = sentence.find(closer, i + 1)
        if j == -1:
            i += 1
            continue
        regions.append((i + 1, j))
        i = j + 1
    return regions


class ContextClassifier:
    """Deterministic rule-based context labelling."""

    def __init__(self, disclaimer_phrases: Iterable[str] = ()):
        phrases = [p for p in disclaimer_phrases if p]
        phrases.extend(DEFAULT_DISCLAIMER_MARKERS)
        # Longest first so the alternation prefers full boilerplate phrases
        escaped = sorted({re.escape(p) for p in phrases}, key=len, reverse=True)
        self._disclaimer_re = re.compile("|".join(escaped), re.IGNORECASE)

    def classify(
        self,
        span: str,
        sentence: str,
        span_offset: Optional[int] = None,
    ) -> ContextType:
        """
        Label ``span`` as it appears inside ``sentence``.

        Args:
            span: The matched text.
            sentence: The enclosing sentence or paragraph.
            span_offset: Position of the span inside ``sentence``. Located
                by search when omitted.
        """
        if span_offset is None:
            span_offset = sentence.find(span)
            if span_offset == -1:
                span_offset = sentence.lower().find(span.lower())
        if span_offset < 0:
            span_offset = 0
        span_end = span_offset + len(span)

        for q_start, q_end in _quoted_regions(sentence):
            if q_start <= span_offset and span_end <= q_end:
                return ContextType.QUOTATION

        if _QUESTION_END.search(sentence):
            return ContextType.QUESTION

        if _NEGATION_CUES.search(sentence[span_end:]):
            return ContextType.NEGATION

        if self._disclaimer_re.search(sentence):
            return ContextType.DISCLAIMER

        if _COMPARISON_CUES.search(sentence):
            return ContextType.COMPARISON

        return ContextType.NORMAL

    def classify_in_text(self, text: str, start: int, end: int) -> tuple[ContextType, str]:
        """Classify the span ``text[start:end]`` using its enclosing sentence."""
        sentence, offset = enclosing_sentence(text, start, end)
        label = self.classify(text[start:end], sentence, span_offset=start - offset)
        return label, sentence
