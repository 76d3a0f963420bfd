"""
Auditor Reconciler — merges model findings with rule-engine findings.

The model's violations are checked in a fixed order:
  1. invalid confidence      → removed  (INVALID_CONFIDENCE)
  2. unknown pattern id      → removed  (FABRICATED_PATTERN_ID)
  3. negative-list text      → removed  (NEGATIVE_LIST_VIOLATION)
  4. approval by an official body → removed (CERTIFICATION_FALSE_POSITIVE)
  5. repeated finding        → removed  (DUPLICATE_VIOLATION)
  6. rule-engine findings the model missed → added (GEMINI_MISSED)
  7. disclaimer nearby but not applied     → downgraded one band
  8. implausibly low confidence for the severity → adjusted

Only model findings that survive checks 1-5 count as reporting a rule
finding. A rule finding whose text is itself a negative-list term or an
official approval is never added back.

Every ADD or REMOVE is recorded as exactly one issue, so
    audit_delta == #ADD issues − #REMOVE issues
holds for every result, including the rule-only fallback used when the
model failed, timed out or answered with something malformed.
"""

from __future__ import annotations

import logging
import math
import random
import re
import string
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, Optional, Sequence, Union

from medcheck.config import settings
from medcheck.errors import LLMError, UnknownPatternIdError
from medcheck.mandatory import check_mandatory_items
from medcheck.models import (
    AdMetadata,
    ExceptionType,
    SectionType,
    Severity,
    ViolationResult,
    ViolationStatus,
    ViolationType,
)
from medcheck.patterns.store import PatternSnapshot
from medcheck.schemas.llm_output import (
    GeminiViolationOutput,
    GrayZone,
    LLMViolation,
    MandatoryItems,
    parse_llm_output,
)
from medcheck.scorer import GradeResult, ScoringConfig, grade_violations

logger = logging.getLogger(__name__)


# ============================================================
# DATA STRUCTURES
# ============================================================

class AuditAction(str, Enum):
    ADD = "ADD"
    REMOVE = "REMOVE"
    DOWNGRADE = "DOWNGRADE"
    ADJUST = "ADJUST"


class AuditIssueType(str, Enum):
    INVALID_CONFIDENCE = "INVALID_CONFIDENCE"
    FABRICATED_PATTERN_ID = "FABRICATED_PATTERN_ID"
    NEGATIVE_LIST_VIOLATION = "NEGATIVE_LIST_VIOLATION"
    CERTIFICATION_FALSE_POSITIVE = "CERTIFICATION_FALSE_POSITIVE"
    DUPLICATE_VIOLATION = "DUPLICATE_VIOLATION"
    GEMINI_MISSED = "GEMINI_MISSED"
    DISCLAIMER_NOT_APPLIED = "DISCLAIMER_NOT_APPLIED"
    CONFIDENCE_ADJUSTED = "CONFIDENCE_ADJUSTED"
    RULE_ENGINE_FALLBACK = "RULE_ENGINE_FALLBACK"

    @property
    def action(self) -> AuditAction:
        return ISSUE_ACTIONS[self]


ISSUE_ACTIONS: dict[AuditIssueType, AuditAction] = {
    AuditIssueType.INVALID_CONFIDENCE: AuditAction.REMOVE,
    AuditIssueType.FABRICATED_PATTERN_ID: AuditAction.REMOVE,
    AuditIssueType.NEGATIVE_LIST_VIOLATION: AuditAction.REMOVE,
    AuditIssueType.CERTIFICATION_FALSE_POSITIVE: AuditAction.REMOVE,
    AuditIssueType.DUPLICATE_VIOLATION: AuditAction.REMOVE,
    AuditIssueType.GEMINI_MISSED: AuditAction.ADD,
    AuditIssueType.DISCLAIMER_NOT_APPLIED: AuditAction.DOWNGRADE,
    AuditIssueType.CONFIDENCE_ADJUSTED: AuditAction.ADJUST,
    AuditIssueType.RULE_ENGINE_FALLBACK: AuditAction.ADD,
}


@dataclass(frozen=True)
class AuditedViolation:
    """A violation in the final, reconciled set."""
    pattern_id: str
    type: ViolationType
    severity: Severity              # effective severity after reconciliation
    original_severity: Severity
    original_text: str
    confidence: float
    source: str                     # gemini | rule_engine_supplement | rule_engine
    category: str = ""
    context: str = ""
    section_type: SectionType = SectionType.DEFAULT
    reasoning: str = ""
    from_image: bool = False
    disclaimer_present: bool = False
    position: Optional[int] = None

    def to_violation_result(self, snapshot: PatternSnapshot) -> ViolationResult:
        pattern = snapshot.pattern_index.get(self.pattern_id)
        return ViolationResult(
            type=self.type,
            status=ViolationStatus.from_confidence(self.confidence),
            severity=self.severity,
            matched_text=self.original_text,
            position=self.position if self.position is not None else -1,
            description=(pattern.description or pattern.name) if pattern else self.reasoning,
            legal_basis=pattern.legal_basis if pattern else (),
            confidence=self.confidence,
            pattern_id=self.pattern_id,
            section_type=self.section_type,
            suggestion=pattern.suggestion if pattern else "",
            source=self.source,
        )

    def to_dict(self) -> dict:
        return {
            "patternId": self.pattern_id,
            "type": self.type.value,
            "category": self.category,
            "severity": self.original_severity.value,
            "adjustedSeverity": self.severity.value,
            "originalText": self.original_text,
            "context": self.context,
            "sectionType": self.section_type.value,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "fromImage": self.from_image,
            "disclaimerPresent": self.disclaimer_present,
            "source": self.source,
            "position": self.position,
        }


@dataclass(frozen=True)
class AuditIssue:
    type: AuditIssueType
    pattern_id: str
    original_text: str
    detail: str = ""
    before: Optional[str] = None
    after: Optional[str] = None

    @property
    def action(self) -> AuditAction:
        return self.type.action

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "action": self.action.value,
            "patternId": self.pattern_id,
            "originalText": self.original_text,
            "detail": self.detail,
            "before": self.before,
            "after": self.after,
        }


@dataclass
class AuditResult:
    audit_id: str
    final_violations: list[AuditedViolation]
    gray_zones: list[GrayZone]
    mandatory_items: MandatoryItems
    grade: GradeResult
    audit_issues: list[AuditIssue]
    gemini_original_count: int
    degraded: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def final_count(self) -> int:
        return len(self.final_violations)

    @property
    def audit_delta(self) -> int:
        return self.final_count - self.gemini_original_count

    def issues_by_action(self, action: AuditAction) -> list[AuditIssue]:
        return [i for i in self.audit_issues if i.action is action]

    def to_dict(self) -> dict:
        return {
            "auditId": self.audit_id,
            "finalViolations": [v.to_dict() for v in self.final_violations],
            "grayZones": [g.model_dump() for g in self.gray_zones],
            "mandatoryItems": self.mandatory_items.model_dump(),
            "grade": self.grade.to_dict(),
            "auditIssues": [i.to_dict() for i in self.audit_issues],
            "geminiOriginalCount": self.gemini_original_count,
            "finalCount": self.final_count,
            "auditDelta": self.audit_delta,
            "degraded": self.degraded,
            "warnings": list(self.warnings),
        }


# ============================================================
# HELPERS
# ============================================================

def _base36(n: int) -> str:
    chars = string.digits + string.ascii_lowercase
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = chars[r] + out
    return out or "0"


def new_audit_id() -> str:
    rand = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"audit_{_base36(int(time.time() * 1000))}_{rand}"


def _normalize(text: str) -> str:
    return "".join(text.lower().split())


def _occurrences(text: str, needle: str) -> list[int]:
    if not needle:
        return []
    haystack, needle = text.lower(), needle.lower()
    positions, i = [], haystack.find(needle)
    while i != -1:
        positions.append(i)
        i = haystack.find(needle, i + 1)
    return positions


def _overlaps(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    return a_start < b_end and b_start < a_end


# Latin acronyms must stand alone ("FDA승인" counts, "ceramic" does not)
CERTIFICATION_BODIES = re.compile(
    r"(?<![a-z])(?:fda|ce|mfds|kfda|iso|gmp|cgmp|tfda|anvisa|pmda)(?![a-z])"
    r"|식약처|보건복지부|질병관리청",
    re.IGNORECASE,
)
CERTIFICATION_WORDS = ("인증", "승인", "허가", "등록", "approved", "cleared", "certified")


def is_certification_claim(original_text: str, context: str = "") -> bool:
    """Approval wording in the finding, with an official body named nearby."""
    lowered = original_text.lower()
    if not any(w in lowered for w in CERTIFICATION_WORDS):
        return False
    return CERTIFICATION_BODIES.search(f"{original_text} {context}") is not None


def _surrounding(text: str, position: Optional[int], length: int, window: int = 50) -> str:
    if position is None or position < 0:
        return ""
    return text[max(0, position - window): position + length + window]


# ============================================================
# RECONCILER
# ============================================================

LLMAnswer = Union[dict, GeminiViolationOutput, BaseException, None]


class AuditorReconciler:
    """Produces one AuditResult per document."""

    def __init__(
        self,
        scoring: Optional[ScoringConfig] = None,
        missed_floor: float = settings.MISSED_DETECTION_FLOOR,
        disclaimer_window: int = settings.DISCLAIMER_WINDOW,
    ):
        self.scoring = scoring or ScoringConfig()
        self.missed_floor = missed_floor
        self.disclaimer_window = disclaimer_window

    def reconcile(
        self,
        text: str,
        rule_violations: Sequence[ViolationResult],
        llm_answer: LLMAnswer,
        snapshot: PatternSnapshot,
        metadata: Optional[AdMetadata] = None,
    ) -> AuditResult:
        """
        Merge ``llm_answer`` with ``rule_violations``.

        ``llm_answer`` may be the decoded JSON, an already-validated
        GeminiViolationOutput, or the exception the model call raised.
        Anything other than a valid answer degrades to rule-only output.
        """
        if llm_answer is None:
            return self.fallback(text, rule_violations, snapshot, metadata, "no model answer")
        if isinstance(llm_answer, BaseException):
            return self.fallback(
                text, rule_violations, snapshot, metadata,
                f"{type(llm_answer).__name__}: {llm_answer}",
            )
        try:
            output = (
                llm_answer if isinstance(llm_answer, GeminiViolationOutput)
                else parse_llm_output(llm_answer)
            )
        except LLMError as e:
            return self.fallback(
                text, rule_violations, snapshot, metadata, f"{type(e).__name__}: {e}",
            )
        return self._merge(text, rule_violations, output, snapshot, metadata)

    # --- Degraded path ---

    def fallback(
        self,
        text: str,
        rule_violations: Sequence[ViolationResult],
        snapshot: PatternSnapshot,
        metadata: Optional[AdMetadata],
        reason: str,
    ) -> AuditResult:
        logger.warning("Auditor falling back to rule-only output: %s", reason,
                       extra={"degraded": True, "error": reason})
        final: list[AuditedViolation] = []
        issues: list[AuditIssue] = []
        for rv in rule_violations:
            final.append(self._from_rule(rv, snapshot, "rule_engine"))
            issues.append(AuditIssue(
                AuditIssueType.RULE_ENGINE_FALLBACK, rv.pattern_id, rv.matched_text,
                detail="model unavailable; rule-engine finding kept",
            ))
        return AuditResult(
            audit_id=new_audit_id(),
            final_violations=final,
            gray_zones=[],
            mandatory_items=check_mandatory_items(text, metadata),
            grade=self._grade(final, snapshot, text),
            audit_issues=issues,
            gemini_original_count=0,
            degraded=True,
            warnings=[f"llm_unavailable: {reason}"],
        )

    # --- Normal path ---

    def _merge(
        self,
        text: str,
        rule_violations: Sequence[ViolationResult],
        output: GeminiViolationOutput,
        snapshot: PatternSnapshot,
        metadata: Optional[AdMetadata],
    ) -> AuditResult:
        issues: list[AuditIssue] = []
        enabled = snapshot.enabled_ids()
        negative_terms = {_normalize(t) for t in snapshot.negative_list if t.strip()}

        kept: list[AuditedViolation] = []
        seen: set[tuple[str, str]] = set()
        for lv in output.violations:
            issue = self._screen(lv, text, enabled, negative_terms, snapshot)
            if issue is None:
                key = (lv.pattern_id, _normalize(lv.original_text))
                if key in seen:
                    issue = AuditIssue(
                        AuditIssueType.DUPLICATE_VIOLATION, lv.pattern_id, lv.original_text,
                        detail="same pattern and text already reported",
                    )
                else:
                    seen.add(key)
            if issue is not None:
                issues.append(issue)
                continue
            kept.append(self._from_llm(lv, text, snapshot))

        supplements = self._missed(
            text, rule_violations, kept, output, snapshot, negative_terms, seen, issues,
        )
        final = [self._apply_disclaimer(v, text, snapshot, issues) for v in kept + supplements]
        final = [self._adjust_confidence(v, issues) for v in final]

        result = AuditResult(
            audit_id=new_audit_id(),
            final_violations=final,
            gray_zones=list(output.gray_zones),
            mandatory_items=output.mandatory_items or check_mandatory_items(text, metadata),
            grade=self._grade(final, snapshot, text),
            audit_issues=issues,
            gemini_original_count=len(output.violations),
        )
        logger.info(
            "Audit reconciled",
            extra={"audit_delta": result.audit_delta, "violations_count": result.final_count},
        )
        return result

    def _screen(
        self,
        lv: LLMViolation,
        text: str,
        enabled: frozenset[str],
        negative_terms: set[str],
        snapshot: PatternSnapshot,
    ) -> Optional[AuditIssue]:
        """Return a REMOVE issue if the model finding must be dropped."""
        if math.isnan(lv.confidence) or not 0.0 <= lv.confidence <= 1.0:
            return AuditIssue(
                AuditIssueType.INVALID_CONFIDENCE, lv.pattern_id, lv.original_text,
                detail=f"confidence {lv.confidence!r} outside [0, 1]",
            )
        try:
            if lv.pattern_id not in enabled:
                raise UnknownPatternIdError(lv.pattern_id)
        except UnknownPatternIdError as e:
            return AuditIssue(
                AuditIssueType.FABRICATED_PATTERN_ID, lv.pattern_id, lv.original_text,
                detail=str(e),
            )
        if self._on_negative_list(lv.pattern_id, lv.original_text, negative_terms, snapshot):
            return AuditIssue(
                AuditIssueType.NEGATIVE_LIST_VIOLATION, lv.pattern_id, lv.original_text,
                detail="text is an allowed term or matches an active exception",
            )
        positions = _occurrences(text, lv.original_text)
        nearby = _surrounding(text, positions[0] if positions else None, len(lv.original_text))
        if is_certification_claim(lv.original_text, f"{lv.context} {nearby}"):
            return AuditIssue(
                AuditIssueType.CERTIFICATION_FALSE_POSITIVE, lv.pattern_id, lv.original_text,
                detail="approval by an official body is a statement of fact",
            )
        return None

    @staticmethod
    def _on_negative_list(
        pattern_id: str, original_text: str, negative_terms: set[str], snapshot: PatternSnapshot
    ) -> bool:
        norm = _normalize(original_text)
        if not norm:
            return False
        if norm in negative_terms:
            return True
        for rule in snapshot.active_exceptions():
            if rule.pattern_id != pattern_id:
                continue
            if rule.exception_type is ExceptionType.KEYWORD and _normalize(rule.value) == norm:
                return True
            if rule.exception_type is ExceptionType.REGEX:
                try:
                    if re.fullmatch(rule.value, original_text.strip(), re.IGNORECASE):
                        return True
                except re.error:
                    continue
        return False

    def _missed(
        self,
        text: str,
        rule_violations: Sequence[ViolationResult],
        kept: Sequence[AuditedViolation],
        output: GeminiViolationOutput,
        snapshot: PatternSnapshot,
        negative_terms: set[str],
        seen: set[tuple[str, str]],
        issues: list[AuditIssue],
    ) -> list[AuditedViolation]:
        added: list[AuditedViolation] = []
        for rv in rule_violations:
            if rv.confidence <= self.missed_floor:
                continue
            if self._reported_by_model(rv, kept, text):
                continue
            nearby = _surrounding(text, rv.position, len(rv.matched_text))
            if (self._on_negative_list(rv.pattern_id, rv.matched_text, negative_terms, snapshot)
                    or is_certification_claim(rv.matched_text, nearby)):
                logger.debug("Rule finding not added back: allowed wording",
                             extra={"pattern_id": rv.pattern_id})
                continue
            key = (rv.pattern_id, _normalize(rv.matched_text))
            if key in seen:
                continue
            seen.add(key)
            supplement = self._from_rule(rv, snapshot, "rule_engine_supplement", output)
            added.append(supplement)
            issues.append(AuditIssue(
                AuditIssueType.GEMINI_MISSED, rv.pattern_id, rv.matched_text,
                detail=f"rule engine found this at {rv.position} with confidence {rv.confidence}",
            ))
        return added

    @staticmethod
    def _reported_by_model(rv: ViolationResult, kept: Iterable[AuditedViolation], text: str) -> bool:
        """Does a surviving model finding of the same pattern cover this rule finding?"""
        r_start, r_end = rv.position, rv.position + len(rv.matched_text)
        for lv in kept:
            if lv.pattern_id != rv.pattern_id:
                continue
            positions = _occurrences(text, lv.original_text)
            if positions:
                if any(_overlaps(r_start, r_end, p, p + len(lv.original_text)) for p in positions):
                    return True
                continue
            a, b = _normalize(lv.original_text), _normalize(rv.matched_text)
            if a and b and (a in b or b in a):
                return True
        return False

    def _apply_disclaimer(
        self,
        v: AuditedViolation,
        text: str,
        snapshot: PatternSnapshot,
        issues: list[AuditIssue],
    ) -> AuditedViolation:
        if v.disclaimer_present or v.position is None:
            return v
        pattern = snapshot.pattern_index.get(v.pattern_id)
        if pattern is not None and pattern.absolute:
            return v
        start = max(0, v.position - self.disclaimer_window)
        end = min(len(text), v.position + len(v.original_text) + self.disclaimer_window)
        window = text[start:end].lower()
        phrase = next((d for d in snapshot.disclaimers if d and d.lower() in window), None)
        if phrase is None:
            return v
        downgraded = v.severity.downgrade()
        issues.append(AuditIssue(
            AuditIssueType.DISCLAIMER_NOT_APPLIED, v.pattern_id, v.original_text,
            detail=f"disclaimer nearby: {phrase}",
            before=v.severity.value, after=downgraded.value,
        ))
        return replace(v, severity=downgraded, disclaimer_present=True)

    @staticmethod
    def _adjust_confidence(v: AuditedViolation, issues: list[AuditIssue]) -> AuditedViolation:
        floors = {
            Severity.CRITICAL: (0.7, 0.85),
            Severity.MAJOR: (0.5, 0.7),
        }
        floor = floors.get(v.severity)
        if floor is None or v.confidence >= floor[0]:
            return v
        issues.append(AuditIssue(
            AuditIssueType.CONFIDENCE_ADJUSTED, v.pattern_id, v.original_text,
            detail=f"{v.severity.value} finding with implausibly low confidence",
            before=str(v.confidence), after=str(floor[1]),
        ))
        return replace(v, confidence=floor[1])

    # --- Conversion ---

    @staticmethod
    def _section_at(position: int, output: Optional[GeminiViolationOutput]) -> SectionType:
        if output is None:
            return SectionType.DEFAULT
        for section in output.sections:
            if section.start_index <= position < section.end_index:
                return section.type
        return SectionType.DEFAULT

    def _from_rule(
        self,
        rv: ViolationResult,
        snapshot: PatternSnapshot,
        source: str,
        output: Optional[GeminiViolationOutput] = None,
    ) -> AuditedViolation:
        pattern = snapshot.pattern_index.get(rv.pattern_id)
        return AuditedViolation(
            pattern_id=rv.pattern_id,
            type=rv.type,
            severity=rv.severity,
            original_severity=rv.severity,
            original_text=rv.matched_text,
            confidence=rv.confidence,
            source=source,
            category=pattern.category if pattern else "",
            section_type=self._section_at(rv.position, output),
            reasoning=rv.description,
            position=rv.position,
        )

    @staticmethod
    def _from_llm(lv: LLMViolation, text: str, snapshot: PatternSnapshot) -> AuditedViolation:
        pattern = snapshot.get_pattern(lv.pattern_id)
        positions = _occurrences(text, lv.original_text)
        return AuditedViolation(
            pattern_id=lv.pattern_id,
            type=pattern.type,
            severity=lv.adjusted_severity or lv.severity,
            original_severity=lv.severity,
            original_text=lv.original_text,
            confidence=lv.confidence,
            source="gemini",
            category=lv.category or pattern.category,
            context=lv.context,
            section_type=lv.section_type,
            reasoning=lv.reasoning,
            from_image=lv.from_image,
            disclaimer_present=lv.disclaimer_present,
            position=positions[0] if positions else None,
        )

    def _grade(
        self, final: Sequence[AuditedViolation], snapshot: PatternSnapshot, text: str
    ) -> GradeResult:
        return grade_violations(
            final, self.scoring,
            section_weight=snapshot.section_weight,
            text_length=len(text),
        )
