"""
Core data model shared by every pipeline stage.

Enums are closed vocabularies; consumers look them up in tables keyed
by every member rather than comparing raw strings. Records produced by
the matcher and filter are frozen so a pattern snapshot can be shared
across concurrent analyses.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from medcheck.config import parse_mapping, settings
from medcheck.errors import InvalidConfidenceError


# ============================================================
# ENUMS
# ============================================================

class ViolationType(str, Enum):
    PROHIBITED_EXPRESSION = "prohibited_expression"
    EXAGGERATION = "exaggeration"
    FALSE_CLAIM = "false_claim"
    GUARANTEE = "guarantee"
    COMPARISON = "comparison"
    BEFORE_AFTER = "before_after"
    TESTIMONIAL = "testimonial"
    PRICE_INDUCEMENT = "price_inducement"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str) -> "ViolationType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return CATEGORY_TYPES.get(str(value).strip(), cls.OTHER)


# Korean category labels used in pattern files and model output
CATEGORY_TYPES: dict[str, ViolationType] = {
    "치료효과보장": ViolationType.GUARANTEE,
    "부작용부정": ViolationType.FALSE_CLAIM,
    "최상급표현": ViolationType.EXAGGERATION,
    "비교광고": ViolationType.COMPARISON,
    "환자유인": ViolationType.PRICE_INDUCEMENT,
    "전후사진": ViolationType.BEFORE_AFTER,
    "체험기": ViolationType.TESTIMONIAL,
    "금지어": ViolationType.PROHIBITED_EXPRESSION,
}


class Severity(str, Enum):
    """Canonical ordered severity scale: critical > major > minor > low."""
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def downgrade(self) -> "Severity":
        """One band down. LOW is the floor."""
        return _SEVERITY_DOWNGRADE[self]

    @classmethod
    def parse(cls, value: str, aliases: Optional[dict[str, str]] = None) -> "Severity":
        """Normalize any deployment vocabulary onto the canonical scale."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        mapping = DEFAULT_SEVERITY_ALIASES if aliases is None else aliases
        key = mapping.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown severity: {value!r}") from None


_SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.MAJOR: 3,
    Severity.MINOR: 2,
    Severity.LOW: 1,
}

_SEVERITY_DOWNGRADE = {
    Severity.CRITICAL: Severity.MAJOR,
    Severity.MAJOR: Severity.MINOR,
    Severity.MINOR: Severity.LOW,
    Severity.LOW: Severity.LOW,
}

DEFAULT_SEVERITY_ALIASES = parse_mapping(settings.SEVERITY_ALIASES)


class ViolationStatus(str, Enum):
    VIOLATION = "violation"
    LIKELY = "likely"
    POSSIBLE = "possible"
    CLEAN = "clean"  # document-level only

    @classmethod
    def from_confidence(cls, confidence: float) -> "ViolationStatus":
        if confidence >= 0.85:
            return cls.VIOLATION
        if confidence >= 0.7:
            return cls.LIKELY
        return cls.POSSIBLE


class ContextType(str, Enum):
    NEGATION = "negation"
    QUESTION = "question"
    QUOTATION = "quotation"
    DISCLAIMER = "disclaimer"
    COMPARISON = "comparison"
    NORMAL = "normal"


# Contexts in which a confidence modifier may apply instead of full confidence
MODIFIABLE_CONTEXTS = frozenset({
    ContextType.NEGATION,
    ContextType.QUESTION,
    ContextType.QUOTATION,
    ContextType.DISCLAIMER,
})


class ExceptionType(str, Enum):
    KEYWORD = "keyword"
    CONTEXT = "context"
    REGEX = "regex"
    DEPARTMENT = "department"
    COMPOSITE = "composite"


class CompoundOperator(str, Enum):
    """How a compound pattern combines its conditions."""
    AND = "AND"
    OR = "OR"
    AND_NOT = "AND_NOT"
    SEQUENCE = "SEQUENCE"


class SectionType(str, Enum):
    TREATMENT = "treatment"
    EVENT = "event"
    FAQ = "faq"
    REVIEW = "review"
    DOCTOR = "doctor"
    DEFAULT = "default"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SectionType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "default").strip().lower())
        except ValueError:
            return cls.DEFAULT


# ============================================================
# PATTERNS & EXCEPTIONS
# ============================================================

@dataclass(frozen=True)
class LegalBasis:
    law: str
    article: str
    description: str = ""
    reference_file: Optional[str] = None

    def to_dict(self) -> dict:
        d = {"law": self.law, "article": self.article, "description": self.description}
        if self.reference_file:
            d["referenceFile"] = self.reference_file
        return d


@dataclass(frozen=True)
class Condition:
    """One clause of a compound pattern: any of its regexes satisfies it."""
    id: str
    patterns: tuple[str, ...]
    description: str = ""
    required: bool = True
    exclusion: bool = False
    max_distance: Optional[int] = None  # SEQUENCE: chars after the previous clause


@dataclass(frozen=True)
class Pattern:
    """
    A detection rule.

    Exactly one of ``regex``, ``keywords`` or ``conditions`` drives
    matching. ``exclusions`` are document-level regexes: when any of them
    occurs anywhere in the text, the pattern reports nothing.
    """
    id: str
    name: str
    type: ViolationType
    default_severity: Severity
    regex: Optional[str] = None
    keywords: tuple[str, ...] = ()
    legal_basis: tuple[LegalBasis, ...] = ()
    enabled: bool = True
    category: str = ""
    description: str = ""
    example: str = ""
    suggestion: str = ""
    absolute: bool = False      # never downgraded for a nearby disclaimer
    department: Optional[str] = None
    exclusions: tuple[str, ...] = ()
    operator: Optional[CompoundOperator] = None
    conditions: tuple[Condition, ...] = ()
    min_conditions: int = 1     # OR only

    def __post_init__(self):
        if not self.id:
            raise ValueError("Pattern id must not be empty")
        if self.conditions:
            if self.operator is None:
                raise ValueError(f"Compound pattern {self.id} needs an operator")
        elif not self.regex and not self.keywords:
            raise ValueError(f"Pattern {self.id} needs a regex or at least one keyword")

    @property
    def is_compound(self) -> bool:
        return bool(self.conditions)

    @property
    def is_keyword(self) -> bool:
        return not self.regex and not self.conditions

    def _severity_confidence(self) -> float:
        confidence = 0.7
        if self.default_severity is Severity.CRITICAL:
            confidence += 0.15
        elif self.default_severity is Severity.MAJOR:
            confidence += 0.1
        return confidence

    def base_confidence(self, matched_text: str) -> float:
        """Starting confidence for a raw match of this pattern."""
        confidence = self._severity_confidence()
        if len(matched_text) > 10:
            confidence += 0.05
        if len(matched_text) > 20:
            confidence += 0.05
        return round(min(confidence, 0.95), 4)

    def compound_confidence(self, met: int) -> float:
        """Starting confidence for a compound hit with ``met`` clauses satisfied."""
        counted = [c for c in self.conditions if not c.exclusion]
        ratio = met / len(counted) if counted else 0.0
        return round(min(self._severity_confidence() + ratio * 0.1, 0.95), 4)


@dataclass(frozen=True)
class ExceptionRule:
    """A suppression condition owned by exactly one pattern."""
    id: str
    pattern_id: str
    exception_type: ExceptionType
    value: str
    is_active: bool = True
    hit_count: int = 0
    source_fp_ids: tuple[str, ...] = ()
    created_reason: str = ""
    created_by: str = "system"


# ============================================================
# MATCHES & VIOLATIONS
# ============================================================

@dataclass(frozen=True)
class MatchCandidate:
    """A raw hit from the matcher. Never persisted."""
    pattern_id: str
    matched_text: str
    start: int
    end: int
    context: str                # surrounding window
    sentence: str               # enclosing sentence used for classification
    context_type: ContextType
    confidence: float


@dataclass(frozen=True)
class ViolationResult:
    type: ViolationType
    status: ViolationStatus
    severity: Severity
    matched_text: str
    position: int
    description: str
    legal_basis: tuple[LegalBasis, ...]
    confidence: float
    pattern_id: str
    context_type: ContextType = ContextType.NORMAL
    section_type: SectionType = SectionType.DEFAULT
    suggestion: str = ""
    source: str = "rule_engine"

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise InvalidConfidenceError(self.confidence, self.pattern_id)
        if self.status is ViolationStatus.CLEAN:
            raise ValueError("A violation record cannot carry status 'clean'")

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "status": self.status.value,
            "severity": self.severity.value,
            "matchedText": self.matched_text,
            "position": self.position,
            "description": self.description,
            "legalBasis": [lb.to_dict() for lb in self.legal_basis],
            "confidence": self.confidence,
            "patternId": self.pattern_id,
            "contextType": self.context_type.value,
            "sectionType": self.section_type.value,
            "suggestion": self.suggestion,
            "source": self.source,
        }


def document_status(violations: list[ViolationResult]) -> ViolationStatus:
    """Worst status across a document; CLEAN only when there is nothing."""
    if not violations:
        return ViolationStatus.CLEAN
    order = (ViolationStatus.VIOLATION, ViolationStatus.LIKELY, ViolationStatus.POSSIBLE)
    present = {v.status for v in violations}
    return next(s for s in order if s in present)


# ============================================================
# ENGINE INPUT / OUTPUT
# ============================================================

@dataclass
class AdMetadata:
    """Recognized metadata keys plus an open bag for everything else."""
    hospital_name: Optional[str] = None
    department: Optional[str] = None
    ad_type: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KEYS = {
        "hospitalName": "hospital_name", "hospital_name": "hospital_name",
        "department": "department",
        "adType": "ad_type", "ad_type": "ad_type",
    }

    @classmethod
    def from_dict(cls, raw: Optional[dict[str, Any]]) -> "AdMetadata":
        known: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in (raw or {}).items():
            target = cls._KEYS.get(key)
            if target:
                known[target] = None if value is None else str(value)
            else:
                extra[key] = value
        return cls(extra=extra, **known)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = dict(self.extra)
        if self.hospital_name is not None:
            d["hospitalName"] = self.hospital_name
        if self.department is not None:
            d["department"] = self.department
        if self.ad_type is not None:
            d["adType"] = self.ad_type
        return d


@dataclass
class ModuleInput:
    content: str
    source: str = ""
    images: list[str] = field(default_factory=list)
    collected_at: Optional[datetime] = None
    metadata: AdMetadata = field(default_factory=AdMetadata)
    document_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ModuleInput":
        collected = raw.get("collectedAt") or raw.get("collected_at")
        if isinstance(collected, str):
            collected = datetime.fromisoformat(collected)
        doc = cls(
            content=str(raw.get("content", "")),
            source=str(raw.get("source", "")),
            images=list(raw.get("images") or []),
            collected_at=collected,
            metadata=AdMetadata.from_dict(raw.get("metadata")),
        )
        if raw.get("id"):
            doc.document_id = str(raw["id"])
        return doc


@dataclass
class ModuleOutput:
    violations: list[ViolationResult]
    summary: str
    confidence: float
    processing_time_ms: float
    analyzed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    prices: Optional[list[dict]] = None

    def to_dict(self) -> dict:
        d = {
            "violations": [v.to_dict() for v in self.violations],
            "summary": self.summary,
            "confidence": self.confidence,
            "processingTime": self.processing_time_ms,
            "analyzedAt": self.analyzed_at.isoformat(),
        }
        if self.prices is not None:
            d["prices"] = self.prices
        return d
