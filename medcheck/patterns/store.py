"""
Pattern Store — versioned pattern library and immutable snapshots.

The store is seeded from a versioned JSON file. Matching passes never
read the store directly: they take a PatternSnapshot, a frozen view of
patterns plus exception rules at one point in time. Edits (enabling or
disabling a pattern, new exception rules) show up only in the next
snapshot, never in a scan already running.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

from medcheck.config import settings
from medcheck.errors import NotFoundError, UnknownPatternIdError
from medcheck.exception_filter import ConfidenceModifierTable
from medcheck.models import (
    CompoundOperator,
    Condition,
    ExceptionRule,
    LegalBasis,
    Pattern,
    SectionType,
    Severity,
    ViolationType,
)
from medcheck.patterns.exceptions import ExceptionRuleStore

logger = logging.getLogger(__name__)


# ============================================================
# AUXILIARY RULE DATA
# ============================================================

@dataclass(frozen=True)
class DepartmentRule:
    """
    A department-specific rule. Rules that carry regexes are also
    evaluated by the rule engine as a department-scoped pattern;
    ``exceptions`` lift the rule for the whole document.
    """
    id: str
    department: str
    name: str
    description: str
    severity: Severity
    legal_basis: str
    type: ViolationType = ViolationType.OTHER
    patterns: tuple[str, ...] = ()
    exceptions: tuple[str, ...] = ()
    suggestion: str = ""

    def to_pattern(self) -> Pattern:
        return Pattern(
            id=self.id,
            name=self.name,
            type=self.type,
            default_severity=self.severity,
            regex="|".join(f"(?:{p})" for p in self.patterns),
            legal_basis=_legal_basis_from_text(self.legal_basis),
            category="department",
            description=self.description,
            suggestion=self.suggestion,
            department=self.department,
            exclusions=self.exceptions,
        )


@dataclass(frozen=True)
class ContextExceptionNote:
    """A described context exception, used to brief the external model."""
    type: str
    description: str
    examples: tuple[str, ...] = ()


@dataclass(frozen=True)
class SectionWeight:
    type: SectionType
    weight: float
    label: str = ""


DEFAULT_SECTION_WEIGHTS = (
    SectionWeight(SectionType.TREATMENT, 1.2),
    SectionWeight(SectionType.EVENT, 0.8),
    SectionWeight(SectionType.FAQ, 0.6),
    SectionWeight(SectionType.REVIEW, 0.7),
    SectionWeight(SectionType.DOCTOR, 1.0),
    SectionWeight(SectionType.DEFAULT, 1.0),
)


# ============================================================
# SNAPSHOT
# ============================================================

@dataclass(frozen=True)
class PatternSnapshot:
    """Everything one matching pass reads, frozen at load time."""
    version: str
    patterns: tuple[Pattern, ...]
    exceptions: tuple[ExceptionRule, ...] = ()
    negative_list: tuple[str, ...] = ()
    disclaimers: tuple[str, ...] = ()
    department_rules: tuple[DepartmentRule, ...] = ()
    context_exceptions: tuple[ContextExceptionNote, ...] = ()
    section_weights: tuple[SectionWeight, ...] = DEFAULT_SECTION_WEIGHTS
    modifiers: ConfidenceModifierTable = field(default_factory=ConfidenceModifierTable)
    _index: Optional[Mapping[str, Pattern]] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        index = {p.id: p for p in self.patterns}
        if len(index) != len(self.patterns):
            raise ValueError("Duplicate pattern ids in snapshot")
        object.__setattr__(self, "_index", MappingProxyType(index))

    @property
    def pattern_index(self) -> Mapping[str, Pattern]:
        return self._index

    def get_pattern(self, pattern_id: str) -> Pattern:
        try:
            return self._index[pattern_id]
        except KeyError:
            raise UnknownPatternIdError(pattern_id) from None

    def enabled_patterns(self, department: Optional[str] = None) -> list[Pattern]:
        """Enabled patterns; department-specific ones only for that department."""
        return [
            p for p in self.patterns
            if p.enabled and (
                p.department is None or department is None or p.department == department
            )
        ]

    def enabled_ids(self) -> frozenset[str]:
        return frozenset(p.id for p in self.patterns if p.enabled)

    def active_exceptions(self) -> list[ExceptionRule]:
        return [r for r in self.exceptions if r.is_active]

    def section_weight(self, section: SectionType) -> float:
        for sw in self.section_weights:
            if sw.type is section:
                return sw.weight
        return 1.0


# ============================================================
# PARSING
# ============================================================

def _get(raw: dict, *keys: str, default: Any = None) -> Any:
    for k in keys:
        if k in raw:
            return raw[k]
    return default


def parse_pattern(raw: dict, aliases: Optional[dict[str, str]] = None) -> Pattern:
    """Build a Pattern from a pattern-file record (camelCase or snake_case)."""
    legal = tuple(
        LegalBasis(
            law=lb.get("law", ""),
            article=lb.get("article", ""),
            description=lb.get("description", ""),
            reference_file=_get(lb, "referenceFile", "reference_file"),
        )
        for lb in _get(raw, "legalBasis", "legal_basis", default=[]) or []
    )
    category = raw.get("category", "")
    type_value = raw.get("type") or category or "other"
    return Pattern(
        id=str(raw["id"]),
        name=raw.get("name", raw["id"]),
        type=ViolationType.parse(type_value),
        default_severity=Severity.parse(
            _get(raw, "defaultSeverity", "default_severity", "severity"), aliases
        ),
        regex=raw.get("regex") or None,
        keywords=tuple(raw.get("keywords") or ()),
        legal_basis=legal,
        enabled=bool(raw.get("enabled", True)),
        category=category,
        description=raw.get("description", ""),
        example=raw.get("example", ""),
        suggestion=raw.get("suggestion", ""),
        absolute=bool(raw.get("absolute", False)),
        department=raw.get("department"),
    )


def _legal_basis_from_text(value: Any) -> tuple[LegalBasis, ...]:
    if isinstance(value, list):
        return tuple(
            LegalBasis(law=lb.get("law", ""), article=lb.get("article", ""),
                       description=lb.get("description", ""))
            for lb in value
        )
    return (LegalBasis(law=str(value), article=""),) if value else ()


def parse_compound(raw: dict, aliases: Optional[dict[str, str]] = None) -> Pattern:
    """Build a compound Pattern from a ``compoundRules`` record."""
    conditions = tuple(
        Condition(
            id=str(c["id"]),
            patterns=tuple(c.get("patterns") or ()),
            description=c.get("description", ""),
            required=bool(c.get("required", True)),
            exclusion=bool(_get(c, "isExclusion", "exclusion", default=False)),
            max_distance=_get(c, "maxDistance", "max_distance"),
        )
        for c in raw.get("conditions", [])
    )
    return Pattern(
        id=str(raw["id"]),
        name=raw.get("name", raw["id"]),
        type=ViolationType.parse(raw.get("type") or "other"),
        default_severity=Severity.parse(raw.get("severity", "minor"), aliases),
        legal_basis=_legal_basis_from_text(_get(raw, "legalBasis", "legal_basis")),
        enabled=bool(raw.get("enabled", True)),
        category=raw.get("category", "compound"),
        description=raw.get("description", ""),
        suggestion=raw.get("suggestion", ""),
        department=raw.get("department"),
        operator=CompoundOperator(str(raw["operator"]).upper()),
        conditions=conditions,
        min_conditions=int(_get(raw, "minConditionsMet", "min_conditions", default=1)),
    )


class PatternStore:
    """
    Holds the current pattern library.

    Mutation is limited to ``set_enabled`` and ``replace_patterns``,
    called by the governed learning pipeline. The matcher only ever
    sees snapshots.
    """

    def __init__(
        self,
        data: dict,
        exception_store: Optional[ExceptionRuleStore] = None,
        severity_aliases: Optional[dict[str, str]] = None,
    ):
        self._lock = threading.Lock()
        self._aliases = severity_aliases
        self.exception_store = exception_store
        self._load(data)

    @classmethod
    def from_file(
        cls,
        path: Optional[str] = None,
        exception_store: Optional[ExceptionRuleStore] = None,
        severity_aliases: Optional[dict[str, str]] = None,
    ) -> "PatternStore":
        path = path or settings.PATTERNS_PATH
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        store = cls(data, exception_store=exception_store, severity_aliases=severity_aliases)
        logger.info(
            "Loaded %d patterns from %s", len(store._patterns), path,
            extra={"snapshot_version": store.version},
        )
        return store

    def _load(self, data: dict) -> None:
        department_rules = tuple(
            DepartmentRule(
                id=r["id"],
                department=r["department"],
                name=r.get("name", ""),
                description=r.get("description", ""),
                severity=Severity.parse(r.get("severity", "minor"), self._aliases),
                legal_basis=_get(r, "legalBasis", "legal_basis", default=""),
                type=ViolationType.parse(r.get("type") or "other"),
                patterns=tuple(r.get("patterns") or ()),
                exceptions=tuple(r.get("exceptions") or ()),
                suggestion=r.get("suggestion", ""),
            )
            for r in _get(data, "departmentRules", "department_rules", default=[])
        )

        loaded = [parse_pattern(raw, self._aliases) for raw in data.get("patterns", [])]
        loaded += [r.to_pattern() for r in department_rules if r.patterns]
        loaded += [
            parse_compound(raw, self._aliases)
            for raw in _get(data, "compoundRules", "compound_rules", default=[])
        ]
        patterns: dict[str, Pattern] = {}
        for pattern in loaded:
            if pattern.id in patterns:
                raise ValueError(f"Duplicate pattern id in pattern file: {pattern.id}")
            patterns[pattern.id] = pattern

        self.version = str(data.get("version", "0"))
        self._patterns = patterns
        self._negative_list = tuple(_get(data, "negativeList", "negative_list", default=[]))
        self._disclaimers = tuple(data.get("disclaimers", []))
        self._department_rules = department_rules
        self._context_exceptions = tuple(
            ContextExceptionNote(
                type=r["type"],
                description=r.get("description", ""),
                examples=tuple(r.get("examples", [])),
            )
            for r in _get(data, "contextExceptions", "context_exceptions", default=[])
        )
        raw_weights = _get(data, "sectionWeights", "section_weights")
        self._section_weights = (
            tuple(
                SectionWeight(SectionType.parse(r["type"]), float(r["weight"]), r.get("label", ""))
                for r in raw_weights
            )
            if raw_weights else DEFAULT_SECTION_WEIGHTS
        )
        self._modifiers = ConfidenceModifierTable.from_records(
            _get(data, "confidenceModifiers", "confidence_modifiers", default=[])
        )

    # --- Reads ---

    def list_patterns(self) -> list[Pattern]:
        with self._lock:
            return list(self._patterns.values())

    def get_pattern(self, pattern_id: str) -> Pattern:
        with self._lock:
            try:
                return self._patterns[pattern_id]
            except KeyError:
                raise NotFoundError(f"Pattern {pattern_id} not found") from None

    def snapshot(self) -> PatternSnapshot:
        """Freeze the current patterns and exception rules for one pass."""
        exceptions = (
            tuple(self.exception_store.list_rules())
            if self.exception_store is not None else ()
        )
        with self._lock:
            return PatternSnapshot(
                version=self.version,
                patterns=tuple(self._patterns.values()),
                exceptions=exceptions,
                negative_list=self._negative_list,
                disclaimers=self._disclaimers,
                department_rules=self._department_rules,
                context_exceptions=self._context_exceptions,
                section_weights=self._section_weights,
                modifiers=self._modifiers,
            )

    # --- Governed mutation ---

    def set_enabled(self, pattern_id: str, enabled: bool) -> Pattern:
        with self._lock:
            if pattern_id not in self._patterns:
                raise NotFoundError(f"Pattern {pattern_id} not found")
            updated = replace(self._patterns[pattern_id], enabled=enabled)
            self._patterns[pattern_id] = updated
        logger.info(
            "Pattern %s", "enabled" if enabled else "disabled",
            extra={"pattern_id": pattern_id},
        )
        return updated

    def replace_patterns(self, data: dict) -> None:
        """Load a new version of the pattern file in place."""
        with self._lock:
            self._load(data)
        logger.info("Pattern library replaced", extra={"snapshot_version": self.version})
