"""
Clean Score Calculator

Computes a 0-100 clean score and a letter grade from a document's
surviving violations.

Score = baseline minus, for each violation,
    severity weight × section weight × confidence
clamped to [0, baseline].

Severity weights and grade bands are configuration. Both are validated
when the ScoringConfig is built: weights must not increase as severity
decreases, and grade bands must be contiguous and reach down to 0.
Since every penalty is non-negative, adding a violation can never
raise the score, so grades are monotonic in the violation set.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional, Protocol, Sequence

from medcheck.config import parse_mapping, settings
from medcheck.models import SectionType, Severity


class Scorable(Protocol):
    severity: Severity
    confidence: float
    section_type: SectionType


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass(frozen=True)
class GradeBand:
    grade: str
    min_score: float


class ScoringConfig:
    """Validated severity weights and grade bands."""

    def __init__(
        self,
        severity_weights: Optional[Mapping[Severity | str, float]] = None,
        grade_bands: Optional[Sequence[tuple[str, float]]] = None,
        baseline: float = 100.0,
    ):
        if baseline <= 0:
            raise ValueError("Baseline must be positive")
        self.baseline = baseline
        self.severity_weights = self._validate_weights(
            severity_weights
            if severity_weights is not None
            else {k: float(v) for k, v in parse_mapping(settings.SEVERITY_WEIGHTS).items()}
        )
        self.bands = self._validate_bands(
            grade_bands
            if grade_bands is not None
            else [(k.upper(), float(v)) for k, v in parse_mapping(settings.GRADE_BANDS).items()]
        )

    @staticmethod
    def _validate_weights(raw: Mapping[Severity | str, float]) -> dict[Severity, float]:
        weights = {Severity.parse(k): float(v) for k, v in raw.items()}
        missing = [s.value for s in Severity if s not in weights]
        if missing:
            raise ValueError(f"Severity weights missing for: {missing}")
        ordered = sorted(Severity, key=lambda s: s.rank, reverse=True)
        for sev in ordered:
            if weights[sev] < 0:
                raise ValueError(f"Severity weight for {sev.value} is negative")
        for higher, lower in zip(ordered, ordered[1:]):
            if weights[higher] < weights[lower]:
                raise ValueError(
                    f"Severity weights must be monotonic: {higher.value}="
                    f"{weights[higher]} < {lower.value}={weights[lower]}"
                )
        return weights

    def _validate_bands(self, raw: Sequence[tuple[str, float]]) -> tuple[GradeBand, ...]:
        bands = tuple(GradeBand(str(g), float(m)) for g, m in raw)
        if not bands:
            raise ValueError("At least one grade band is required")
        grades = [b.grade for b in bands]
        if len(set(grades)) != len(grades):
            raise ValueError(f"Duplicate grade letters: {grades}")
        for upper, lower in zip(bands, bands[1:]):
            if not upper.min_score > lower.min_score:
                raise ValueError(
                    "Grade bands must be listed best first with strictly "
                    f"decreasing thresholds ({upper.grade}={upper.min_score}, "
                    f"{lower.grade}={lower.min_score})"
                )
        if bands[0].min_score > self.baseline:
            raise ValueError("Top grade threshold exceeds the baseline; it can never be reached")
        if bands[-1].min_score != 0:
            raise ValueError("Lowest grade band must start at 0 so every score has a grade")
        return bands

    @classmethod
    def from_settings(cls) -> "ScoringConfig":
        return cls()

    def grade_for(self, score: float) -> str:
        for band in self.bands:
            if score >= band.min_score:
                return band.grade
        return self.bands[-1].grade

    def grade_rank(self, grade: str) -> int:
        """Higher is better. Unknown letters rank below every band."""
        grades = [b.grade for b in self.bands]
        if grade not in grades:
            return -1
        return len(grades) - grades.index(grade)

    def weight(self, severity: Severity) -> float:
        return self.severity_weights[severity]


# ============================================================
# SCORING
# ============================================================

@dataclass
class GradeResult:
    clean_score: int
    grade: str
    confidence: float
    violation_count: int
    breakdown: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "cleanScore": self.clean_score,
            "grade": self.grade,
            "confidence": self.confidence,
            "violationCount": self.violation_count,
            "breakdown": self.breakdown,
        }


def calculate_clean_score(
    violations: Iterable[Scorable],
    config: ScoringConfig,
    section_weight: Optional[Callable[[SectionType], float]] = None,
) -> tuple[int, dict]:
    """
    Calculate the clean score.

    Returns:
        (score, breakdown) where breakdown lists every penalty applied.
    """
    section_weight = section_weight or (lambda _s: 1.0)
    total = 0.0
    breakdown: dict = {
        "starting_score": config.baseline,
        "penalties": [],
        "by_severity": {s.value: 0 for s in Severity},
    }

    for v in violations:
        sw = max(section_weight(v.section_type), 0.0)
        pen = config.weight(v.severity) * sw * v.confidence
        total += pen
        breakdown["by_severity"][v.severity.value] += 1
        breakdown["penalties"].append({
            "pattern": getattr(v, "pattern_id", None),
            "severity": v.severity.value,
            "section_weight": sw,
            "confidence": v.confidence,
            "penalty": -round(pen, 2),
        })

    score = min(max(config.baseline - total, 0.0), config.baseline)
    breakdown["total_penalty"] = -round(total, 2)
    breakdown["final_score"] = round(score)
    return round(score), breakdown


def aggregate_confidence(
    violations: Sequence[Scorable],
    config: ScoringConfig,
    text_length: int = 0,
) -> float:
    """
    Overall confidence: severity-weighted mean of violation confidences.

    With nothing found, confidence depends on how much text there was
    to look at.
    """
    if not violations:
        return 0.9 if text_length > 100 else 0.6
    weights = [config.weight(v.severity) for v in violations]
    total_weight = sum(weights)
    if total_weight <= 0:
        value = sum(v.confidence for v in violations) / len(violations)
    else:
        value = sum(w * v.confidence for w, v in zip(weights, violations)) / total_weight
    return round(min(max(value, 0.0), 1.0), 4)


def grade_violations(
    violations: Sequence[Scorable],
    config: ScoringConfig,
    section_weight: Optional[Callable[[SectionType], float]] = None,
    text_length: int = 0,
) -> GradeResult:
    score, breakdown = calculate_clean_score(violations, config, section_weight)
    return GradeResult(
        clean_score=score,
        grade=config.grade_for(score),
        confidence=aggregate_confidence(violations, config, text_length),
        violation_count=len(violations),
        breakdown=breakdown,
    )
