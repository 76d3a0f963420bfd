"""
LLM Output Schema — the structured answer expected from the model.

The model is untrusted input. Anything that does not validate here is
rejected as a whole (LLMMalformedResponseError) so a half-understood
answer is never merged with rule-engine findings.

Confidence is deliberately not range-checked here: an out-of-range value
invalidates only that one finding, which the auditor removes with an
INVALID_CONFIDENCE issue.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from medcheck.errors import LLMMalformedResponseError
from medcheck.models import SectionType, Severity


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ============================================================
# SECTIONS & VIOLATIONS
# ============================================================

class LLMSection(_Lenient):
    type: SectionType = SectionType.DEFAULT
    start_index: int = Field(0, alias="startIndex", ge=0)
    end_index: int = Field(0, alias="endIndex", ge=0)

    @field_validator("type", mode="before")
    @classmethod
    def _section(cls, v: Any) -> SectionType:
        return SectionType.parse(v)


class LLMViolation(_Lenient):
    pattern_id: str = Field(..., alias="patternId", min_length=1)
    category: str = ""
    severity: Severity
    original_text: str = Field(..., alias="originalText")
    context: str = ""
    section_type: SectionType = Field(SectionType.DEFAULT, alias="sectionType")
    confidence: float = 0.5
    reasoning: str = ""
    from_image: bool = Field(False, alias="fromImage")
    disclaimer_present: bool = Field(False, alias="disclaimerPresent")
    adjusted_severity: Optional[Severity] = Field(None, alias="adjustedSeverity")

    @field_validator("severity", "adjusted_severity", mode="before")
    @classmethod
    def _severity(cls, v: Any) -> Optional[Severity]:
        if v is None or v == "":
            return None
        return Severity.parse(v)

    @field_validator("section_type", mode="before")
    @classmethod
    def _section(cls, v: Any) -> SectionType:
        return SectionType.parse(v)


# ============================================================
# GRAY ZONES & MANDATORY ITEMS
# ============================================================

class GrayZone(_Lenient):
    evasion_type: str = ""
    evasion_category: str = "wording"
    evasion_description: str = ""
    legal_target: str = ""
    target_violation_type: str = ""
    evidence: str = ""
    confidence: float = 0.5

    @field_validator("confidence")
    @classmethod
    def _clamp(cls, v: float) -> float:
        return min(max(v, 0.0), 1.0)

    @field_validator("evasion_category", mode="before")
    @classmethod
    def _category(cls, v: Any) -> str:
        v = str(v or "wording").strip().lower()
        return v if v in ("structural", "wording", "visual", "platform") else "wording"


class MandatoryItem(_Lenient):
    found: bool = False
    value: Optional[str] = None


class PriceDisclosure(MandatoryItem):
    applicable: bool = False


class MandatoryItems(_Lenient):
    hospital_name: MandatoryItem = Field(default_factory=MandatoryItem)
    address: MandatoryItem = Field(default_factory=MandatoryItem)
    phone: MandatoryItem = Field(default_factory=MandatoryItem)
    department: MandatoryItem = Field(default_factory=MandatoryItem)
    doctor_info: MandatoryItem = Field(default_factory=MandatoryItem)
    price_disclosure: PriceDisclosure = Field(default_factory=PriceDisclosure)

    def missing(self) -> list[str]:
        required = ("hospital_name", "address", "phone", "department", "doctor_info")
        missing = [name for name in required if not getattr(self, name).found]
        if self.price_disclosure.applicable and not self.price_disclosure.found:
            missing.append("price_disclosure")
        return missing


class LLMSummary(_Lenient):
    total_violations: int = 0
    by_severity: dict[str, int] = Field(default_factory=dict)
    gray_zone_count: int = 0
    mandatory_missing: int = 0
    overall_risk: str = ""


# ============================================================
# TOP LEVEL
# ============================================================

class GeminiViolationOutput(_Lenient):
    sections: list[LLMSection] = Field(default_factory=list)
    violations: list[LLMViolation]
    gray_zones: list[GrayZone] = Field(default_factory=list)
    mandatory_items: Optional[MandatoryItems] = None
    summary: Optional[LLMSummary] = None
    checklist_verification: dict[str, bool] = Field(default_factory=dict)


def parse_llm_output(raw: Any) -> GeminiViolationOutput:
    """Validate a decoded model answer. Raises LLMMalformedResponseError."""
    if not isinstance(raw, dict):
        raise LLMMalformedResponseError(
            f"Expected a JSON object, got {type(raw).__name__}"
        )
    try:
        return GeminiViolationOutput.model_validate(raw)
    except ValidationError as e:
        raise LLMMalformedResponseError(
            f"LLM output failed validation ({e.error_count()} errors): {e}"
        ) from e
