"""
Model Tests — enums, severity normalization and record invariants.
"""

from __future__ import annotations

import pytest

from conftest import guarantee_pattern, make_violation

from medcheck.errors import InvalidConfidenceError
from medcheck.models import (
    AdMetadata,
    ModuleInput,
    SectionType,
    Severity,
    ViolationStatus,
    ViolationType,
    document_status,
)


# ============================================================
# SEVERITY
# ============================================================

class TestSeverity:

    def test_canonical_order(self):
        ranks = [s.rank for s in (Severity.CRITICAL, Severity.MAJOR, Severity.MINOR, Severity.LOW)]
        assert ranks == sorted(ranks, reverse=True)

    @pytest.mark.parametrize("raw,expected", [
        ("critical", Severity.CRITICAL),
        ("HIGH", Severity.MAJOR),
        ("medium", Severity.MINOR),
        ("moderate", Severity.MINOR),
        (" low ", Severity.LOW),
    ])
    def test_aliases(self, raw, expected):
        assert Severity.parse(raw) is expected

    def test_custom_aliases_replace_defaults(self):
        assert Severity.parse("severe", {"severe": "critical"}) is Severity.CRITICAL
        with pytest.raises(ValueError):
            Severity.parse("high", {})

    def test_unknown_severity_raises(self):
        with pytest.raises(ValueError):
            Severity.parse("catastrophic")

    def test_downgrade_one_band(self):
        assert Severity.CRITICAL.downgrade() is Severity.MAJOR
        assert Severity.MAJOR.downgrade() is Severity.MINOR
        assert Severity.MINOR.downgrade() is Severity.LOW

    def test_downgrade_floor(self):
        assert Severity.LOW.downgrade() is Severity.LOW


# ============================================================
# STATUS
# ============================================================

class TestViolationStatus:

    @pytest.mark.parametrize("confidence,expected", [
        (0.95, ViolationStatus.VIOLATION),
        (0.85, ViolationStatus.VIOLATION),
        (0.84, ViolationStatus.LIKELY),
        (0.7, ViolationStatus.LIKELY),
        (0.3, ViolationStatus.POSSIBLE),
    ])
    def test_from_confidence(self, confidence, expected):
        assert ViolationStatus.from_confidence(confidence) is expected

    def test_document_status_clean_only_when_empty(self):
        assert document_status([]) is ViolationStatus.CLEAN
        assert document_status([make_violation(confidence=0.5)]) is ViolationStatus.POSSIBLE

    def test_document_status_worst_wins(self):
        vs = [make_violation(confidence=0.5), make_violation(confidence=0.9)]
        assert document_status(vs) is ViolationStatus.VIOLATION


# ============================================================
# RECORDS
# ============================================================

class TestViolationResult:

    def test_confidence_above_one_rejected(self):
        with pytest.raises(InvalidConfidenceError):
            make_violation(confidence=1.2)

    def test_negative_confidence_rejected(self):
        with pytest.raises(InvalidConfidenceError):
            make_violation(confidence=-0.1)

    def test_clean_status_rejected(self):
        v = make_violation()
        with pytest.raises(ValueError):
            type(v)(**{**v.__dict__, "status": ViolationStatus.CLEAN})

    def test_to_dict_keys(self):
        d = make_violation().to_dict()
        assert d["patternId"] == "G-001"
        assert d["matchedText"] == "보장"
        assert d["sectionType"] == "default"
        assert d["source"] == "rule_engine"


class TestPattern:

    def test_requires_regex_or_keywords(self):
        with pytest.raises(ValueError):
            guarantee_pattern(keywords=())

    def test_base_confidence_by_severity(self):
        assert guarantee_pattern().base_confidence("보장") == 0.8
        assert guarantee_pattern(default_severity=Severity.CRITICAL).base_confidence("x") == 0.85
        assert guarantee_pattern(default_severity=Severity.LOW).base_confidence("x") == 0.7

    def test_base_confidence_length_bonus_capped(self):
        p = guarantee_pattern(default_severity=Severity.CRITICAL)
        assert p.base_confidence("a" * 11) == 0.9
        assert p.base_confidence("a" * 25) == 0.95

    def test_violation_type_from_korean_category(self):
        assert ViolationType.parse("치료효과보장") is ViolationType.GUARANTEE
        assert ViolationType.parse("unknown-thing") is ViolationType.OTHER


class TestInput:

    def test_metadata_known_and_extra_keys(self):
        meta = AdMetadata.from_dict({"hospitalName": "A의원", "department": "치과", "campaign": 7})
        assert meta.hospital_name == "A의원"
        assert meta.department == "치과"
        assert meta.extra == {"campaign": 7}
        assert meta.to_dict()["hospitalName"] == "A의원"

    def test_module_input_from_dict(self):
        doc = ModuleInput.from_dict({
            "id": "doc-1",
            "content": "본문",
            "collectedAt": "2025-01-01T00:00:00+00:00",
            "metadata": {"adType": "blog"},
        })
        assert doc.document_id == "doc-1"
        assert doc.collected_at.year == 2025
        assert doc.metadata.ad_type == "blog"

    def test_section_type_parse_unknown(self):
        assert SectionType.parse("sidebar") is SectionType.DEFAULT
        assert SectionType.parse(None) is SectionType.DEFAULT
