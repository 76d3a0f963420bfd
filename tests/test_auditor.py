"""
Auditor Reconciler Tests — checking model findings against the rule engine.

Every scenario also checks the bookkeeping identity between the reported
delta and the ADD / REMOVE issues.
"""

from __future__ import annotations

import re

import pytest

from medcheck.auditor import AuditAction, AuditIssueType, AuditorReconciler
from medcheck.errors import LLMTimeoutError
from medcheck.models import SectionType, Severity
from medcheck.rule_engine import RuleEngine
from medcheck.schemas.llm_output import parse_llm_output

from conftest import make_violation


TEXT = "100% 완치를 보장합니다. 최고의 의료진."
DISCLAIMED = "보장 가능한 시술입니다. 개인에 따라 결과가 다를 수 있습니다."


def llm_violation(pattern_id, text, severity="major", confidence=0.9, **extra):
    v = {
        "patternId": pattern_id,
        "severity": severity,
        "originalText": text,
        "confidence": confidence,
        "reasoning": "test",
    }
    v.update(extra)
    return v


def answer(*violations, **extra):
    out = {"violations": list(violations)}
    out.update(extra)
    return out


def assert_delta_invariant(result):
    adds = len(result.issues_by_action(AuditAction.ADD))
    removes = len(result.issues_by_action(AuditAction.REMOVE))
    assert result.audit_delta == adds - removes
    assert result.audit_delta == result.final_count - result.gemini_original_count


def issue_types(result):
    return [i.type for i in result.audit_issues]


@pytest.fixture
def auditor():
    return AuditorReconciler()


@pytest.fixture
def rule_violations(snapshot):
    return RuleEngine(snapshot).analyze(TEXT).violations


# ============================================================
# REMOVALS
# ============================================================

class TestRemovals:

    def test_fabricated_pattern_id(self, auditor, snapshot, rule_violations):
        result = auditor.reconcile(TEXT, rule_violations, answer(
            llm_violation("C-001", "100% 완치", severity="critical"),
            llm_violation("G-001", "보장"),
            llm_violation("NOPE-999", "의료진"),
        ), snapshot)

        assert result.gemini_original_count == 3
        assert result.final_count == 2
        assert result.audit_delta == -1
        assert issue_types(result) == [AuditIssueType.FABRICATED_PATTERN_ID]
        assert "NOPE-999" not in {v.pattern_id for v in result.final_violations}
        assert_delta_invariant(result)

    def test_negative_list_term(self, auditor, snapshot):
        result = auditor.reconcile(
            "FDA 승인 장비를 사용합니다", [],
            answer(llm_violation("G-001", "FDA 승인")), snapshot,
        )
        assert result.final_violations == []
        assert issue_types(result) == [AuditIssueType.NEGATIVE_LIST_VIOLATION]
        assert_delta_invariant(result)

    def test_negative_list_ignores_spacing_and_case(self, auditor, snapshot):
        result = auditor.reconcile(
            "fda승인", [], answer(llm_violation("G-001", "fda승인")), snapshot,
        )
        assert issue_types(result) == [AuditIssueType.NEGATIVE_LIST_VIOLATION]

    def test_active_keyword_exception(self, auditor, store, exception_store):
        exception_store.add("G-001", "keyword", "보장")
        result = auditor.reconcile(
            TEXT, [], answer(llm_violation("G-001", "보장")), store.snapshot(),
        )
        assert issue_types(result) == [AuditIssueType.NEGATIVE_LIST_VIOLATION]

    def test_exception_for_other_pattern_does_not_apply(self, auditor, store, exception_store):
        exception_store.add("X-001", "keyword", "보장")
        result = auditor.reconcile(
            TEXT, [], answer(llm_violation("G-001", "보장")), store.snapshot(),
        )
        assert result.final_count == 1

    def test_regex_exception(self, auditor, store, exception_store):
        exception_store.add("G-001", "regex", r"보장\s*기간")
        result = auditor.reconcile(
            "보장 기간 안내", [], answer(llm_violation("G-001", "보장 기간")), store.snapshot(),
        )
        assert issue_types(result) == [AuditIssueType.NEGATIVE_LIST_VIOLATION]

    def test_duplicate(self, auditor, snapshot):
        result = auditor.reconcile(TEXT, [], answer(
            llm_violation("G-001", "보장"),
            llm_violation("G-001", "보 장"),
        ), snapshot)
        assert result.final_count == 1
        assert issue_types(result) == [AuditIssueType.DUPLICATE_VIOLATION]
        assert_delta_invariant(result)

    @pytest.mark.parametrize("bad", [1.5, -0.1])
    def test_invalid_confidence(self, auditor, snapshot, bad):
        result = auditor.reconcile(
            TEXT, [], answer(llm_violation("G-001", "보장", confidence=bad)), snapshot,
        )
        assert result.final_violations == []
        assert issue_types(result) == [AuditIssueType.INVALID_CONFIDENCE]
        assert_delta_invariant(result)

    def test_invalid_confidence_checked_before_pattern_id(self, auditor, snapshot):
        result = auditor.reconcile(
            TEXT, [], answer(llm_violation("NOPE-999", "보장", confidence=2.0)), snapshot,
        )
        assert issue_types(result) == [AuditIssueType.INVALID_CONFIDENCE]

    def test_official_approval_removed(self, auditor, snapshot):
        result = auditor.reconcile(
            "FDA 승인 장비를 사용합니다", [],
            answer(llm_violation("G-001", "FDA 승인 장비")), snapshot,
        )
        assert result.final_violations == []
        assert issue_types(result) == [AuditIssueType.CERTIFICATION_FALSE_POSITIVE]
        assert result.audit_issues[0].action is AuditAction.REMOVE
        assert_delta_invariant(result)

    def test_approval_body_found_in_surrounding_text(self, auditor, snapshot):
        result = auditor.reconcile(
            "식약처 허가를 받은 장비입니다", [],
            answer(llm_violation("G-001", "허가를 받은 장비")), snapshot,
        )
        assert issue_types(result) == [AuditIssueType.CERTIFICATION_FALSE_POSITIVE]

    def test_approval_without_official_body_kept(self, auditor, snapshot):
        result = auditor.reconcile(
            "고객 만족 1위 인증 병원", [],
            answer(llm_violation("X-001", "만족 1위 인증", severity="minor")), snapshot,
        )
        assert result.final_count == 1
        assert result.audit_issues == []

    def test_acronym_inside_word_is_not_a_body(self, auditor, snapshot):
        result = auditor.reconcile(
            "ceramic 인증 보철", [],
            answer(llm_violation("X-001", "ceramic 인증", severity="minor")), snapshot,
        )
        assert result.final_count == 1


# ============================================================
# MISSED DETECTIONS
# ============================================================

class TestMissed:

    def test_rule_finding_added(self, auditor, snapshot, rule_violations):
        result = auditor.reconcile(TEXT, rule_violations, answer(
            llm_violation("C-001", "100% 완치", severity="critical"),
        ), snapshot)

        added = [v for v in result.final_violations if v.source == "rule_engine_supplement"]
        assert [v.pattern_id for v in added] == ["G-001"]
        assert added[0].position == 9
        assert issue_types(result) == [AuditIssueType.GEMINI_MISSED]
        assert result.audit_delta == 1
        assert_delta_invariant(result)

    def test_floor_is_strict(self, auditor, snapshot, rule_violations):
        x = next(v for v in rule_violations if v.pattern_id == "X-001")
        assert x.confidence == pytest.approx(0.7)
        result = auditor.reconcile(TEXT, [x], answer(), snapshot)
        assert result.final_violations == []
        assert result.audit_issues == []

    def test_overlapping_model_span_counts_as_reported(self, auditor, snapshot, rule_violations):
        g = [v for v in rule_violations if v.pattern_id == "G-001"]
        result = auditor.reconcile(TEXT, g, answer(llm_violation("G-001", "보장합니다")), snapshot)
        assert result.final_count == 1
        assert result.audit_issues == []

    def test_unlocated_model_text_falls_back_to_containment(self, auditor, snapshot, rule_violations):
        g = [v for v in rule_violations if v.pattern_id == "G-001"]
        result = auditor.reconcile(TEXT, g, answer(llm_violation("G-001", "효과 보장")), snapshot)
        assert result.final_count == 1
        assert result.final_violations[0].position is None

    def test_other_pattern_at_same_span_does_not_count(self, auditor, snapshot, rule_violations):
        g = [v for v in rule_violations if v.pattern_id == "G-001"]
        result = auditor.reconcile(
            TEXT, g, answer(llm_violation("X-001", "보장", severity="minor")), snapshot,
        )
        assert issue_types(result) == [AuditIssueType.GEMINI_MISSED]
        assert result.final_count == 2

    def test_screened_model_finding_does_not_count_as_reported(self, auditor, snapshot, rule_violations):
        result = auditor.reconcile(TEXT, rule_violations, answer(
            llm_violation("C-001", "100% 완치", severity="critical", confidence=7.0),
        ), snapshot)

        assert issue_types(result) == [
            AuditIssueType.INVALID_CONFIDENCE,
            AuditIssueType.GEMINI_MISSED,
            AuditIssueType.GEMINI_MISSED,
        ]
        assert [v.pattern_id for v in result.final_violations] == ["C-001", "G-001"]
        assert {v.source for v in result.final_violations} == {"rule_engine_supplement"}
        assert_delta_invariant(result)

    def test_official_approval_not_added_back(self, auditor, snapshot):
        rv = make_violation(matched_text="FDA 승인 장비", confidence=0.9)
        result = auditor.reconcile("FDA 승인 장비를 사용합니다", [rv], answer(), snapshot)
        assert result.final_violations == []
        assert result.audit_issues == []

    def test_negative_list_term_not_added_back(self, auditor, snapshot):
        rv = make_violation(matched_text="보톡스", confidence=0.9)
        result = auditor.reconcile("보톡스 시술 안내", [rv], answer(), snapshot)
        assert result.final_violations == []

    def test_supplement_takes_model_section(self, auditor, snapshot, rule_violations):
        g = [v for v in rule_violations if v.pattern_id == "G-001"]
        result = auditor.reconcile(TEXT, g, answer(
            sections=[{"type": "treatment", "startIndex": 0, "endIndex": 50}],
        ), snapshot)
        assert result.final_violations[0].section_type is SectionType.TREATMENT


# ============================================================
# ADJUSTMENTS
# ============================================================

class TestAdjustments:

    def test_disclaimer_downgrades_one_band(self, auditor, snapshot):
        result = auditor.reconcile(
            DISCLAIMED, [], answer(llm_violation("G-001", "보장")), snapshot,
        )
        v = result.final_violations[0]
        assert v.severity is Severity.MINOR
        assert v.original_severity is Severity.MAJOR
        assert v.disclaimer_present
        issue = result.audit_issues[0]
        assert issue.type is AuditIssueType.DISCLAIMER_NOT_APPLIED
        assert issue.action is AuditAction.DOWNGRADE
        assert (issue.before, issue.after) == ("major", "minor")
        assert result.audit_delta == 0

    def test_absolute_pattern_never_downgraded(self, auditor, snapshot):
        text = "100% 완치 가능합니다. 개인에 따라 결과가 다를 수 있습니다."
        result = auditor.reconcile(text, [], answer(
            llm_violation("C-001", "100% 완치", severity="critical"),
        ), snapshot)
        assert result.final_violations[0].severity is Severity.CRITICAL
        assert result.audit_issues == []

    def test_already_marked_not_downgraded_again(self, auditor, snapshot):
        result = auditor.reconcile(DISCLAIMED, [], answer(
            llm_violation("G-001", "보장", disclaimerPresent=True, adjustedSeverity="minor"),
        ), snapshot)
        assert result.final_violations[0].severity is Severity.MINOR
        assert result.audit_issues == []

    def test_low_critical_confidence_raised(self, auditor, snapshot):
        result = auditor.reconcile(TEXT, [], answer(
            llm_violation("C-001", "100% 완치", severity="critical", confidence=0.5),
        ), snapshot)
        assert result.final_violations[0].confidence == 0.85
        issue = result.audit_issues[0]
        assert issue.type is AuditIssueType.CONFIDENCE_ADJUSTED
        assert issue.action is AuditAction.ADJUST
        assert_delta_invariant(result)

    def test_low_major_confidence_raised(self, auditor, snapshot):
        result = auditor.reconcile(TEXT, [], answer(
            llm_violation("G-001", "보장", confidence=0.3),
        ), snapshot)
        assert result.final_violations[0].confidence == 0.7

    def test_minor_confidence_untouched(self, auditor, snapshot):
        result = auditor.reconcile(TEXT, [], answer(
            llm_violation("X-001", "최고의", severity="minor", confidence=0.2),
        ), snapshot)
        assert result.final_violations[0].confidence == 0.2
        assert result.audit_issues == []


# ============================================================
# DEGRADED MODE
# ============================================================

class TestFallback:

    @pytest.mark.parametrize("bad_answer", [
        LLMTimeoutError("model call exceeded 30s"),
        {"foo": 1},
        ["not", "an", "object"],
        None,
    ])
    def test_rule_only_output(self, auditor, snapshot, rule_violations, bad_answer):
        result = auditor.reconcile(TEXT, rule_violations, bad_answer, snapshot)

        assert result.degraded
        assert result.gemini_original_count == 0
        assert result.final_count == len(rule_violations) == 3
        assert set(issue_types(result)) == {AuditIssueType.RULE_ENGINE_FALLBACK}
        assert all(v.source == "rule_engine" for v in result.final_violations)
        assert result.warnings and result.warnings[0].startswith("llm_unavailable")
        assert result.gray_zones == []
        assert_delta_invariant(result)

    def test_fallback_still_checks_mandatory_items(self, auditor, snapshot):
        result = auditor.reconcile("서울밝은피부과의원 02-123-4567", [], None, snapshot)
        assert result.mandatory_items.phone.found
        assert result.mandatory_items.department.found

    def test_empty_document(self, auditor, snapshot):
        result = auditor.reconcile("", [], None, snapshot)
        assert result.final_count == 0
        assert result.grade.clean_score == 100


# ============================================================
# PASS-THROUGH & OUTPUT
# ============================================================

class TestOutput:

    def test_gray_zones_passed_through(self, auditor, snapshot):
        result = auditor.reconcile(TEXT, [], answer(gray_zones=[
            {"evasion_type": "before_after", "evasion_category": "VISUAL", "confidence": 1.4},
        ]), snapshot)
        assert len(result.gray_zones) == 1
        assert result.gray_zones[0].evasion_category == "visual"
        assert result.gray_zones[0].confidence == 1.0

    def test_model_mandatory_items_preferred(self, auditor, snapshot):
        result = auditor.reconcile(TEXT, [], answer(
            mandatory_items={"phone": {"found": True, "value": "1588-0000"}},
        ), snapshot)
        assert result.mandatory_items.phone.value == "1588-0000"

    def test_mandatory_items_computed_when_missing(self, auditor, snapshot):
        result = auditor.reconcile(TEXT, [], answer(), snapshot)
        assert not result.mandatory_items.phone.found

    def test_validated_output_accepted(self, auditor, snapshot):
        output = parse_llm_output(answer(llm_violation("G-001", "보장")))
        result = auditor.reconcile(TEXT, [], output, snapshot)
        assert result.final_count == 1
        assert not result.degraded

    def test_audit_id_format(self, auditor, snapshot):
        ids = {auditor.reconcile(TEXT, [], answer(), snapshot).audit_id for _ in range(5)}
        for audit_id in ids:
            assert re.fullmatch(r"audit_[0-9a-z]+_[0-9a-z]{6}", audit_id)
        assert len(ids) == 5

    def test_grade_reflects_final_violations(self, auditor, snapshot):
        result = auditor.reconcile(TEXT, [], answer(
            llm_violation("C-001", "100% 완치", severity="critical", confidence=1.0),
        ), snapshot)
        assert result.grade.clean_score == 80
        assert result.grade.grade == "A"

    def test_to_dict(self, auditor, snapshot, rule_violations):
        result = auditor.reconcile(TEXT, rule_violations, answer(
            llm_violation("C-001", "100% 완치", severity="critical"),
            llm_violation("NOPE-999", "의료진"),
        ), snapshot)
        d = result.to_dict()
        assert d["auditDelta"] == result.final_count - 2
        assert {i["action"] for i in d["auditIssues"]} == {"ADD", "REMOVE"}
        assert d["finalViolations"][0]["patternId"] == "C-001"

    def test_violation_results_carry_pattern_metadata(self, auditor, snapshot):
        result = auditor.reconcile(TEXT, [], answer(llm_violation("G-001", "보장")), snapshot)
        vr = result.final_violations[0].to_violation_result(snapshot)
        assert vr.description == "치료 효과 보장"
        assert vr.position == 9
        assert vr.source == "gemini"
