"""
Compound Pattern Tests — AND / OR / AND_NOT / SEQUENCE evaluation and
document-level exclusions.
"""

from __future__ import annotations

import pytest

from conftest import make_data

from medcheck.compound import evaluate_compound
from medcheck.errors import PatternCompileError
from medcheck.matcher import Matcher, compile_pattern
from medcheck.models import CompoundOperator, Condition, Pattern, Severity, ViolationType
from medcheck.patterns import PatternStore
from medcheck.prompt import PromptConfig, build_violation_prompt
from medcheck.rule_engine import RuleEngine


def compound(operator, *conditions, severity=Severity.MAJOR, **extra):
    return Pattern(
        id="CPD-T",
        name="compound",
        type=ViolationType.PRICE_INDUCEMENT,
        default_severity=severity,
        operator=operator,
        conditions=tuple(conditions),
        **extra,
    )


PRICE = Condition("price", ("할인", "특가"))
GUARANTEE = Condition("guarantee", ("보장",))
DISCLAIMER = Condition("disclaimer", ("개인차",), required=False, exclusion=True)


class TestAnd:

    def test_all_clauses_met(self):
        hit = evaluate_compound(compound(CompoundOperator.AND, PRICE, GUARANTEE), "할인 보장")
        assert (hit.start, hit.end) == (0, 5)
        assert hit.text == "할인 + 보장"
        assert [m.condition_id for m in hit.met] == ["price", "guarantee"]

    def test_missing_required_clause(self):
        assert evaluate_compound(compound(CompoundOperator.AND, PRICE, GUARANTEE), "할인 안내") is None

    def test_optional_clause_may_be_missing(self):
        optional = Condition("urgency", ("오늘만",), required=False)
        hit = evaluate_compound(compound(CompoundOperator.AND, PRICE, optional, GUARANTEE), "특가 보장")
        assert hit.text == "특가 + 보장"

    def test_exclusion_clause_ignored(self):
        p = compound(CompoundOperator.AND, PRICE, GUARANTEE, DISCLAIMER)
        assert evaluate_compound(p, "할인 보장, 개인차 있음") is not None


class TestAndNot:

    def test_exclusion_blocks_hit(self):
        p = compound(CompoundOperator.AND_NOT, PRICE, GUARANTEE, DISCLAIMER)
        assert evaluate_compound(p, "할인 보장, 개인차 있음") is None

    def test_hit_without_exclusion(self):
        p = compound(CompoundOperator.AND_NOT, PRICE, GUARANTEE, DISCLAIMER)
        assert evaluate_compound(p, "할인 보장") is not None


class TestOr:

    def test_min_conditions(self):
        urgency = Condition("urgency", ("오늘만",))
        p = compound(CompoundOperator.OR, PRICE, GUARANTEE, urgency, min_conditions=2)
        assert evaluate_compound(p, "할인 안내") is None
        hit = evaluate_compound(p, "오늘만 할인")
        assert [m.condition_id for m in hit.met] == ["price", "urgency"]
        assert hit.unmet == ("guarantee",)

    def test_single_clause_enough_by_default(self):
        assert evaluate_compound(compound(CompoundOperator.OR, PRICE, GUARANTEE), "보장") is not None


class TestSequence:

    PROBLEM = Condition("problem", ("고민이신가요",))
    SOLUTION = Condition("solution", ("저희 병원",), max_distance=20)

    def test_in_order(self):
        p = compound(CompoundOperator.SEQUENCE, self.PROBLEM, self.SOLUTION)
        hit = evaluate_compound(p, "탈모 고민이신가요? 저희 병원에서 상담하세요")
        assert hit.text == "고민이신가요 + 저희 병원"

    def test_wrong_order(self):
        p = compound(CompoundOperator.SEQUENCE, self.PROBLEM, self.SOLUTION)
        assert evaluate_compound(p, "저희 병원은 친절합니다. 고민이신가요?") is None

    def test_too_far_apart(self):
        p = compound(CompoundOperator.SEQUENCE, self.PROBLEM, self.SOLUTION)
        text = "고민이신가요?" + " 안내" * 20 + " 저희 병원"
        assert evaluate_compound(p, text) is None


class TestMatching:

    def test_confidence_scales_with_met_clauses(self):
        urgency = Condition("urgency", ("오늘만",))
        p = compound(CompoundOperator.OR, PRICE, GUARANTEE, urgency)
        [one] = Matcher().scan("할인", [p]).candidates
        [all_three] = Matcher().scan("오늘만 할인 보장", [p]).candidates
        assert one.confidence == pytest.approx(0.8333, abs=1e-4)
        assert all_three.confidence == pytest.approx(0.9)

    def test_bad_clause_regex_is_a_compile_error(self):
        broken = compound(CompoundOperator.AND, Condition("bad", ("(unclosed",)), GUARANTEE)
        with pytest.raises(PatternCompileError):
            compile_pattern(broken)
        result = Matcher().scan("보장", [broken])
        assert result.candidates == []
        assert result.diagnostics[0].pattern_id == "CPD-T"

    def test_through_rule_engine(self):
        data = make_data(compoundRules=[{
            "id": "CPD-001", "name": "가격 유인 + 효과 보장", "type": "price_inducement",
            "operator": "AND", "severity": "critical",
            "conditions": [
                {"id": "price", "description": "가격 유인", "patterns": ["할인"]},
                {"id": "guarantee", "description": "효과 보장", "patterns": ["완치"]},
            ],
        }])
        snapshot = PatternStore(data).snapshot()
        analysis = RuleEngine(snapshot).analyze("50% 할인, 완치를 약속드립니다")
        [v] = [v for v in analysis.violations if v.pattern_id == "CPD-001"]
        assert v.matched_text == "할인 + 완치"
        assert v.severity is Severity.CRITICAL
        assert v.confidence == pytest.approx(0.95)

        _, prompt = build_violation_prompt(PromptConfig.from_snapshot(snapshot), "x")
        assert "CPD-001 [critical] 가격 유인 + 효과 보장: compound 가격 유인 AND 효과 보장" in prompt


class TestExclusions:

    def test_document_exclusion_lifts_pattern(self):
        p = Pattern(
            id="DENT-T", name="무통", type=ViolationType.FALSE_CLAIM,
            default_severity=Severity.MAJOR, regex="무통\\s*치료",
            exclusions=("통증을\\s*최소화",),
        )
        assert len(Matcher().scan("무통 치료", [p]).candidates) == 1
        assert Matcher().scan("통증을 최소화한 무통 치료", [p]).candidates == []

    def test_bad_exclusion_regex_is_a_compile_error(self):
        p = Pattern(
            id="DENT-T", name="무통", type=ViolationType.FALSE_CLAIM,
            default_severity=Severity.MAJOR, regex="무통", exclusions=("(",),
        )
        assert Matcher().scan("무통", [p]).diagnostics[0].pattern_id == "DENT-T"
