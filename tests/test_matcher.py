"""
Matcher Tests — ordering, keyword semantics and compile failures.
"""

from __future__ import annotations

import pytest

from conftest import guarantee_pattern

from medcheck.errors import PatternCompileError
from medcheck.matcher import Matcher, compile_pattern
from medcheck.models import ContextType, Severity


class TestOrdering:

    def test_sorted_by_offset(self):
        text = "최고의 의료진이 효과를 보장합니다"
        patterns = [
            guarantee_pattern(),
            guarantee_pattern(id="X-001", keywords=("최고의",)),
        ]
        result = Matcher().scan(text, patterns)
        assert [c.pattern_id for c in result.candidates] == ["X-001", "G-001"]
        assert [c.start for c in result.candidates] == sorted(c.start for c in result.candidates)

    def test_ties_broken_by_pattern_id(self):
        patterns = [
            guarantee_pattern(id="B-002", keywords=("완치",)),
            guarantee_pattern(id="A-001", keywords=(), regex="완치"),
        ]
        result = Matcher().scan("완치", patterns)
        assert [c.pattern_id for c in result.candidates] == ["A-001", "B-002"]

    def test_repeated_keyword_each_reported(self):
        result = Matcher().scan("보장 그리고 또 보장", [guarantee_pattern()])
        assert [c.start for c in result.candidates] == [0, 9]


class TestKeywords:

    def test_case_insensitive(self):
        p = guarantee_pattern(keywords=("No.1",))
        result = Matcher().scan("우리는 no.1 병원", [p])
        assert len(result.candidates) == 1
        assert result.candidates[0].matched_text == "no.1"

    def test_substring_without_word_boundary(self):
        result = Matcher().scan("보장성 보험", [guarantee_pattern()])
        assert len(result.candidates) == 1

    def test_keywords_are_literal(self):
        p = guarantee_pattern(keywords=("100%",))
        assert len(Matcher().scan("1000 결과", [p]).candidates) == 0
        assert len(Matcher().scan("100% 결과", [p]).candidates) == 1

    def test_overlapping_keywords_each_reported(self):
        p = guarantee_pattern(keywords=("100%", "0% 완치"))
        result = Matcher().scan("100% 완치", [p])
        assert [c.matched_text for c in result.candidates] == ["100%", "0% 완치"]
        assert [(c.start, c.end) for c in result.candidates] == [(0, 4), (2, 7)]

    def test_nested_keywords_both_reported(self):
        p = guarantee_pattern(keywords=("완치", "완치됩니다"))
        result = Matcher().scan("완치됩니다", [p])
        assert [(c.start, c.end) for c in result.candidates] == [(0, 2), (0, 5)]

    def test_identical_span_reported_once(self):
        p = guarantee_pattern(keywords=("No.1", "no.1", "NO.1"))
        result = Matcher().scan("no.1 병원", [p])
        assert len(result.candidates) == 1

    def test_one_expression_per_distinct_keyword(self):
        compiled = compile_pattern(guarantee_pattern(keywords=("보장", "보장", "완치")))
        assert len(compiled.expressions) == 2
        assert compiled.exclusions == ()

    def test_empty_keyword_list_rejected(self):
        with pytest.raises(PatternCompileError):
            compile_pattern(guarantee_pattern(keywords=("",)))


class TestRobustness:

    def test_disabled_pattern_never_matches(self):
        result = Matcher().scan("보장", [guarantee_pattern(enabled=False)])
        assert result.candidates == []

    def test_bad_regex_skipped_with_diagnostic(self):
        patterns = [
            guarantee_pattern(id="BAD-001", keywords=(), regex="(unclosed"),
            guarantee_pattern(),
        ]
        result = Matcher().scan("효과 보장", patterns)
        assert [c.pattern_id for c in result.candidates] == ["G-001"]
        assert len(result.diagnostics) == 1
        assert isinstance(result.diagnostics[0], PatternCompileError)
        assert result.diagnostics[0].pattern_id == "BAD-001"

    def test_zero_width_matches_ignored(self):
        p = guarantee_pattern(keywords=(), regex="(?=보장)")
        assert Matcher().scan("보장", [p]).candidates == []


class TestCandidateFields:

    def test_context_window(self):
        text = "가" * 100 + "보장" + "나" * 100
        c = Matcher(context_window=10).scan(text, [guarantee_pattern()]).candidates[0]
        assert c.context == "가" * 10 + "보장" + "나" * 10
        assert (c.start, c.end) == (100, 102)

    def test_context_type_and_confidence(self):
        c = Matcher().scan("효과를 보장하지 않습니다", [guarantee_pattern()]).candidates[0]
        assert c.context_type is ContextType.NEGATION
        assert c.confidence == 0.8

    def test_critical_base_confidence(self):
        p = guarantee_pattern(default_severity=Severity.CRITICAL)
        c = Matcher().scan("보장", [p]).candidates[0]
        assert c.confidence == 0.85
