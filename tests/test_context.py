"""
Context Classifier Tests — one label per span, fixed precedence.
"""

from __future__ import annotations

import pytest

from medcheck.context import ContextClassifier, enclosing_sentence
from medcheck.models import ContextType


@pytest.fixture
def classifier():
    return ContextClassifier(["개인에 따라 결과가 다를 수 있습니다"])


class TestSingleCues:

    def test_normal(self, classifier):
        assert classifier.classify("보장", "효과를 보장합니다") is ContextType.NORMAL

    def test_negation_after_span(self, classifier):
        assert classifier.classify("보장", "효과를 보장하지 않습니다") is ContextType.NEGATION

    def test_negation_before_span_ignored(self, classifier):
        assert classifier.classify("완치", "포기하지 않는 분들의 완치") is ContextType.NORMAL

    def test_question(self, classifier):
        assert classifier.classify("완치", "정말 완치가 되나요?") is ContextType.QUESTION

    def test_quotation(self, classifier):
        assert classifier.classify("완치", "환자분이 “완치”라고 말씀하셨다") is ContextType.QUOTATION

    def test_disclaimer_marker(self, classifier):
        assert classifier.classify("완치", "※ 완치 사례는 개인마다 다릅니다") is ContextType.DISCLAIMER

    def test_configured_disclaimer_phrase(self, classifier):
        sentence = "효과는 개인에 따라 결과가 다를 수 있습니다"
        assert classifier.classify("효과", sentence) is ContextType.DISCLAIMER

    def test_comparison(self, classifier):
        assert classifier.classify("효과", "다른 병원보다 확실한 효과") is ContextType.COMPARISON

    def test_english_negation(self, classifier):
        assert classifier.classify("cure", "We cure nothing, we do not promise") is ContextType.NEGATION


class TestPrecedence:

    def test_quotation_beats_question(self, classifier):
        assert classifier.classify("완치", '환자가 "완치"라고 했나요?') is ContextType.QUOTATION

    def test_question_beats_negation(self, classifier):
        assert classifier.classify("보장", "보장하지 않나요?") is ContextType.QUESTION

    def test_negation_beats_disclaimer(self, classifier):
        assert classifier.classify("보장", "※ 보장하지 않습니다") is ContextType.NEGATION

    def test_disclaimer_beats_comparison(self, classifier):
        assert classifier.classify("효과", "※ 타 병원보다 효과") is ContextType.DISCLAIMER

    def test_deterministic(self, classifier):
        sentence = "다른 병원보다 효과를 보장하지 않습니다?"
        labels = {classifier.classify("효과", sentence) for _ in range(20)}
        assert len(labels) == 1


class TestInText:

    def test_enclosing_sentence_keeps_question_mark(self):
        text = "첫 문장입니다. 정말 완치되나요? 마지막."
        start = text.index("완치")
        sentence, offset = enclosing_sentence(text, start, start + 2)
        assert sentence.strip() == "정말 완치되나요?"
        assert text[offset:offset + len(sentence)] == sentence

    def test_classify_in_text_uses_local_sentence(self, classifier):
        text = "완치를 보장합니다. 정말 그럴까요?"
        start = text.index("보장")
        label, sentence = classifier.classify_in_text(text, start, start + 2)
        assert label is ContextType.NORMAL
        assert "그럴까요" not in sentence

    def test_quoted_span_in_text(self, classifier):
        text = '"100% 완치 보장"'
        start = text.index("보장")
        label, _ = classifier.classify_in_text(text, start, start + 2)
        assert label is ContextType.QUOTATION
