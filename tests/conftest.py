"""
Shared fixtures: a small pattern library and throwaway SQLite files.
"""

from __future__ import annotations

import copy
import os
import tempfile

import pytest

from medcheck.models import (
    ContextType,
    Pattern,
    SectionType,
    Severity,
    ViolationResult,
    ViolationStatus,
    ViolationType,
)
from medcheck.patterns import ExceptionRuleStore, PatternStore


TEST_PATTERNS = {
    "version": "test-1",
    "patterns": [
        {
            "id": "C-001",
            "name": "완치 100% 표현",
            "type": "guarantee",
            "regex": "100\\s*%\\s*완치",
            "defaultSeverity": "critical",
            "absolute": True,
            "legalBasis": [{"law": "의료법", "article": "제56조 제2항 제3호"}],
        },
        {
            "id": "G-001",
            "name": "보장 표현",
            "type": "guarantee",
            "keywords": ["보장"],
            "defaultSeverity": "high",
            "description": "치료 효과 보장",
            "suggestion": "개인에 따라 결과가 다를 수 있습니다",
        },
        {
            "id": "X-001",
            "name": "최상급 표현",
            "type": "exaggeration",
            "keywords": ["최고의"],
            "defaultSeverity": "minor",
        },
        {
            "id": "D-001",
            "name": "임플란트 평생 보장",
            "type": "guarantee",
            "regex": "임플란트\\s*평생",
            "defaultSeverity": "critical",
            "department": "치과",
        },
    ],
    "negativeList": ["FDA 승인", "식약처 인증", "보톡스"],
    "disclaimers": ["개인에 따라 결과가 다를 수 있습니다"],
    "departmentRules": [
        {"id": "DENT-002", "department": "치과", "name": "무통 치료 단정",
         "description": "치과 치료가 무통임을 단정", "severity": "major", "type": "false_claim",
         "patterns": ["(?:무통|통증\\s*없)\\s*(?:치료|시술|임플란트)"],
         "exceptions": ["통증을\\s*최소화"]},
        {"id": "DERM-001", "department": "피부과", "name": "시술 횟수 과소 표현",
         "description": "시술 횟수를 적게 표현", "severity": "major"},
    ],
    "contextExceptions": [
        {"type": "NEGATION", "description": "부정문은 위반 아님", "examples": ["보장하지 않습니다"]},
    ],
    "confidenceModifiers": [
        {"pattern": "guarantee", "context": "quotation", "modifier": 0.5},
        {"pattern": "*", "context": "negation", "modifier": 0.3},
    ],
}


def make_data(**overrides) -> dict:
    data = copy.deepcopy(TEST_PATTERNS)
    data.update(overrides)
    return data


def make_violation(
    severity: Severity = Severity.MAJOR,
    confidence: float = 1.0,
    pattern_id: str = "G-001",
    section_type: SectionType = SectionType.DEFAULT,
    matched_text: str = "보장",
    position: int = 0,
) -> ViolationResult:
    return ViolationResult(
        type=ViolationType.GUARANTEE,
        status=ViolationStatus.from_confidence(confidence),
        severity=severity,
        matched_text=matched_text,
        position=position,
        description="",
        legal_basis=(),
        confidence=confidence,
        pattern_id=pattern_id,
        context_type=ContextType.NORMAL,
        section_type=section_type,
    )


def guarantee_pattern(**overrides) -> Pattern:
    fields = dict(
        id="G-001",
        name="보장 표현",
        type=ViolationType.GUARANTEE,
        default_severity=Severity.MAJOR,
        keywords=("보장",),
    )
    fields.update(overrides)
    return Pattern(**fields)


@pytest.fixture
def db_path():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    os.unlink(path)


@pytest.fixture
def exception_store(db_path):
    return ExceptionRuleStore(db_path=db_path)


@pytest.fixture
def store(exception_store):
    return PatternStore(make_data(), exception_store=exception_store)


@pytest.fixture
def snapshot(store):
    return store.snapshot()
