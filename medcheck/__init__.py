"""
MedCheck — Medical Advertising Violation Engine

Rule-based detection of medical-advertising violations, audited against
an external model's structured findings.

Public API:
  - PatternStore:        Versioned pattern library, frozen per-pass snapshots
  - ExceptionRuleStore:  Persisted suppression rules with atomic hit counts
  - RuleEngine:          Matcher + Exception Filter over one snapshot
  - AuditorReconciler:   Merges model findings with rule-engine findings
  - Analyzer:            Per-document and batch orchestration
  - FeedbackStore:       False-positive cases → governed exception suggestions
  - LearningLog:         SHA-256 hash-chained learning history

Usage:
    from medcheck import Analyzer, PatternStore, ModuleInput
    analyzer = Analyzer(PatternStore.from_file())
    report = analyzer.analyze_rules(ModuleInput(content="100% 완치 보장"))
"""

__version__ = "1.0.0"

from medcheck.analyzer import AnalysisReport, Analyzer, BatchItem, BatchResult
from medcheck.auditor import (
    AuditAction,
    AuditedViolation,
    AuditIssue,
    AuditIssueType,
    AuditorReconciler,
    AuditResult,
)
from medcheck.context import ContextClassifier
from medcheck.errors import (
    IllegalTransitionError,
    InvalidConfidenceError,
    LLMError,
    LLMMalformedResponseError,
    LLMTimeoutError,
    MedCheckError,
    NotFoundError,
    PatternCompileError,
    UnknownPatternIdError,
)
from medcheck.exception_filter import ConfidenceModifierTable, ExceptionFilter
from medcheck.learning import FeedbackStore, LearningLog
from medcheck.matcher import Matcher
from medcheck.models import (
    AdMetadata,
    ContextType,
    ExceptionRule,
    ExceptionType,
    ModuleInput,
    ModuleOutput,
    Pattern,
    SectionType,
    Severity,
    ViolationResult,
    ViolationStatus,
    ViolationType,
)
from medcheck.patterns import ExceptionRuleStore, PatternSnapshot, PatternStore
from medcheck.rule_engine import RuleEngine
from medcheck.scorer import GradeResult, ScoringConfig, grade_violations

__all__ = [
    "AdMetadata",
    "AnalysisReport",
    "Analyzer",
    "AuditAction",
    "AuditIssue",
    "AuditIssueType",
    "AuditResult",
    "AuditedViolation",
    "AuditorReconciler",
    "BatchItem",
    "BatchResult",
    "ConfidenceModifierTable",
    "ContextClassifier",
    "ContextType",
    "ExceptionFilter",
    "ExceptionRule",
    "ExceptionRuleStore",
    "ExceptionType",
    "FeedbackStore",
    "GradeResult",
    "IllegalTransitionError",
    "InvalidConfidenceError",
    "LLMError",
    "LLMMalformedResponseError",
    "LLMTimeoutError",
    "LearningLog",
    "Matcher",
    "MedCheckError",
    "ModuleInput",
    "ModuleOutput",
    "NotFoundError",
    "Pattern",
    "PatternCompileError",
    "PatternSnapshot",
    "PatternStore",
    "RuleEngine",
    "ScoringConfig",
    "SectionType",
    "Severity",
    "UnknownPatternIdError",
    "ViolationResult",
    "ViolationStatus",
    "ViolationType",
    "grade_violations",
]
