"""
Analyzer — Document Orchestrator

Two analysis modes:
  - rules: Matcher → Exception Filter → Scorer. Deterministic, no API cost.
  - deep:  rules + the external model, merged by the Auditor Reconciler.

Each document is analyzed against one immutable pattern snapshot. A
batch takes a single snapshot up front and shares it across documents,
so pattern or exception edits made during the batch apply to the next
batch only.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

from medcheck.auditor import AuditorReconciler, AuditResult
from medcheck.config import settings
from medcheck.errors import LLMError
from medcheck.learning.feedback import FeedbackStore
from medcheck.llm import LLMProvider, request_json
from medcheck.models import (
    ModuleInput,
    ModuleOutput,
    ViolationResult,
    ViolationStatus,
    document_status,
)
from medcheck.patterns.store import PatternSnapshot, PatternStore
from medcheck.prompt import PromptConfig, build_violation_prompt
from medcheck.rule_engine import RuleAnalysis, RuleEngine
from medcheck.scorer import GradeResult, ScoringConfig, grade_violations

logger = logging.getLogger(__name__)


# ============================================================
# RESULTS
# ============================================================

@dataclass
class AnalysisReport:
    document_id: str
    output: ModuleOutput
    grade: GradeResult
    status: ViolationStatus
    snapshot_version: str
    mode: str
    audit: Optional[AuditResult] = None
    diagnostics: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    suppressed_count: int = 0

    @property
    def degraded(self) -> bool:
        return self.audit is not None and self.audit.degraded

    def to_dict(self) -> dict:
        d = {
            "documentId": self.document_id,
            "mode": self.mode,
            "status": self.status.value,
            "output": self.output.to_dict(),
            "grade": self.grade.to_dict(),
            "snapshotVersion": self.snapshot_version,
            "diagnostics": list(self.diagnostics),
            "warnings": list(self.warnings),
            "suppressedCount": self.suppressed_count,
            "degraded": self.degraded,
        }
        if self.audit is not None:
            d["audit"] = self.audit.to_dict()
        return d


@dataclass
class BatchItem:
    document_id: str
    report: Optional[AnalysisReport] = None
    error: Optional[str] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.report is not None

    def to_dict(self) -> dict:
        return {
            "documentId": self.document_id,
            "ok": self.ok,
            "skipped": self.skipped,
            "error": self.error,
            "report": self.report.to_dict() if self.report else None,
        }


@dataclass
class BatchResult:
    items: list[BatchItem]

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def analyzed(self) -> int:
        return sum(1 for i in self.items if i.ok)

    @property
    def failed(self) -> int:
        return sum(1 for i in self.items if i.error is not None)

    @property
    def skipped(self) -> int:
        return sum(1 for i in self.items if i.skipped)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "analyzed": self.analyzed,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [i.to_dict() for i in self.items],
        }


def _summary(violations: Sequence[ViolationResult], grade: GradeResult) -> str:
    if not violations:
        return f"No violations found (score {grade.clean_score}, grade {grade.grade})"
    worst = max(violations, key=lambda v: v.severity.rank).severity.value
    return (
        f"{len(violations)} violation(s), worst severity {worst} "
        f"(score {grade.clean_score}, grade {grade.grade})"
    )


# ============================================================
# ANALYZER
# ============================================================

class Analyzer:
    """Runs the full per-document pipeline against a PatternStore."""

    def __init__(
        self,
        store: PatternStore,
        scoring: Optional[ScoringConfig] = None,
        reconciler: Optional[AuditorReconciler] = None,
        feedback: Optional[FeedbackStore] = None,
        llm_timeout: float = settings.LLM_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.scoring = scoring or ScoringConfig()
        self.reconciler = reconciler or AuditorReconciler(self.scoring)
        self.feedback = feedback
        self.llm_timeout = llm_timeout
        self._engine: Optional[RuleEngine] = None

    def _engine_for(self, snapshot: PatternSnapshot) -> RuleEngine:
        """One engine per snapshot, so compiled patterns are shared across documents."""
        engine = self._engine
        if engine is None or engine.snapshot is not snapshot:
            exception_store = self.store.exception_store
            engine = RuleEngine(
                snapshot,
                hit_recorder=exception_store.record_hit if exception_store is not None else None,
            )
            self._engine = engine
        return engine

    def _run_rules(self, doc: ModuleInput, snapshot: PatternSnapshot) -> RuleAnalysis:
        rules = self._engine_for(snapshot).analyze(doc.content, department=doc.metadata.department)
        if self.feedback is not None:
            self.feedback.record_detections(v.pattern_id for v in rules.violations)
        return rules

    def _report(
        self,
        doc: ModuleInput,
        snapshot: PatternSnapshot,
        rules: RuleAnalysis,
        violations: list[ViolationResult],
        grade: GradeResult,
        started: float,
        audit: Optional[AuditResult] = None,
    ) -> AnalysisReport:
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        output = ModuleOutput(
            violations=violations,
            summary=_summary(violations, grade),
            confidence=grade.confidence,
            processing_time_ms=elapsed_ms,
        )
        report = AnalysisReport(
            document_id=doc.document_id,
            output=output,
            grade=grade,
            status=document_status(violations),
            snapshot_version=snapshot.version,
            mode="rules" if audit is None else "deep",
            audit=audit,
            diagnostics=[str(e) for e in rules.diagnostics] + [str(e) for e in rules.dropped],
            warnings=list(audit.warnings) if audit is not None else [],
            suppressed_count=len(rules.suppressed),
        )
        logger.info(
            "Analysis complete",
            extra={
                "document_id": doc.document_id,
                "clean_score": grade.clean_score,
                "grade": grade.grade,
                "violations_count": len(violations),
                "duration_ms": elapsed_ms,
                "degraded": report.degraded,
                "snapshot_version": snapshot.version,
            },
        )
        return report

    def analyze_rules(
        self, doc: ModuleInput, snapshot: Optional[PatternSnapshot] = None
    ) -> AnalysisReport:
        """Rule-engine-only analysis. Same document + snapshot → same result."""
        started = time.perf_counter()
        snapshot = snapshot or self.store.snapshot()
        rules = self._run_rules(doc, snapshot)
        grade = grade_violations(
            rules.violations, self.scoring,
            section_weight=snapshot.section_weight,
            text_length=len(doc.content),
        )
        return self._report(doc, snapshot, rules, rules.violations, grade, started)

    async def analyze(
        self,
        doc: ModuleInput,
        llm: Optional[LLMProvider] = None,
        snapshot: Optional[PatternSnapshot] = None,
    ) -> AnalysisReport:
        """
        Analyze one document. With ``llm`` the model's answer is audited
        against the rule engine; any model failure degrades to rule-only
        output with a warning instead of raising.
        """
        if llm is None:
            return self.analyze_rules(doc, snapshot)

        started = time.perf_counter()
        snapshot = snapshot or self.store.snapshot()
        rules = self._run_rules(doc, snapshot)

        config = PromptConfig.from_snapshot(snapshot, department=doc.metadata.department)
        system_instruction, prompt = build_violation_prompt(config, doc.content)
        try:
            answer = await request_json(
                llm, prompt, system_instruction=system_instruction, timeout=self.llm_timeout,
            )
        except LLMError as e:
            answer = e

        audit = self.reconciler.reconcile(
            doc.content, rules.violations, answer, snapshot, doc.metadata,
        )
        violations = [v.to_violation_result(snapshot) for v in audit.final_violations]
        return self._report(doc, snapshot, rules, violations, audit.grade, started, audit)

    async def analyze_batch(
        self,
        docs: Sequence[ModuleInput],
        llm: Optional[LLMProvider] = None,
        concurrency: int = settings.BATCH_CONCURRENCY,
        cancel: Optional[asyncio.Event] = None,
    ) -> BatchResult:
        """
        Analyze many documents concurrently against one snapshot.

        A failing document is reported in its own BatchItem and never
        aborts the batch. Once ``cancel`` is set, documents that have
        not started are reported as skipped.
        """
        snapshot = self.store.snapshot()
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def _analyze_one(doc: ModuleInput) -> BatchItem:
            async with semaphore:
                if cancel is not None and cancel.is_set():
                    return BatchItem(doc.document_id, skipped=True)
                try:
                    report = await self.analyze(doc, llm=llm, snapshot=snapshot)
                except Exception as e:
                    logger.error(
                        "Document analysis failed: %s", e,
                        extra={"document_id": doc.document_id, "error_type": type(e).__name__},
                        exc_info=True,
                    )
                    return BatchItem(doc.document_id, error=f"{type(e).__name__}: {e}")
                return BatchItem(doc.document_id, report=report)

        results = await asyncio.gather(
            *[_analyze_one(doc) for doc in docs],
            return_exceptions=True,
        )

        items = [
            r if isinstance(r, BatchItem)
            else BatchItem(doc.document_id, error=f"{type(r).__name__}: {r}")
            for doc, r in zip(docs, results)
        ]
        batch = BatchResult(items)
        logger.info(
            "Batch complete: %d/%d analyzed, %d failed, %d skipped",
            batch.analyzed, batch.total, batch.failed, batch.skipped,
            extra={"snapshot_version": snapshot.version},
        )
        return batch
