"""
Feedback Store — false-positive cases and exception suggestions.

The governed path from a reviewer's "this is not a violation" to a new
exception rule:

  1. report_false_positive() records a case, classifying its context
  2. aggregate() groups open cases per pattern into suggestions
     (collecting → pending once enough distinct evidence exists)
  3. a reviewer approves or rejects the pending suggestion
  4. apply() turns an approved suggestion into an Exception Rule and
     resolves the cases it was built from

Nothing is ever applied without step 3. ``auto_apply_eligible`` only
marks suggestions a reviewer can approve with little risk.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from medcheck.config import settings
from medcheck.context import ContextClassifier
from medcheck.errors import NotFoundError
from medcheck.learning.states import (
    CASE_MACHINE,
    SUGGESTION_MACHINE,
    CaseStatus,
    SuggestionStatus,
)
from medcheck.models import ContextType, ExceptionRule, ExceptionType
from medcheck.patterns.exceptions import ExceptionRuleStore

logger = logging.getLogger(__name__)

KEYWORD_SHARE = 0.7

_TOKEN = re.compile(r"[가-힣A-Za-z0-9]+")

_STOPWORDS = frozenset({
    "및", "등", "또는", "그리고", "하지만", "위해", "통해", "대한", "있는", "있습니다",
    "합니다", "입니다", "했습니다", "수", "것", "더", "이", "그", "저", "를", "을",
    "the", "and", "for", "with", "this", "that", "are", "was",
})


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass(frozen=True)
class FalsePositiveCase:
    id: str
    pattern_id: str
    matched_text: str
    full_context: str
    context_type: ContextType
    status: CaseStatus
    reporter: str
    reason: str
    document_id: Optional[str]
    suggestion_id: Optional[str]
    created_at: str
    resolved_at: Optional[str]


@dataclass(frozen=True)
class ExceptionSuggestion:
    id: str
    pattern_id: str
    exception_type: ExceptionType
    value: str
    status: SuggestionStatus
    confidence: float
    occurrence_count: int
    distinct_contexts: int
    source_fp_ids: tuple[str, ...]
    auto_apply_eligible: bool
    exception_id: Optional[str]
    reviewer: str
    review_note: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class PatternFPStats:
    pattern_id: str
    total_detections: int
    false_positives: int
    fp_rate: float
    confidence_penalty: float
    flagged: bool


def suggestion_confidence(occurrences: int) -> float:
    return round(min(0.95, 0.5 + 0.05 * occurrences), 4)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_context(text: str) -> str:
    return " ".join(text.lower().split())


# ============================================================
# STORE
# ============================================================

_CASE_COLUMNS = (
    "id, pattern_id, matched_text, full_context, context_type, status, reporter, "
    "reason, document_id, suggestion_id, created_at, resolved_at"
)
_SUGGESTION_COLUMNS = (
    "id, pattern_id, exception_type, exception_value, status, confidence, "
    "occurrence_count, distinct_contexts, source_fp_ids, auto_apply_eligible, "
    "exception_id, reviewer, review_note, created_at, updated_at"
)


def _row_to_case(r: tuple) -> FalsePositiveCase:
    return FalsePositiveCase(
        id=r[0], pattern_id=r[1], matched_text=r[2], full_context=r[3],
        context_type=ContextType(r[4]), status=CaseStatus(r[5]),
        reporter=r[6] or "", reason=r[7] or "", document_id=r[8],
        suggestion_id=r[9], created_at=r[10], resolved_at=r[11],
    )


def _row_to_suggestion(r: tuple) -> ExceptionSuggestion:
    return ExceptionSuggestion(
        id=r[0], pattern_id=r[1], exception_type=ExceptionType(r[2]), value=r[3],
        status=SuggestionStatus(r[4]), confidence=r[5], occurrence_count=r[6],
        distinct_contexts=r[7], source_fp_ids=tuple(json.loads(r[8] or "[]")),
        auto_apply_eligible=bool(r[9]), exception_id=r[10],
        reviewer=r[11] or "", review_note=r[12] or "",
        created_at=r[13], updated_at=r[14],
    )


class FeedbackStore:
    """SQLite-backed false-positive cases and exception suggestions."""

    def __init__(
        self,
        exception_store: ExceptionRuleStore,
        db_path: str = settings.FEEDBACK_DB_PATH,
        classifier: Optional[ContextClassifier] = None,
        min_occurrences: int = settings.SUGGESTION_MIN_OCCURRENCES,
        min_contexts: int = settings.SUGGESTION_MIN_CONTEXTS,
        auto_apply_confidence: float = settings.AUTO_APPLY_CONFIDENCE,
    ):
        self.db_path = db_path
        self.exception_store = exception_store
        self.classifier = classifier or ContextClassifier()
        self.min_occurrences = min_occurrences
        self.min_contexts = min_contexts
        self.auto_apply_confidence = auto_apply_confidence
        self._lock = threading.Lock()
        self._audit_fn: Optional[Callable[[str, dict], object]] = None
        self._init_db()

    def set_audit_logger(self, audit_fn):
        """Wire in the learning log: fn(event_type, data)."""
        self._audit_fn = audit_fn

    def _audit(self, event_type: str, data: dict) -> None:
        if self._audit_fn:
            self._audit_fn(event_type, data)

    def _init_db(self):
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS false_positive_cases (
                    id TEXT PRIMARY KEY,
                    pattern_id TEXT NOT NULL,
                    matched_text TEXT NOT NULL,
                    full_context TEXT NOT NULL,
                    context_type TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    reporter TEXT,
                    reason TEXT,
                    document_id TEXT,
                    suggestion_id TEXT,
                    created_at TEXT NOT NULL,
                    resolved_at TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS exception_suggestions (
                    id TEXT PRIMARY KEY,
                    pattern_id TEXT NOT NULL,
                    exception_type TEXT NOT NULL,
                    exception_value TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'collecting',
                    confidence REAL NOT NULL,
                    occurrence_count INTEGER NOT NULL DEFAULT 0,
                    distinct_contexts INTEGER NOT NULL DEFAULT 0,
                    source_fp_ids TEXT NOT NULL DEFAULT '[]',
                    auto_apply_eligible INTEGER NOT NULL DEFAULT 0,
                    exception_id TEXT,
                    reviewer TEXT,
                    review_note TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pattern_detections (
                    pattern_id TEXT PRIMARY KEY,
                    total INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_fp_pattern_status
                ON false_positive_cases(pattern_id, status)
            """)
            conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    # --- False-positive cases ---

    def report_false_positive(
        self,
        pattern_id: str,
        matched_text: str,
        full_context: str,
        reporter: str = "",
        reason: str = "",
        document_id: Optional[str] = None,
    ) -> FalsePositiveCase:
        if not matched_text:
            raise ValueError("matched_text must not be empty")
        start = full_context.find(matched_text)
        if start >= 0:
            context_type, _ = self.classifier.classify_in_text(
                full_context, start, start + len(matched_text)
            )
        else:
            context_type = self.classifier.classify(matched_text, full_context)

        case_id = f"FP-{uuid.uuid4().hex[:10]}"
        with self._lock:
            with self._get_conn() as conn:
                conn.execute(
                    f"""INSERT INTO false_positive_cases ({_CASE_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?, NULL, ?, NULL)""",
                    (
                        case_id, pattern_id, matched_text, full_context,
                        context_type.value, reporter, reason, document_id, _now(),
                    ),
                )
                conn.commit()

        self._audit("fp_reported", {
            "case_id": case_id,
            "pattern_id": pattern_id,
            "matched_text": matched_text,
            "context_type": context_type.value,
        })
        logger.info("False positive reported", extra={"case_id": case_id, "pattern_id": pattern_id})
        return self.get_case(case_id)

    def get_case(self, case_id: str) -> FalsePositiveCase:
        with self._get_conn() as conn:
            row = conn.execute(
                f"SELECT {_CASE_COLUMNS} FROM false_positive_cases WHERE id = ?",
                (case_id,),
            ).fetchone()
        if not row:
            raise NotFoundError(f"False-positive case {case_id} not found")
        return _row_to_case(row)

    def list_cases(
        self, pattern_id: Optional[str] = None, status: Optional[CaseStatus] = None
    ) -> list[FalsePositiveCase]:
        query = f"SELECT {_CASE_COLUMNS} FROM false_positive_cases"
        clauses, params = [], []
        if pattern_id is not None:
            clauses.append("pattern_id = ?")
            params.append(pattern_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(CaseStatus(status).value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at, id"
        with self._get_conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_case(r) for r in rows]

    def transition_case(self, case_id: str, target: CaseStatus | str) -> FalsePositiveCase:
        target = CaseStatus(target)
        with self._lock:
            case = self.get_case(case_id)
            CASE_MACHINE.transition(case.status, target)
            with self._get_conn() as conn:
                conn.execute(
                    "UPDATE false_positive_cases SET status = ?, resolved_at = ? WHERE id = ?",
                    (target.value, _now() if target is CaseStatus.RESOLVED else None, case_id),
                )
                conn.commit()

        self._audit("fp_case_transition", {
            "case_id": case_id, "from": case.status.value, "to": target.value,
        })
        return self.get_case(case_id)

    # --- Detection counts and FP statistics ---

    def record_detections(self, pattern_ids: Iterable[str]) -> None:
        """Count rule-engine detections per pattern, for FP rates."""
        counts = Counter(pattern_ids)
        if not counts:
            return
        with self._lock:
            with self._get_conn() as conn:
                for pattern_id, n in counts.items():
                    conn.execute(
                        """INSERT INTO pattern_detections (pattern_id, total) VALUES (?, ?)
                           ON CONFLICT(pattern_id) DO UPDATE SET total = total + excluded.total""",
                        (pattern_id, n),
                    )
                conn.commit()

    def pattern_stats(self, pattern_id: str) -> PatternFPStats:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT total FROM pattern_detections WHERE pattern_id = ?", (pattern_id,),
            ).fetchone()
            fp_row = conn.execute(
                "SELECT COUNT(*) FROM false_positive_cases WHERE pattern_id = ?", (pattern_id,),
            ).fetchone()
        fps = fp_row[0] if fp_row else 0
        # Reports can arrive for detections counted elsewhere
        total = max(row[0] if row else 0, fps)
        rate = round(fps / total, 4) if total else 0.0
        return PatternFPStats(
            pattern_id=pattern_id,
            total_detections=total,
            false_positives=fps,
            fp_rate=rate,
            confidence_penalty=min(rate, 0.5),
            flagged=rate >= 0.5,
        )

    def all_stats(self) -> list[PatternFPStats]:
        with self._get_conn() as conn:
            ids = {r[0] for r in conn.execute("SELECT pattern_id FROM pattern_detections")}
            ids |= {r[0] for r in conn.execute("SELECT DISTINCT pattern_id FROM false_positive_cases")}
        return [self.pattern_stats(pid) for pid in sorted(ids)]

    # --- Suggestions ---

    def get_suggestion(self, suggestion_id: str) -> ExceptionSuggestion:
        with self._get_conn() as conn:
            row = conn.execute(
                f"SELECT {_SUGGESTION_COLUMNS} FROM exception_suggestions WHERE id = ?",
                (suggestion_id,),
            ).fetchone()
        if not row:
            raise NotFoundError(f"Exception suggestion {suggestion_id} not found")
        return _row_to_suggestion(row)

    def list_suggestions(
        self, pattern_id: Optional[str] = None, status: Optional[SuggestionStatus] = None
    ) -> list[ExceptionSuggestion]:
        query = f"SELECT {_SUGGESTION_COLUMNS} FROM exception_suggestions"
        clauses, params = [], []
        if pattern_id is not None:
            clauses.append("pattern_id = ?")
            params.append(pattern_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(SuggestionStatus(status).value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at, id"
        with self._get_conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_suggestion(r) for r in rows]

    @staticmethod
    def _shared_keyword(cases: list[FalsePositiveCase]) -> Optional[str]:
        """The word present in at least KEYWORD_SHARE of the cases' contexts."""
        doc_freq: Counter = Counter()
        for case in cases:
            matched = case.matched_text.lower()
            words = {
                w for w in _TOKEN.findall(case.full_context.lower())
                if len(w) >= 2 and w not in _STOPWORDS and w not in matched and matched not in w
            }
            doc_freq.update(words)
        needed = KEYWORD_SHARE * len(cases)
        shared = [(n, w) for w, n in doc_freq.items() if n >= needed]
        if not shared:
            return None
        shared.sort(key=lambda item: (-item[0], item[1]))
        return shared[0][1]

    def _group(self, cases: list[FalsePositiveCase]) -> dict[tuple[str, ExceptionType, str], list[FalsePositiveCase]]:
        groups: dict[tuple[str, ExceptionType, str], list[FalsePositiveCase]] = {}
        by_pattern: dict[str, list[FalsePositiveCase]] = {}
        for case in cases:
            by_pattern.setdefault(case.pattern_id, []).append(case)

        for pattern_id, items in sorted(by_pattern.items()):
            normal = []
            for case in items:
                if case.context_type is ContextType.NORMAL:
                    normal.append(case)
                else:
                    key = (pattern_id, ExceptionType.CONTEXT, case.context_type.value)
                    groups.setdefault(key, []).append(case)
            if normal:
                keyword = self._shared_keyword(normal)
                if keyword is not None:
                    groups[(pattern_id, ExceptionType.KEYWORD, keyword)] = normal
        return groups

    def aggregate(self, pattern_id: Optional[str] = None) -> list[ExceptionSuggestion]:
        """
        Fold open false-positive cases into suggestions.

        Returns the suggestions that were created or updated.
        """
        open_cases = [
            c for c in self.list_cases(pattern_id=pattern_id)
            if c.status is not CaseStatus.RESOLVED
        ]
        touched: list[str] = []
        events: list[tuple[str, dict]] = []
        with self._lock:
            with self._get_conn() as conn:
                for (pid, exc_type, value), cases in self._group(open_cases).items():
                    touched.append(self._upsert_suggestion(conn, pid, exc_type, value, cases, events))
                conn.commit()
        for event_type, data in events:
            self._audit(event_type, data)

        results = [self.get_suggestion(sid) for sid in touched]
        for s in results:
            logger.info(
                "Suggestion %s (%s=%s, n=%d)", s.status.value, s.exception_type.value,
                s.value, s.occurrence_count, extra={"suggestion_id": s.id, "pattern_id": s.pattern_id},
            )
        return results

    def _upsert_suggestion(
        self,
        conn: sqlite3.Connection,
        pattern_id: str,
        exc_type: ExceptionType,
        value: str,
        cases: list[FalsePositiveCase],
        events: list[tuple[str, dict]],
    ) -> str:
        row = conn.execute(
            f"""SELECT {_SUGGESTION_COLUMNS} FROM exception_suggestions
                WHERE pattern_id = ? AND exception_type = ? AND exception_value = ?
                  AND status IN ('collecting', 'pending')""",
            (pattern_id, exc_type.value, value),
        ).fetchone()

        existing = _row_to_suggestion(row) if row else None
        fp_ids = list(existing.source_fp_ids) if existing else []
        fp_ids += [c.id for c in cases if c.id not in fp_ids]
        contexts = {
            _normalize_context(r[0])
            for r in conn.execute(
                f"SELECT full_context FROM false_positive_cases WHERE id IN ({','.join('?' * len(fp_ids))})",
                fp_ids,
            )
        }
        n = len(fp_ids)
        confidence = suggestion_confidence(n)
        eligible = confidence >= self.auto_apply_confidence
        now = _now()

        status = existing.status if existing else SuggestionStatus.COLLECTING
        if (
            status is SuggestionStatus.COLLECTING
            and n >= self.min_occurrences
            and len(contexts) >= self.min_contexts
        ):
            status = SUGGESTION_MACHINE.transition(status, SuggestionStatus.PENDING)

        if existing:
            suggestion_id = existing.id
            conn.execute(
                """UPDATE exception_suggestions
                   SET status = ?, confidence = ?, occurrence_count = ?, distinct_contexts = ?,
                       source_fp_ids = ?, auto_apply_eligible = ?, updated_at = ?
                   WHERE id = ?""",
                (status.value, confidence, n, len(contexts), json.dumps(fp_ids),
                 int(eligible), now, suggestion_id),
            )
        else:
            suggestion_id = f"SUG-{uuid.uuid4().hex[:10]}"
            conn.execute(
                f"""INSERT INTO exception_suggestions ({_SUGGESTION_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, '', '', ?, ?)""",
                (suggestion_id, pattern_id, exc_type.value, value, status.value, confidence,
                 n, len(contexts), json.dumps(fp_ids), int(eligible), now, now),
            )
        conn.executemany(
            "UPDATE false_positive_cases SET suggestion_id = ? WHERE id = ?",
            [(suggestion_id, cid) for cid in fp_ids],
        )

        events.append(("suggestion_updated" if existing else "suggestion_created", {
            "suggestion_id": suggestion_id,
            "pattern_id": pattern_id,
            "exception_type": exc_type.value,
            "value": value,
            "status": status.value,
            "occurrences": n,
            "distinct_contexts": len(contexts),
        }))
        return suggestion_id

    def _transition_suggestion(
        self,
        suggestion_id: str,
        target: SuggestionStatus,
        reviewer: str = "",
        note: str = "",
        exception_id: Optional[str] = None,
    ) -> ExceptionSuggestion:
        with self._lock:
            current = self.get_suggestion(suggestion_id)
            SUGGESTION_MACHINE.transition(current.status, target)
            with self._get_conn() as conn:
                conn.execute(
                    """UPDATE exception_suggestions
                       SET status = ?, reviewer = COALESCE(NULLIF(?, ''), reviewer),
                           review_note = COALESCE(NULLIF(?, ''), review_note),
                           exception_id = COALESCE(?, exception_id), updated_at = ?
                       WHERE id = ?""",
                    (target.value, reviewer, note, exception_id, _now(), suggestion_id),
                )
                conn.commit()

        self._audit("suggestion_transition", {
            "suggestion_id": suggestion_id,
            "from": current.status.value,
            "to": target.value,
            "reviewer": reviewer,
        })
        return self.get_suggestion(suggestion_id)

    def approve(self, suggestion_id: str, reviewer: str, note: str = "") -> ExceptionSuggestion:
        return self._transition_suggestion(suggestion_id, SuggestionStatus.APPROVED, reviewer, note)

    def reject(self, suggestion_id: str, reviewer: str, note: str = "") -> ExceptionSuggestion:
        return self._transition_suggestion(suggestion_id, SuggestionStatus.REJECTED, reviewer, note)

    def merge(self, suggestion_id: str, into_id: str, reviewer: str = "") -> ExceptionSuggestion:
        target = self.get_suggestion(into_id)
        return self._transition_suggestion(
            suggestion_id, SuggestionStatus.MERGED, reviewer, note=f"merged into {target.id}",
        )

    def apply(self, suggestion_id: str, applied_by: str) -> ExceptionRule:
        """Create the exception rule for an approved suggestion."""
        suggestion = self.get_suggestion(suggestion_id)
        SUGGESTION_MACHINE.transition(suggestion.status, SuggestionStatus.APPLIED)

        rule = self.exception_store.add(
            pattern_id=suggestion.pattern_id,
            exception_type=suggestion.exception_type,
            value=suggestion.value,
            created_reason=f"suggestion {suggestion.id}",
            created_by=applied_by,
            source_fp_ids=suggestion.source_fp_ids,
        )
        self._transition_suggestion(
            suggestion_id, SuggestionStatus.APPLIED, applied_by, exception_id=rule.id,
        )
        for case_id in suggestion.source_fp_ids:
            case = self.get_case(case_id)
            if case.status is not CaseStatus.RESOLVED:
                self.transition_case(case_id, CaseStatus.RESOLVED)

        logger.info(
            "Suggestion applied", extra={
                "suggestion_id": suggestion_id, "exception_id": rule.id,
                "pattern_id": rule.pattern_id,
            },
        )
        return rule
