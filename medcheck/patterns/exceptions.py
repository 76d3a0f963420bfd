"""
Exception Rule Store — persisted suppression rules.

Every exception rule belongs to exactly one pattern. Rules are never
hard-deleted: deactivation flips ``is_active`` to 0 and the filter
ignores inactive rules from then on.

hit_count is the only counter the matching pass writes back. Each
suppression event is a single ``hit_count = hit_count + 1`` statement
under the store lock, so concurrent analyses sharing one snapshot
cannot lose increments.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from medcheck.errors import NotFoundError
from medcheck.models import ContextType, ExceptionRule, ExceptionType

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, pattern_id, exception_type, exception_value, is_active, hit_count, "
    "source_fp_ids, created_reason, created_at, created_by"
)


def _row_to_rule(row: tuple) -> ExceptionRule:
    return ExceptionRule(
        id=row[0],
        pattern_id=row[1],
        exception_type=ExceptionType(row[2]),
        value=row[3],
        is_active=bool(row[4]),
        hit_count=row[5],
        source_fp_ids=tuple(json.loads(row[6] or "[]")),
        created_reason=row[7] or "",
        created_by=row[9] or "system",
    )


def validate_exception_value(exception_type: ExceptionType, value: str) -> None:
    """Reject values the filter could never evaluate."""
    if not value or not value.strip():
        raise ValueError("Exception value must not be empty")
    if exception_type is ExceptionType.REGEX:
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"Invalid exception regex {value!r}: {e}") from e
    elif exception_type is ExceptionType.CONTEXT:
        from medcheck.exception_filter import parse_context_value
        if parse_context_value(value) is None:
            raise ValueError(
                f"Unknown context {value!r}. Expected one of "
                f"{[c.value for c in ContextType]}"
            )
    elif exception_type is ExceptionType.COMPOSITE:
        try:
            parts = json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"Composite exception must be a JSON list: {e}") from e
        if not isinstance(parts, list) or not parts:
            raise ValueError("Composite exception must be a non-empty JSON list")
        for part in parts:
            if not isinstance(part, dict) or "type" not in part or "value" not in part:
                raise ValueError("Composite parts need 'type' and 'value'")
            sub_type = ExceptionType(part["type"])
            if sub_type is ExceptionType.COMPOSITE:
                raise ValueError("Composite exceptions cannot nest")
            validate_exception_value(sub_type, str(part["value"]))


class ExceptionRuleStore:
    """SQLite-backed exception rules with atomic hit counting."""

    def __init__(self, db_path: str = "medcheck_exceptions.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._audit_fn: Optional[Callable[[str, dict], object]] = None
        self._init_db()

    def set_audit_logger(self, audit_fn):
        """Wire in the learning log: fn(event_type, data)."""
        self._audit_fn = audit_fn

    def _init_db(self):
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pattern_exceptions (
                    id TEXT PRIMARY KEY,
                    pattern_id TEXT NOT NULL,
                    exception_type TEXT NOT NULL,
                    exception_value TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    hit_count INTEGER NOT NULL DEFAULT 0,
                    source_fp_ids TEXT NOT NULL DEFAULT '[]',
                    created_reason TEXT,
                    created_at TEXT NOT NULL,
                    created_by TEXT,
                    last_hit_at TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_exceptions_pattern
                ON pattern_exceptions(pattern_id, is_active)
            """)
            conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _audit(self, event_type: str, data: dict) -> None:
        if self._audit_fn:
            self._audit_fn(event_type, data)

    def add(
        self,
        pattern_id: str,
        exception_type: ExceptionType | str,
        value: str,
        created_reason: str = "",
        created_by: str = "system",
        source_fp_ids: tuple[str, ...] | list[str] = (),
    ) -> ExceptionRule:
        exception_type = ExceptionType(exception_type)
        validate_exception_value(exception_type, value)

        rule_id = f"EXC-{uuid.uuid4().hex[:10]}"
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            with self._get_conn() as conn:
                conn.execute(
                    """INSERT INTO pattern_exceptions
                       (id, pattern_id, exception_type, exception_value, is_active,
                        hit_count, source_fp_ids, created_reason, created_at, created_by)
                       VALUES (?, ?, ?, ?, 1, 0, ?, ?, ?, ?)""",
                    (
                        rule_id, pattern_id, exception_type.value, value,
                        json.dumps(list(source_fp_ids)), created_reason, now, created_by,
                    ),
                )
                conn.commit()

        self._audit("exception_created", {
            "exception_id": rule_id,
            "pattern_id": pattern_id,
            "exception_type": exception_type.value,
            "value": value,
            "created_by": created_by,
        })
        logger.info("Exception rule created", extra={
            "exception_id": rule_id, "pattern_id": pattern_id,
        })
        return self.get(rule_id)

    def get(self, rule_id: str) -> ExceptionRule:
        with self._get_conn() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM pattern_exceptions WHERE id = ?",
                (rule_id,),
            ).fetchone()
        if not row:
            raise NotFoundError(f"Exception rule {rule_id} not found")
        return _row_to_rule(row)

    def list_rules(
        self, pattern_id: Optional[str] = None, active_only: bool = False
    ) -> list[ExceptionRule]:
        query = f"SELECT {_COLUMNS} FROM pattern_exceptions"
        clauses, params = [], []
        if pattern_id is not None:
            clauses.append("pattern_id = ?")
            params.append(pattern_id)
        if active_only:
            clauses.append("is_active = 1")
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at, id"
        with self._get_conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_rule(r) for r in rows]

    def _set_active(self, rule_id: str, active: bool) -> ExceptionRule:
        with self._lock:
            with self._get_conn() as conn:
                cur = conn.execute(
                    "UPDATE pattern_exceptions SET is_active = ? WHERE id = ?",
                    (1 if active else 0, rule_id),
                )
                conn.commit()
                if cur.rowcount == 0:
                    raise NotFoundError(f"Exception rule {rule_id} not found")

        self._audit(
            "exception_activated" if active else "exception_deactivated",
            {"exception_id": rule_id},
        )
        return self.get(rule_id)

    def deactivate(self, rule_id: str) -> ExceptionRule:
        return self._set_active(rule_id, False)

    def activate(self, rule_id: str) -> ExceptionRule:
        return self._set_active(rule_id, True)

    def record_hit(self, rule_id: str) -> int:
        """Increment hit_count by exactly one. Returns the new count."""
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            with self._get_conn() as conn:
                conn.execute(
                    """UPDATE pattern_exceptions
                       SET hit_count = hit_count + 1, last_hit_at = ?
                       WHERE id = ?""",
                    (now, rule_id),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT hit_count FROM pattern_exceptions WHERE id = ?",
                    (rule_id,),
                ).fetchone()
        if not row:
            raise NotFoundError(f"Exception rule {rule_id} not found")
        logger.debug("Exception hit", extra={"exception_id": rule_id})
        return row[0]
