"""
Learning Log — SHA-256 hash-chained record of learning decisions.

Every false-positive report, suggestion transition and exception change
is appended here. Each entry hashes the previous entry's hash together
with its own content, so editing any stored row breaks verify_chain().
"""

import hashlib
import json
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Optional

from medcheck.config import settings

GENESIS_HASH = "0" * 64


def _entry_hash(prev_hash: str, event_type: str, data_str: str, timestamp: str, version: str) -> str:
    chain_input = f"{prev_hash}{event_type}{data_str}{timestamp}{version}"
    return hashlib.sha256(chain_input.encode()).hexdigest()


class LearningLog:
    """Append-only, hash-chained event log backed by SQLite."""

    def __init__(self, db_path: str = settings.LEARNING_LOG_DB_PATH):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS learning_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    prev_hash TEXT NOT NULL,
                    hash TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    data TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    engine_version TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_learning_event_type
                ON learning_log(event_type)
            """)
            conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def log(self, event_type: str, data: Any, engine_version: str = settings.ENGINE_VERSION) -> str:
        """Append one event. Returns the new entry's hash."""
        with self._lock:
            with self._get_conn() as conn:
                row = conn.execute(
                    "SELECT hash FROM learning_log ORDER BY id DESC LIMIT 1"
                ).fetchone()
                prev_hash = row[0] if row else GENESIS_HASH
                timestamp = datetime.now(timezone.utc).isoformat()
                data_str = json.dumps(data, default=str, ensure_ascii=False, sort_keys=True)
                new_hash = _entry_hash(prev_hash, event_type, data_str, timestamp, engine_version)

                conn.execute(
                    """INSERT INTO learning_log
                       (prev_hash, hash, event_type, data, timestamp, engine_version)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (prev_hash, new_hash, event_type, data_str, timestamp, engine_version),
                )
                conn.commit()
                return new_hash

    def get_recent(self, limit: int = 20, event_type: Optional[str] = None) -> list[dict]:
        query = (
            "SELECT id, prev_hash, hash, event_type, data, timestamp, engine_version "
            "FROM learning_log"
        )
        params: list[Any] = []
        if event_type:
            query += " WHERE event_type = ?"
            params.append(event_type)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._get_conn() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            {
                "id": r[0], "prev_hash": r[1], "hash": r[2],
                "event_type": r[3], "data": json.loads(r[4]),
                "timestamp": r[5], "engine_version": r[6],
            }
            for r in rows
        ]

    def verify_chain(self, limit: Optional[int] = None) -> dict:
        """Recompute hashes from the first entry and report every broken link."""
        query = (
            "SELECT id, prev_hash, hash, event_type, data, timestamp, engine_version "
            "FROM learning_log ORDER BY id ASC"
        )
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self._get_conn() as conn:
            rows = conn.execute(query, params).fetchall()

        broken = []
        expected_prev = GENESIS_HASH
        for entry_id, prev_hash, stored_hash, event_type, data_str, timestamp, version in rows:
            if prev_hash != expected_prev:
                broken.append({
                    "id": entry_id,
                    "issue": "chain_break",
                    "expected_prev": expected_prev,
                    "stored_prev": prev_hash,
                })
            computed = _entry_hash(prev_hash, event_type, data_str, timestamp, version)
            if computed != stored_hash:
                broken.append({
                    "id": entry_id,
                    "issue": "hash_mismatch",
                    "expected": computed,
                    "stored": stored_hash,
                })
            expected_prev = stored_hash

        return {
            "verified": not broken,
            "entries_checked": len(rows),
            "broken_links": broken,
        }

    def get_count(self) -> int:
        with self._get_conn() as conn:
            row = conn.execute("SELECT COUNT(*) FROM learning_log").fetchone()
            return row[0] if row else 0
