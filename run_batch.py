#!/usr/bin/env python3
"""
run_batch.py — Analyze a batch of advertisement documents.

Input is JSON Lines, one document per line:
    {"id": "doc-1", "content": "...", "source": "blog", "metadata": {"department": "피부과"}}

Usage:
    python run_batch.py docs.jsonl                 # Rule-engine only
    python run_batch.py docs.jsonl --deep          # Rules + model, audited
    python run_batch.py docs.jsonl --json          # Output JSON only (for CI)
    python run_batch.py docs.jsonl --patterns my_patterns.json --concurrency 8
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from medcheck.analyzer import Analyzer, BatchResult
from medcheck.config import settings
from medcheck.llm.factory import get_provider
from medcheck.logging import setup_logging
from medcheck.models import ModuleInput
from medcheck.patterns import ExceptionRuleStore, PatternStore


def load_documents(path: Path) -> list[ModuleInput]:
    docs = []
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
        line = line.strip()
        if not line:
            continue
        try:
            raw = json.loads(line)
        except json.JSONDecodeError as e:
            raise ValueError(f"{path}:{lineno}: invalid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise ValueError(f"{path}:{lineno}: expected a JSON object")
        docs.append(ModuleInput.from_dict(raw))
    return docs


def format_report(batch: BatchResult) -> str:
    lines = [
        "=" * 60,
        "MEDCHECK BATCH REPORT",
        "=" * 60,
        f"Documents: {batch.total}  analyzed: {batch.analyzed}  "
        f"failed: {batch.failed}  skipped: {batch.skipped}",
        "",
    ]
    for item in batch.items:
        if item.report is None:
            status = "SKIPPED" if item.skipped else f"ERROR {item.error}"
            lines.append(f"[{item.document_id}] {status}")
            continue
        r = item.report
        flag = " (degraded)" if r.degraded else ""
        lines.append(
            f"[{item.document_id}] grade {r.grade.grade}  score {r.grade.clean_score}  "
            f"violations {len(r.output.violations)}{flag}"
        )
        for v in r.output.violations:
            lines.append(
                f"    - {v.pattern_id} [{v.severity.value}/{v.status.value}] "
                f"\"{v.matched_text}\" conf {v.confidence:.2f}"
            )
        for d in r.diagnostics:
            lines.append(f"    ! {d}")
        for w in r.warnings:
            lines.append(f"    ! {w}")
    return "\n".join(lines)


def main():
    parser = argparse.ArgumentParser(description="MedCheck Batch Runner")
    parser.add_argument("input", help="JSON Lines file with one document per line")
    parser.add_argument(
        "--patterns",
        default=settings.PATTERNS_PATH,
        help="Pattern file (default: packaged patterns.json)",
    )
    parser.add_argument(
        "--exceptions-db",
        default=settings.EXCEPTIONS_DB_PATH,
        help=f"Exception rule database (default: {settings.EXCEPTIONS_DB_PATH})",
    )
    parser.add_argument(
        "--deep",
        action="store_true",
        help="Also ask the configured model and audit its answer",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=settings.BATCH_CONCURRENCY,
        help=f"Documents analyzed at once (default: {settings.BATCH_CONCURRENCY})",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output JSON only (for CI/automation)",
    )
    args = parser.parse_args()

    setup_logging()

    input_path = Path(args.input)
    if not input_path.exists():
        print(f"Error: Input file not found: {input_path}")
        sys.exit(1)

    try:
        docs = load_documents(input_path)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    if not docs:
        print(f"Error: No documents found in {input_path}")
        sys.exit(1)

    store = PatternStore.from_file(
        args.patterns, exception_store=ExceptionRuleStore(args.exceptions_db),
    )
    analyzer = Analyzer(store)
    llm = get_provider() if args.deep else None

    batch = asyncio.run(analyzer.analyze_batch(docs, llm=llm, concurrency=args.concurrency))

    if args.json:
        print(json.dumps(batch.to_dict(), ensure_ascii=False, indent=2))
    else:
        print(format_report(batch))

    sys.exit(2 if batch.failed else 0)


if __name__ == "__main__":
    main()
