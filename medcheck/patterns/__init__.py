"""Pattern library, exception rules and snapshots."""

from medcheck.patterns.exceptions import ExceptionRuleStore
from medcheck.patterns.store import (
    ContextExceptionNote,
    DepartmentRule,
    PatternSnapshot,
    PatternStore,
    SectionWeight,
)

__all__ = [
    "ContextExceptionNote",
    "DepartmentRule",
    "ExceptionRuleStore",
    "PatternSnapshot",
    "PatternStore",
    "SectionWeight",
]
