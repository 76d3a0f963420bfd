"""
Prompt Builder — briefs the external model with the current rule set.

The model sees the same patterns, negative list, disclaimer rules,
department rules, context exceptions and section weights the rule
engine works from, so every patternId it returns can be checked against
the snapshot by the auditor.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Optional

from medcheck.models import CompoundOperator, Pattern
from medcheck.patterns.store import (
    ContextExceptionNote,
    DepartmentRule,
    PatternSnapshot,
    SectionWeight,
)


# ============================================================
# PROMPT TEMPLATES
# ============================================================

SYSTEM_ROLE = (
    "You are a compliance reviewer for Korean medical advertising under the "
    "Medical Service Act (의료법 제56조) and its enforcement decree. You report "
    "only violations that match a pattern id from the dictionary below."
)

VIOLATION_PROMPT = """## 1. Violation patterns
Use ONLY these pattern ids. Never invent an id.
{patterns}

## 2. Negative list (never a violation on its own)
{negative_list}

## 3. Disclaimer rules
A nearby disclaimer lowers severity by one level unless the pattern is marked absolute.
{disclaimers}

## 4. Department rules
{department_rules}

## 5. Context exceptions
{context_exceptions}

## 6. Section weights
{section_weights}
{gray_zone_block}
## Instructions
1. Split the document into sections (treatment, event, faq, review, doctor, default) with character offsets.
2. For every violation, quote the EXACT original text and give the patternId from section 1.
3. Set disclaimerPresent=true and adjustedSeverity one level lower when a disclaimer from section 3 applies.
4. Report evasion tactics that are not clear violations as gray_zones.
5. Check the mandatory items: hospital name, address, phone, department, doctor info, price disclosure.
6. confidence must be between 0.0 and 1.0.

## Output schema
{schema}

## Document
{text}

Return ONLY valid JSON."""

OUTPUT_SCHEMA = {
    "sections": [{"type": "treatment|event|faq|review|doctor|default",
                  "startIndex": 0, "endIndex": 0}],
    "violations": [{
        "patternId": "P-56-01-001",
        "category": "",
        "severity": "critical|major|minor|low",
        "originalText": "",
        "context": "",
        "sectionType": "default",
        "confidence": 0.0,
        "reasoning": "",
        "fromImage": False,
        "disclaimerPresent": False,
        "adjustedSeverity": None,
    }],
    "gray_zones": [{"evasion_type": "", "evasion_category": "structural|wording|visual|platform",
                    "evasion_description": "", "legal_target": "",
                    "target_violation_type": "", "evidence": "", "confidence": 0.0}],
    "mandatory_items": {
        "hospital_name": {"found": False, "value": None},
        "address": {"found": False, "value": None},
        "phone": {"found": False, "value": None},
        "department": {"found": False, "value": None},
        "doctor_info": {"found": False, "value": None},
        "price_disclosure": {"found": False, "value": None, "applicable": False},
    },
    "summary": {"total_violations": 0, "by_severity": {}, "gray_zone_count": 0,
                "mandatory_missing": 0, "overall_risk": "low|medium|high|critical"},
    "checklist_verification": {},
}


# ============================================================
# CONFIG
# ============================================================

@dataclass
class PromptConfig:
    patterns: list[Pattern]
    negative_list: list[str] = field(default_factory=list)
    disclaimers: list[str] = field(default_factory=list)
    department_rules: list[DepartmentRule] = field(default_factory=list)
    context_exceptions: list[ContextExceptionNote] = field(default_factory=list)
    section_weights: list[SectionWeight] = field(default_factory=list)
    gray_zone_examples: list[str] = field(default_factory=list)

    @classmethod
    def from_snapshot(
        cls,
        snapshot: PatternSnapshot,
        department: Optional[str] = None,
        gray_zone_examples: Optional[list[str]] = None,
    ) -> "PromptConfig":
        return cls(
            patterns=snapshot.enabled_patterns(department),
            negative_list=list(snapshot.negative_list),
            disclaimers=list(snapshot.disclaimers),
            department_rules=[
                r for r in snapshot.department_rules
                if department is None or r.department == department
            ],
            context_exceptions=list(snapshot.context_exceptions),
            section_weights=list(snapshot.section_weights),
            gray_zone_examples=list(gray_zone_examples or []),
        )


def _pattern_line(p: Pattern) -> str:
    if p.is_compound:
        joiner = " then " if p.operator is CompoundOperator.SEQUENCE else f" {p.operator.value} "
        trigger = "compound " + joiner.join(
            ("NOT " if c.exclusion else "") + (c.description or c.id) for c in p.conditions
        )
    elif p.is_keyword:
        trigger = "keywords " + ", ".join(p.keywords)
    else:
        trigger = f"regex /{p.regex}/"
    line = f"- {p.id} [{p.default_severity.value}] {p.name}: {trigger}"
    if p.absolute:
        line += " (absolute)"
    if p.example:
        line += f" e.g. \"{p.example}\""
    return line


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {i}" for i in items) if items else "- (none)"


def build_violation_prompt(config: PromptConfig, text: str) -> tuple[str, str]:
    """Return (system_instruction, prompt) for one document."""
    gray_zone_block = ""
    if config.gray_zone_examples:
        gray_zone_block = "\n## Known gray-zone tactics\n" + _bullets(config.gray_zone_examples) + "\n"

    prompt = VIOLATION_PROMPT.format(
        patterns="\n".join(_pattern_line(p) for p in config.patterns) or "- (none)",
        negative_list=_bullets(config.negative_list),
        disclaimers=_bullets(config.disclaimers),
        department_rules=_bullets([
            f"{r.id} [{r.department}, {r.severity.value}] {r.name}: {r.description}"
            for r in config.department_rules
        ]),
        context_exceptions=_bullets([
            f"{c.type}: {c.description}"
            + (f" (e.g. {' / '.join(c.examples)})" if c.examples else "")
            for c in config.context_exceptions
        ]),
        section_weights=_bullets([
            f"{w.type.value}: x{w.weight}" for w in config.section_weights
        ]),
        gray_zone_block=gray_zone_block,
        schema=json.dumps(OUTPUT_SCHEMA, ensure_ascii=False, indent=2),
        text=text,
    )
    return SYSTEM_ROLE, prompt
