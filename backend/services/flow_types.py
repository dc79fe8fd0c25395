"""Grouping of work item types into flow categories."""

import re
from typing import Optional

FEATURES = "features"
DEFECTS = "defects"
RISKS = "risks"
DEBT = "debt"
OTHER = "other"

# Evaluated in order, first match wins. Defects come before features so
# that "Bug Fix Task" counts as a defect rather than a task.
FLOW_PATTERNS = (
    (DEFECTS, ("bug", "defect", "error", "fix", "incident", "outage",
               "problem", "failure", "glitch")),
    (RISKS, ("risk", "security", "vulnerability", "audit", "compliance",
             "legal", "mitigation", "spike", "investigation", "analysis")),
    (DEBT, ("debt", "refactor", "improvement", "chore", "maintenance",
            "cleanup", "deprecation", "upgrade")),
    (FEATURES, ("story", "epic", "feature", "enhancement", "proposal",
                "request", "requirement", "sub-task", "task", "new",
                "initiative")),
)

_COMPILED = tuple(
    (category, tuple(re.compile(re.escape(p), re.IGNORECASE) for p in patterns))
    for category, patterns in FLOW_PATTERNS
)


def classify_flow_type(item_type: Optional[str]) -> str:
    normalized = (item_type or "").strip()
    if not normalized:
        return OTHER

    for category, patterns in _COMPILED:
        if any(p.search(normalized) for p in patterns):
            return category
    return OTHER


def flow_distribution(items: list) -> dict:
    """Count of items per flow category, plus the type mapping used."""
    counts = {category: 0 for category in (FEATURES, DEFECTS, RISKS, DEBT, OTHER)}
    mapping = {}
    for item in items:
        category = classify_flow_type(item.item_type)
        counts[category] += 1
        if item.item_type:
            mapping[item.item_type] = category
    return {"counts": counts, "typeMapping": mapping}
