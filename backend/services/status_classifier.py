"""Status classification into the three canonical workflow categories."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional


class CanonicalCategory(str, Enum):
    """Workflow bucket a status belongs to.

    Values mirror Jira's statusCategory keys: 'new' (To Do),
    'indeterminate' (In Progress) and 'done' (Done).
    """

    NOT_STARTED = "new"
    ACTIVE = "indeterminate"
    DONE = "done"

    @classmethod
    def from_jira_key(cls, key: Optional[str]) -> "CanonicalCategory":
        """Map a Jira statusCategory key, treating anything unknown as ACTIVE."""
        key = (key or "").strip().lower()
        if key == "done":
            return cls.DONE
        if key == "new":
            return cls.NOT_STARTED
        return cls.ACTIVE


def normalize_name(name: Optional[str]) -> str:
    return (name or "").strip().lower()


@dataclass(frozen=True)
class StatusEntry:
    id: str
    name: str
    category: CanonicalCategory


@dataclass(frozen=True)
class StatusBucket:
    by_id: dict = field(default_factory=dict)
    by_name: dict = field(default_factory=dict)

    def add(self, entry: StatusEntry):
        self.by_id[entry.id] = entry
        key = normalize_name(entry.name)
        # First entry wins when two statuses share a name
        if key not in self.by_name:
            self.by_name[key] = entry


@dataclass(frozen=True)
class StatusTable:
    """Per-project lookup from status id/name to canonical category.

    Lookups may be scoped to a work item type through ``by_issue_type``,
    for projects whose workflows differ per type.
    """

    by_id: dict = field(default_factory=dict)
    by_name: dict = field(default_factory=dict)
    by_issue_type: dict = field(default_factory=dict)

    @classmethod
    def from_entries(cls, entries: Iterable[StatusEntry]) -> "StatusTable":
        bucket = StatusBucket()
        for entry in entries:
            bucket.add(entry)
        return cls(by_id=bucket.by_id, by_name=bucket.by_name)

    @classmethod
    def from_project_statuses(cls, payload: list) -> "StatusTable":
        """Build from the /rest/api/3/project/{key}/statuses response.

        The payload is a list of issue types, each carrying its statuses.
        """
        project_wide = StatusBucket()
        per_type = {}

        for issue_type in payload or []:
            type_key = normalize_name(issue_type.get("name"))
            bucket = per_type.setdefault(type_key, StatusBucket())
            for status in issue_type.get("statuses", []) or []:
                entry = _entry_from_status(status)
                bucket.add(entry)
                if entry.id not in project_wide.by_id:
                    project_wide.add(entry)

        return cls(
            by_id=project_wide.by_id,
            by_name=project_wide.by_name,
            by_issue_type=per_type
        )

    @classmethod
    def from_statuses(cls, payload: list) -> "StatusTable":
        """Build from the global /rest/api/3/status response."""
        return cls.from_entries(_entry_from_status(s) for s in payload or [])

    @property
    def is_empty(self) -> bool:
        return not self.by_id and not self.by_issue_type

    def entries(self) -> list:
        return list(self.by_id.values())

    def names_in(self, category: CanonicalCategory) -> list:
        return [e.name for e in self.by_id.values() if e.category == category]

    def start_statuses(self) -> list:
        """Statuses that mean work has started."""
        return self.names_in(CanonicalCategory.ACTIVE)

    def done_statuses(self) -> list:
        """Statuses that mean work is finished."""
        return self.names_in(CanonicalCategory.DONE)


def _entry_from_status(status: dict) -> StatusEntry:
    category_key = (status.get("statusCategory") or {}).get("key")
    return StatusEntry(
        id=str(status.get("id", "")),
        name=status.get("name", ""),
        category=CanonicalCategory.from_jira_key(category_key)
    )


@dataclass(frozen=True)
class Classification:
    """Outcome of a classification, with the path that produced it."""

    category: CanonicalCategory
    source: str

    @property
    def heuristic(self) -> bool:
        return self.source == "heuristic"


# Checked in order: done-like terms first, then not-started-like terms.
# Anything else is assumed to be in flight.
DONE_TERMS = (
    "done", "closed", "resolved", "complete", "released", "deployed",
    "finished", "delivered", "published", "cancelled", "canceled",
    "declined", "rejected", "won't", "wont", "duplicate", "archived",
    "terminé", "résolu"
)
NOT_STARTED_TERMS = (
    "to do", "todo", "open", "backlog", "new", "created",
    "à faire", "nouveau"
)


def heuristic_category(name: Optional[str]) -> CanonicalCategory:
    """Guess a category from vocabulary in the status name."""
    lowered = normalize_name(name)
    if any(term in lowered for term in DONE_TERMS):
        return CanonicalCategory.DONE
    if any(term in lowered for term in NOT_STARTED_TERMS):
        return CanonicalCategory.NOT_STARTED
    return CanonicalCategory.ACTIVE


def _exact_match(value: str, table: StatusTable,
                 item_type: Optional[str]) -> Optional[Classification]:
    bucket = None
    if item_type and table.by_issue_type:
        bucket = table.by_issue_type.get(normalize_name(item_type))

    if bucket and value in bucket.by_id:
        return Classification(bucket.by_id[value].category, "type-id")
    if value in table.by_id:
        return Classification(table.by_id[value].category, "id")

    key = normalize_name(value)
    if bucket and key in bucket.by_name:
        return Classification(bucket.by_name[key].category, "type-name")
    if key in table.by_name:
        return Classification(table.by_name[key].category, "name")
    return None


def resolve(status: Optional[str], table: Optional[StatusTable],
            item_type: Optional[str] = None) -> Classification:
    """Classify a status id or name, reporting which lookup matched."""
    return resolve_first([status], table, item_type)


def resolve_first(candidates: Iterable[Optional[str]], table: Optional[StatusTable],
                  item_type: Optional[str] = None) -> Classification:
    """Classify the first candidate that has an exact match in the table.

    Candidates are typically a transition's status id followed by its
    display name. When none match exactly, the heuristic runs on the last
    non-empty candidate (the most human-readable one).
    """
    values = [str(c) for c in candidates if c not in (None, "")]
    if table is not None:
        for value in values:
            match = _exact_match(value, table, item_type)
            if match:
                return match

    label = values[-1] if values else ""
    return Classification(heuristic_category(label), "heuristic")


def classify(status: Optional[str], table: Optional[StatusTable],
             item_type: Optional[str] = None) -> CanonicalCategory:
    return resolve(status, table, item_type).category
