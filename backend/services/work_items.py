"""Immutable work item records built from Jira issue payloads."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from services.status_classifier import CanonicalCategory, StatusTable, resolve_first

# Jira formats: "2024-10-31T12:11:56.289-0400", "2024-10-31T12:11:56.289Z"
DATE_FORMATS = [
    "%Y-%m-%dT%H:%M:%S.%f%z",   # With milliseconds and timezone
    "%Y-%m-%dT%H:%M:%S%z",      # Without milliseconds, with timezone
    "%Y-%m-%dT%H:%M:%S.%f",     # With milliseconds, no timezone
    "%Y-%m-%dT%H:%M:%S",        # Basic ISO format
    "%Y-%m-%d"                  # Date only
]


def parse_date(date_str: Optional[str]) -> Optional[datetime]:
    """Parse a Jira date string into an aware UTC datetime.

    Values without an offset are taken to be UTC.
    """
    if not date_str:
        return None

    for fmt in DATE_FORMATS:
        try:
            parsed = datetime.strptime(date_str, fmt)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    return None


@dataclass(frozen=True)
class TransitionEvent:
    """One changelog item. Values are status ids, labels display names."""

    timestamp: datetime
    field: str
    from_value: Optional[str] = None
    to_value: Optional[str] = None
    from_label: Optional[str] = None
    to_label: Optional[str] = None

    @property
    def is_status(self) -> bool:
        return self.field == "status"


@dataclass(frozen=True)
class WorkItemSnapshot:
    key: str
    created_at: datetime
    current_category: CanonicalCategory
    current_status_name: str = ""
    resolved_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    size_estimate: Optional[float] = None
    transitions: tuple = ()
    item_type: Optional[str] = None
    summary: str = ""
    assignee: Optional[str] = None
    priority: Optional[str] = None
    labels: tuple = ()
    current_status_id: Optional[str] = None
    classification_heuristic: bool = False

    @property
    def has_status_history(self) -> bool:
        return any(t.is_status for t in self.transitions)

    @property
    def completed_at(self) -> Optional[datetime]:
        return self.resolved_at or self.updated_at

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "summary": self.summary,
            "status": self.current_status_name,
            "statusCategory": self.current_category.value,
            "issueType": self.item_type,
            "assignee": self.assignee or "Unassigned",
            "priority": self.priority or "Medium",
            "created": self.created_at.isoformat(),
            "updated": self.updated_at.isoformat() if self.updated_at else None,
            "resolved": self.resolved_at.isoformat() if self.resolved_at else None,
            "sizeEstimate": self.size_estimate,
            "heuristicStatus": self.classification_heuristic
        }


@dataclass(frozen=True)
class Iteration:
    """A sprint and the items that were in it."""

    id: int
    name: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    items: tuple = ()
    fetch_failed: bool = False
    state: str = "closed"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state,
            "startDate": self.start.isoformat() if self.start else None,
            "endDate": self.end.isoformat() if self.end else None,
            "itemCount": len(self.items),
            "fetchFailed": self.fetch_failed
        }


def _size_estimate(fields: dict, size_fields: list) -> Optional[float]:
    for field_id in size_fields or []:
        value = fields.get(field_id)
        if value is None or isinstance(value, bool):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            pass
    return None


def transitions_from_changelog(issue: dict) -> tuple:
    """Status transitions from an issue's changelog, oldest first.

    The changelog can be at issue level (expand=changelog) or in fields.
    """
    fields = issue.get("fields", {}) or {}
    changelog = issue.get("changelog") or fields.get("changelog") or {}
    histories = changelog.get("histories", []) if isinstance(changelog, dict) else []

    events = []
    for history in histories:
        timestamp = parse_date(history.get("created"))
        if timestamp is None:
            continue
        for item in history.get("items", []):
            if item.get("field") != "status":
                continue
            events.append(TransitionEvent(
                timestamp=timestamp,
                field="status",
                from_value=item.get("from"),
                to_value=item.get("to"),
                from_label=item.get("fromString"),
                to_label=item.get("toString")
            ))

    # Stable sort keeps source order for events sharing a timestamp
    events.sort(key=lambda e: e.timestamp)
    return tuple(events)


def snapshot_from_issue(issue: dict, status_table: Optional[StatusTable],
                        size_fields: Optional[list] = None) -> Optional[WorkItemSnapshot]:
    """Coerce a Jira issue payload into a WorkItemSnapshot.

    Returns None for payloads without a usable creation date.
    """
    fields = issue.get("fields", {}) or {}
    created = parse_date(fields.get("created"))
    if created is None:
        return None

    status = fields.get("status") or {}
    item_type = (fields.get("issuetype") or {}).get("name")
    classification = resolve_first(
        [status.get("id"), status.get("name")], status_table, item_type
    )
    category = classification.category
    heuristic = classification.heuristic

    # Jira's own category beats a vocabulary guess
    jira_category = (status.get("statusCategory") or {}).get("key")
    if heuristic and jira_category:
        category = CanonicalCategory.from_jira_key(jira_category)
        heuristic = False

    return WorkItemSnapshot(
        key=issue.get("key", ""),
        created_at=created,
        current_category=category,
        current_status_name=status.get("name", ""),
        current_status_id=str(status["id"]) if status.get("id") is not None else None,
        resolved_at=parse_date(fields.get("resolutiondate")),
        updated_at=parse_date(fields.get("updated")),
        size_estimate=_size_estimate(fields, size_fields),
        transitions=transitions_from_changelog(issue),
        item_type=item_type,
        summary=fields.get("summary", "") or "",
        assignee=(fields.get("assignee") or {}).get("displayName"),
        priority=(fields.get("priority") or {}).get("name"),
        labels=tuple(fields.get("labels") or ()),
        classification_heuristic=heuristic
    )


def snapshots_from_issues(issues: list, status_table: Optional[StatusTable],
                          size_fields: Optional[list] = None) -> list:
    snapshots = []
    for issue in issues or []:
        snapshot = snapshot_from_issue(issue, status_table, size_fields)
        if snapshot is not None:
            snapshots.append(snapshot)
    return snapshots


def iteration_from_sprint(sprint: dict, items=(), fetch_failed: bool = False) -> Iteration:
    return Iteration(
        id=sprint.get("id"),
        name=sprint.get("name", ""),
        start=parse_date(sprint.get("startDate")),
        # A sprint closed early ends at completeDate
        end=parse_date(sprint.get("completeDate") or sprint.get("endDate")),
        items=tuple(items),
        fetch_failed=fetch_failed,
        state=sprint.get("state", "closed")
    )
