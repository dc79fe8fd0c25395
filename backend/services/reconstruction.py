"""Replay of work item changelogs.

Two questions are answered from an item's status transitions:

- which canonical category the item was in at some past instant, and
- how long it spent in the ACTIVE category overall, summing every
  separate interval when the item was reopened and worked on again.

Results carry a ``heuristic`` flag when any replayed status had to be
classified by vocabulary rather than by the status table.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from services.status_classifier import (
    CanonicalCategory,
    Classification,
    StatusTable,
    resolve_first,
)
from services.work_items import TransitionEvent, WorkItemSnapshot

METHOD_CHANGELOG = "changelog"
METHOD_LEAD_TIME_PROXY = "lead-time-proxy"
METHOD_NOT_CREATED = "not-created"
METHOD_LEAD_TIME_FALLBACK = "lead-time-fallback"
METHOD_EXCLUDED = "excluded"

_NOT_STARTED = Classification(CanonicalCategory.NOT_STARTED, "initial")


@dataclass(frozen=True)
class Reconstruction:
    category: CanonicalCategory
    method: str
    heuristic: bool = False

    @property
    def approximated(self) -> bool:
        return self.method == METHOD_LEAD_TIME_PROXY


@dataclass(frozen=True)
class ActiveDuration:
    duration: Optional[timedelta]
    method: str
    heuristic: bool = False

    @property
    def hours(self) -> Optional[float]:
        if self.duration is None:
            return None
        return self.duration.total_seconds() / 3600


@dataclass(frozen=True)
class ActiveSample:
    """ACTIVE item count at one instant."""

    count: int
    approximated: int = 0
    heuristic: bool = False


def status_transitions(item: WorkItemSnapshot) -> list:
    """Status transitions of an item in ascending time order.

    ``sorted`` is stable, so events sharing a timestamp keep source order.
    """
    return sorted(
        (t for t in item.transitions if t.is_status),
        key=lambda t: t.timestamp
    )


def _to_status(transition: TransitionEvent, table: StatusTable,
               item_type: Optional[str]) -> Classification:
    return resolve_first([transition.to_value, transition.to_label], table, item_type)


def _initial_status(transitions: list, table: StatusTable,
                    item_type: Optional[str]) -> Classification:
    if not transitions:
        return _NOT_STARTED
    first = transitions[0]
    if first.from_value in (None, "") and first.from_label in (None, ""):
        return _NOT_STARTED
    return resolve_first([first.from_value, first.from_label], table, item_type)


def reconstruct_category(item: WorkItemSnapshot, instant: datetime,
                         table: StatusTable) -> Reconstruction:
    """Category of ``item`` at ``instant``, with the method used."""
    if item.created_at > instant:
        return Reconstruction(CanonicalCategory.NOT_STARTED, METHOD_NOT_CREATED)

    transitions = status_transitions(item)
    if not item.has_status_history:
        # No history: assume it was worked on from creation until resolved
        if item.resolved_at is not None and item.resolved_at <= instant:
            return Reconstruction(CanonicalCategory.DONE, METHOD_LEAD_TIME_PROXY)
        return Reconstruction(CanonicalCategory.ACTIVE, METHOD_LEAD_TIME_PROXY)

    status = _initial_status(transitions, table, item.item_type)
    heuristic = status.heuristic
    for transition in transitions:
        if transition.timestamp > instant:
            break
        status = _to_status(transition, table, item.item_type)
        heuristic = heuristic or status.heuristic

    return Reconstruction(status.category, METHOD_CHANGELOG, heuristic)


def category_at_time(item: WorkItemSnapshot, instant: datetime,
                     table: StatusTable) -> CanonicalCategory:
    return reconstruct_category(item, instant, table).category


def sample_active_at(items: list, instant: datetime, table: StatusTable) -> ActiveSample:
    """Count ACTIVE items at ``instant``, noting approximated and guessed ones."""
    count = 0
    approximated = 0
    heuristic = False
    for item in items:
        reconstruction = reconstruct_category(item, instant, table)
        if reconstruction.category != CanonicalCategory.ACTIVE:
            continue
        count += 1
        if reconstruction.approximated:
            approximated += 1
        heuristic = heuristic or reconstruction.heuristic
    return ActiveSample(count, approximated, heuristic)


def count_active_at(items: list, instant: datetime, table: StatusTable) -> int:
    return sample_active_at(items, instant, table).count


def active_duration(item: WorkItemSnapshot, table: StatusTable) -> ActiveDuration:
    """Total time ``item`` spent ACTIVE.

    Every ACTIVE interval is added separately, so an item that goes
    To Do -> In Progress -> To Do -> In Progress -> Done contributes both
    In Progress stretches but not the To Do gap between them. An interval
    still open after the last transition is closed at the resolution
    (or last update) time.
    """
    transitions = status_transitions(item)
    last_status = _initial_status(transitions, table, item.item_type)
    heuristic = last_status.heuristic
    last_timestamp = item.created_at
    total = timedelta(0)

    for transition in transitions:
        if last_status.category == CanonicalCategory.ACTIVE:
            total += transition.timestamp - last_timestamp
        last_status = _to_status(transition, table, item.item_type)
        heuristic = heuristic or last_status.heuristic
        last_timestamp = transition.timestamp

    end = item.completed_at
    if (last_status.category == CanonicalCategory.ACTIVE
            and end is not None and end > last_timestamp):
        total += end - last_timestamp

    if total > timedelta(0):
        return ActiveDuration(total, METHOD_CHANGELOG, heuristic)

    if item.resolved_at is not None and item.resolved_at > item.created_at:
        return ActiveDuration(item.resolved_at - item.created_at, METHOD_LEAD_TIME_FALLBACK)

    return ActiveDuration(None, METHOD_EXCLUDED)


def category_durations(item: WorkItemSnapshot, table: StatusTable,
                       until: datetime) -> dict:
    """Hours spent in each category between creation and ``until``."""
    hours = {category: 0.0 for category in CanonicalCategory}
    if until <= item.created_at:
        return hours

    transitions = [t for t in status_transitions(item) if t.timestamp <= until]
    last_category = _initial_status(transitions, table, item.item_type).category
    last_timestamp = item.created_at

    for transition in transitions:
        hours[last_category] += (transition.timestamp - last_timestamp).total_seconds() / 3600
        last_category = _to_status(transition, table, item.item_type).category
        last_timestamp = transition.timestamp

    if not transitions:
        # Nothing recorded: attribute the whole span to the current bucket
        last_category = item.current_category
    hours[last_category] += (until - last_timestamp).total_seconds() / 3600
    return hours
