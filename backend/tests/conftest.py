"""Shared fixtures for flow telemetry tests."""

import os
import sys
from datetime import datetime, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from services.status_classifier import CanonicalCategory, StatusEntry, StatusTable
from services.topology import (
    EstimationMode,
    ProjectKind,
    StructuralContext,
    TrackingStrategy,
    compute_metric_validity,
)
from services.work_items import Iteration, TransitionEvent, WorkItemSnapshot

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def mock_jira_credentials():
    """Mock Jira credentials for testing."""
    return {
        "server": "https://test.atlassian.net",
        "email": "test@example.com",
        "token": "test-token-123"
    }


@pytest.fixture
def jira_headers():
    """Credential headers accepted by the API."""
    return {
        "X-Jira-Server": "https://test.atlassian.net",
        "X-Jira-Email": "test@example.com",
        "X-Jira-Token": "token123"
    }


@pytest.fixture
def base_time():
    return T0


@pytest.fixture
def status_table():
    """Status table for a typical software workflow."""
    return StatusTable.from_entries([
        StatusEntry("1", "To Do", CanonicalCategory.NOT_STARTED),
        StatusEntry("3", "In Progress", CanonicalCategory.ACTIVE),
        StatusEntry("4", "Code Review", CanonicalCategory.ACTIVE),
        StatusEntry("10001", "Done", CanonicalCategory.DONE),
    ])


@pytest.fixture
def project_statuses_response():
    """Response from /rest/api/3/project/{key}/statuses."""
    return [
        {
            "id": "10000",
            "name": "Story",
            "statuses": [
                {"id": "1", "name": "To Do", "statusCategory": {"key": "new"}},
                {"id": "3", "name": "In Progress", "statusCategory": {"key": "indeterminate"}},
                {"id": "10001", "name": "Done", "statusCategory": {"key": "done"}}
            ]
        },
        {
            "id": "10001",
            "name": "Bug",
            "statuses": [
                {"id": "1", "name": "To Do", "statusCategory": {"key": "new"}},
                {"id": "5", "name": "Verified", "statusCategory": {"key": "done"}},
                {"id": "10001", "name": "Done", "statusCategory": {"key": "done"}}
            ]
        }
    ]


def transition(at, from_id, to_id, from_name=None, to_name=None):
    return TransitionEvent(
        timestamp=at,
        field="status",
        from_value=from_id,
        to_value=to_id,
        from_label=from_name,
        to_label=to_name
    )


@pytest.fixture
def make_transition():
    """Factory for status transitions between status ids."""
    return transition


@pytest.fixture
def make_item():
    """Factory for work item snapshots with sensible defaults."""
    def _make(key="PROJ-1", created=T0, category=CanonicalCategory.ACTIVE, **kwargs):
        return WorkItemSnapshot(key=key, created_at=created, current_category=category, **kwargs)
    return _make


def _context(strategy, kind=ProjectKind.STRUCTURED_WORK, mode=EstimationMode.SIZE, table=None):
    return StructuralContext(
        project_key="PROJ",
        project_name="Project",
        tracking_strategy=strategy,
        project_kind=kind,
        estimation_mode=mode,
        status_table=table or StatusTable(),
        metric_validity=compute_metric_validity(kind, strategy),
        board_id=1 if strategy != TrackingStrategy.NONE else None,
        board_name="PROJ board" if strategy != TrackingStrategy.NONE else None
    )


@pytest.fixture
def timeboxed_context(status_table):
    """Scrum board estimating in story points."""
    return _context(TrackingStrategy.TIMEBOXED, table=status_table)


@pytest.fixture
def count_context(status_table):
    """Scrum board with no estimation field."""
    return _context(TrackingStrategy.TIMEBOXED, mode=EstimationMode.COUNT, table=status_table)


@pytest.fixture
def continuous_context(status_table):
    """Kanban board."""
    return _context(TrackingStrategy.CONTINUOUS, mode=EstimationMode.COUNT, table=status_table)


@pytest.fixture
def generic_context(status_table):
    """Business project without boards."""
    return _context(TrackingStrategy.NONE, kind=ProjectKind.GENERIC,
                    mode=EstimationMode.COUNT, table=status_table)


@pytest.fixture
def make_iteration():
    def _make(id=100, items=(), start=None, end=None, **kwargs):
        return Iteration(id=id, name=f"Sprint {id}", start=start, end=end,
                         items=tuple(items), **kwargs)
    return _make


@pytest.fixture
def sample_sprints():
    """Closed sprints as returned by the Agile API, newest first."""
    return [
        {
            "id": 102,
            "name": "Sprint 3",
            "state": "closed",
            "startDate": "2024-01-29T00:00:00.000Z",
            "endDate": "2024-02-11T00:00:00.000Z",
            "completeDate": "2024-02-10T16:00:00.000Z"
        },
        {
            "id": 101,
            "name": "Sprint 2",
            "state": "closed",
            "startDate": "2024-01-15T00:00:00.000Z",
            "endDate": "2024-01-28T00:00:00.000Z"
        },
        {
            "id": 100,
            "name": "Sprint 1",
            "state": "closed",
            "startDate": "2024-01-01T00:00:00.000Z",
            "endDate": "2024-01-14T00:00:00.000Z"
        }
    ]


@pytest.fixture
def sample_issue_completed():
    """Completed story with story points and a status changelog."""
    return {
        "key": "PROJ-123",
        "fields": {
            "summary": "Implement feature X",
            "issuetype": {"name": "Story", "subtask": False},
            "status": {"id": "10001", "name": "Done", "statusCategory": {"key": "done"}},
            "resolution": {"name": "Done"},
            "priority": {"name": "High"},
            "assignee": {"displayName": "Alice Smith"},
            "labels": ["frontend"],
            "created": "2024-01-02T10:00:00.000Z",
            "updated": "2024-01-10T15:30:00.000Z",
            "resolutiondate": "2024-01-10T15:30:00.000Z",
            "customfield_10016": 5.0
        },
        "changelog": {
            "histories": [
                {
                    "created": "2024-01-08T09:00:00.000+0000",
                    "items": [
                        {"field": "status", "from": "3", "fromString": "In Progress",
                         "to": "10001", "toString": "Done"}
                    ]
                },
                {
                    "created": "2024-01-03T10:00:00.000+0000",
                    "items": [
                        {"field": "assignee", "fromString": None, "toString": "Alice Smith"},
                        {"field": "status", "from": "1", "fromString": "To Do",
                         "to": "3", "toString": "In Progress"}
                    ]
                }
            ]
        }
    }


@pytest.fixture
def sample_issue_no_changelog():
    """Unresolved bug that never changed status."""
    return {
        "key": "PROJ-201",
        "fields": {
            "summary": "Quick fix",
            "issuetype": {"name": "Bug", "subtask": False},
            "status": {"id": "3", "name": "In Progress"},
            "resolution": None,
            "created": "2024-01-05T09:00:00.000+0000",
            "updated": "2024-01-05T09:00:00.000+0000",
            "resolutiondate": None,
            "customfield_10016": 2.0
        },
        "changelog": {"histories": []}
    }


@pytest.fixture
def sample_issue_custom_status():
    """Item in a status missing from the status table."""
    return {
        "key": "PROJ-300",
        "fields": {
            "summary": "Ship release notes",
            "issuetype": {"name": "Task"},
            "status": {"id": "99999", "name": "Awaiting Deploy"},
            "created": "2024-01-05T09:00:00.000Z"
        }
    }


@pytest.fixture
def app():
    """Create Flask test app."""
    from app import create_app
    app = create_app(config_path=os.path.join(os.path.dirname(__file__), "missing.json"))
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
