"""Tests for structural context resolution and the validity matrix."""

from unittest.mock import Mock
import sys
import os

import pytest
import requests

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from services.status_tables import FALLBACK_SIZE_FIELDS, SizeFieldDiscovery, StatusTableSource
from services.topology import (
    FLOW_METRICS,
    ITERATION_METRICS,
    EstimationMode,
    ProjectKind,
    TrackingStrategy,
    Validity,
    WorkflowTopologyBuilder,
    compute_metric_validity,
    context_summary,
    estimation_from_configuration,
    tracking_strategy_for_board,
)
from services.ttl_cache import TTLCache


def make_client(project=None, boards=None, configuration=None):
    client = Mock()
    client.server = "https://test.atlassian.net"
    client.get_project.return_value = project or {"key": "PROJ", "name": "Project", "projectTypeKey": "software"}
    client.get_boards.return_value = boards if boards is not None else [
        {"id": 7, "name": "PROJ board", "type": "scrum"}
    ]
    client.get_board_configuration.return_value = configuration or {
        "estimation": {"type": "field", "field": {"fieldId": "customfield_10016"}}
    }
    return client


class TestComputeMetricValidity:
    """Test which metrics each structure supports."""

    def test_continuous_hides_iteration_metrics(self):
        validity = compute_metric_validity(ProjectKind.STRUCTURED_WORK, TrackingStrategy.CONTINUOUS)

        assert all(validity[m] == Validity.HIDDEN for m in ITERATION_METRICS)
        assert all(validity[m] == Validity.VALID for m in FLOW_METRICS)

    def test_timeboxed_structured_work_shows_everything(self):
        validity = compute_metric_validity(ProjectKind.STRUCTURED_WORK, TrackingStrategy.TIMEBOXED)
        assert set(validity.values()) == {Validity.VALID}

    def test_generic_projects_hide_iteration_metrics(self):
        validity = compute_metric_validity(ProjectKind.GENERIC, TrackingStrategy.TIMEBOXED)
        assert validity["velocity"] == Validity.HIDDEN
        assert validity["cycleTime"] == Validity.VALID

    def test_result_is_read_only(self):
        validity = compute_metric_validity(ProjectKind.GENERIC, TrackingStrategy.NONE)
        try:
            validity["velocity"] = Validity.VALID
        except TypeError:
            pass
        assert validity["velocity"] == Validity.HIDDEN


class TestBoardInterpretation:
    """Test board and configuration parsing."""

    def test_tracking_strategy(self):
        assert tracking_strategy_for_board({"type": "scrum"}) == TrackingStrategy.TIMEBOXED
        assert tracking_strategy_for_board({"type": "kanban"}) == TrackingStrategy.CONTINUOUS
        assert tracking_strategy_for_board(None) == TrackingStrategy.NONE

    def test_estimation_field(self):
        config = {"estimation": {"type": "field", "field": {"fieldId": "customfield_10016"}}}
        assert estimation_from_configuration(config) == (EstimationMode.SIZE, "customfield_10016")

    def test_issue_count_estimation(self):
        assert estimation_from_configuration({"estimation": {"type": "issueCount"}}) == (
            EstimationMode.COUNT, None
        )
        assert estimation_from_configuration({}) == (EstimationMode.COUNT, None)


class TestWorkflowTopologyBuilder:
    """Test context resolution and its degradation."""

    def test_builds_scrum_context(self, status_table):
        source = Mock()
        source.get_project_status_table.return_value = status_table
        builder = WorkflowTopologyBuilder(make_client(), source)

        context = builder.build("PROJ")

        assert context.tracking_strategy == TrackingStrategy.TIMEBOXED
        assert context.project_kind == ProjectKind.STRUCTURED_WORK
        assert context.estimation_mode == EstimationMode.SIZE
        assert context.size_field_id == "customfield_10016"
        assert context.board_id == 7
        assert context.start_statuses == ("In Progress", "Code Review")
        assert context.degraded == ()
        assert context.supports_iterations

    def test_business_project_is_generic(self, status_table):
        source = Mock()
        source.get_project_status_table.return_value = status_table
        client = make_client(project={"name": "Ops", "projectTypeKey": "business"}, boards=[])

        context = WorkflowTopologyBuilder(client, source).build("OPS")

        assert context.project_kind == ProjectKind.GENERIC
        assert context.tracking_strategy == TrackingStrategy.NONE
        assert context.estimation_mode == EstimationMode.COUNT
        assert context.metric_validity["velocity"] == Validity.HIDDEN
        client.get_board_configuration.assert_not_called()

    def test_failed_sub_fetches_degrade_independently(self):
        client = make_client()
        client.get_project.side_effect = requests.ConnectionError("down")
        client.get_boards.side_effect = requests.HTTPError("403")
        source = Mock()
        source.get_project_status_table.side_effect = requests.Timeout()

        context = WorkflowTopologyBuilder(client, source).build("PROJ")

        assert context.project_kind == ProjectKind.STRUCTURED_WORK
        assert context.tracking_strategy == TrackingStrategy.TIMEBOXED
        assert context.estimation_mode == EstimationMode.COUNT
        assert context.status_table.is_empty
        assert context.degraded == ("project", "board", "statuses")

    def test_estimation_failure_is_recorded(self, status_table):
        client = make_client()
        client.get_board_configuration.side_effect = requests.HTTPError("500")
        source = Mock()
        source.get_project_status_table.return_value = status_table

        context = WorkflowTopologyBuilder(client, source).build("PROJ")
        assert context.degraded == ("estimation",)
        assert context.estimation_mode == EstimationMode.COUNT

    def test_context_is_cached(self, status_table):
        client = make_client()
        source = Mock()
        source.get_project_status_table.return_value = status_table
        builder = WorkflowTopologyBuilder(client, source, TTLCache(300))

        first = builder.build("PROJ")
        second = builder.build("PROJ")

        assert first is second
        client.get_project.assert_called_once()

    def test_degraded_context_is_not_cached(self, status_table):
        client = make_client()
        client.get_project.side_effect = [requests.ConnectionError("down"), {"name": "Project"}]
        source = Mock()
        source.get_project_status_table.return_value = status_table
        builder = WorkflowTopologyBuilder(client, source, TTLCache(300))

        assert builder.build("PROJ").degraded == ("project",)
        assert builder.build("PROJ").degraded == ()

    def test_malformed_payloads_degrade(self, status_table):
        """Unexpected payload shapes are treated like failed fetches."""
        client = make_client()
        client.get_project.return_value = ["not", "a", "project"]
        client.get_boards.return_value = [{"id": 7, "type": 42}]
        source = Mock()
        source.get_project_status_table.return_value = status_table

        context = WorkflowTopologyBuilder(client, source).build("PROJ")

        assert context.degraded == ("project", "board")
        assert context.board_id is None
        assert context.project_name == "PROJ"

    def test_status_outage_is_degraded_and_retried(self, project_statuses_response):
        """A status outage is reported, not cached, and recovers on the next build."""
        client = make_client()
        client.get_project_statuses.side_effect = [
            requests.ConnectionError("down"), project_statuses_response
        ]
        client.get_all_statuses.side_effect = requests.ConnectionError("down")
        source = StatusTableSource(client, TTLCache(3600))
        builder = WorkflowTopologyBuilder(client, source, TTLCache(300))

        first = builder.build("PROJ")
        second = builder.build("PROJ")

        assert first.degraded == ("statuses",)
        assert first.status_table.is_empty
        assert second.degraded == ()
        assert "10001" in second.status_table.by_id
        assert client.get_project_statuses.call_count == 2

    def test_context_summary(self, timeboxed_context):
        summary = context_summary(timeboxed_context)
        assert "Tracking: TIMEBOXED" in summary
        assert "IN_PROGRESS Statuses: In Progress, Code Review" in summary
        assert "Hidden Metrics: None" in summary

    def test_to_dict(self, continuous_context):
        data = continuous_context.to_dict()
        assert data["trackingStrategy"] == "continuous"
        assert data["metricValidity"]["velocity"] == "hidden"
        assert len(data["statuses"]) == 4


class TestStatusTableSource:
    """Test status table fetching and fallbacks."""

    def test_uses_project_statuses(self, project_statuses_response):
        client = Mock(server="https://test.atlassian.net")
        client.get_project_statuses.return_value = project_statuses_response

        table = StatusTableSource(client).get_project_status_table("PROJ")

        assert "bug" in table.by_issue_type
        client.get_all_statuses.assert_not_called()

    def test_falls_back_to_global_statuses(self):
        client = Mock(server="https://test.atlassian.net")
        client.get_project_statuses.side_effect = requests.HTTPError("404")
        client.get_all_statuses.return_value = [
            {"id": "1", "name": "Open", "statusCategory": {"key": "new"}}
        ]

        table = StatusTableSource(client).get_project_status_table("PROJ")
        assert "1" in table.by_id

    def test_raises_when_everything_fails(self):
        client = Mock(server="https://test.atlassian.net")
        client.get_project_statuses.side_effect = requests.ConnectionError()
        client.get_all_statuses.side_effect = requests.ConnectionError()

        with pytest.raises(requests.ConnectionError):
            StatusTableSource(client).get_project_status_table("PROJ")

    def test_failure_is_not_cached(self, project_statuses_response):
        client = Mock(server="https://test.atlassian.net")
        client.get_project_statuses.side_effect = [
            requests.ConnectionError(), project_statuses_response
        ]
        client.get_all_statuses.side_effect = requests.ConnectionError()
        source = StatusTableSource(client, TTLCache(3600))

        with pytest.raises(requests.ConnectionError):
            source.get_project_status_table("PROJ")
        table = source.get_project_status_table("PROJ")

        assert not table.is_empty

    def test_table_is_cached_per_project(self, project_statuses_response):
        client = Mock(server="https://test.atlassian.net")
        client.get_project_statuses.return_value = project_statuses_response
        source = StatusTableSource(client, TTLCache(3600))

        source.get_project_status_table("PROJ")
        source.get_project_status_table("PROJ")
        source.get_project_status_table("OTHER")

        assert client.get_project_statuses.call_count == 2


class TestSizeFieldDiscovery:
    """Test story point field discovery."""

    FIELDS = [
        {"id": "customfield_10050", "name": "Story Points (old)", "schema": {"type": "number"}},
        {"id": "customfield_10016", "name": "Story point estimate", "schema": {"type": "number"}},
        {"id": "customfield_10002", "name": "Story Points", "schema": {"type": "number"}},
        {"id": "customfield_10099", "name": "Story Points", "schema": {"type": "string"}},
    ]

    def test_exact_matches_before_partial(self):
        client = Mock(server="https://test.atlassian.net")
        client.get_fields.return_value = self.FIELDS

        found = SizeFieldDiscovery(client).get_size_fields()

        assert found == ["customfield_10002", "customfield_10016", "customfield_10050"]

    def test_fallback_ids_on_failure(self):
        client = Mock(server="https://test.atlassian.net")
        client.get_fields.side_effect = requests.HTTPError("403")

        assert SizeFieldDiscovery(client).get_size_fields() == FALLBACK_SIZE_FIELDS

    def test_fallback_ids_appended_when_nothing_matches(self):
        client = Mock(server="https://test.atlassian.net")
        client.get_fields.return_value = [
            {"id": "customfield_10016", "name": "Story point estimate", "schema": {"type": "number"}}
        ]

        found = SizeFieldDiscovery(client, ["Story Points"]).get_size_fields()

        assert found == FALLBACK_SIZE_FIELDS

    def test_discovered_fields_come_before_fallbacks(self):
        client = Mock(server="https://test.atlassian.net")
        client.get_fields.return_value = [
            {"id": "customfield_10300", "name": "Estimation", "schema": {"type": "number"}}
        ]

        found = SizeFieldDiscovery(client, ["Estimation"]).get_size_fields()

        assert found == ["customfield_10300"] + FALLBACK_SIZE_FIELDS
