"""Fetches the item sets a telemetry request works on."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Optional

import requests

from services.jira_client import ISSUE_FIELDS
from services.telemetry_config import TelemetryConfig
from services.topology import StructuralContext, TrackingStrategy
from services.work_items import Iteration, iteration_from_sprint, snapshots_from_issues

logger = logging.getLogger(__name__)

MAX_SPRINT_WORKERS = 6


@dataclass(frozen=True)
class BoardData:
    current_items: tuple = ()
    historical_items: tuple = ()
    closed_iterations: tuple = ()
    active_iteration: Optional[Iteration] = None
    board_name: Optional[str] = None


class BoardDataSource:
    """Loads current, historical and per-iteration items for a project.

    Fetch failures degrade to empty sets; a failed closed-sprint fetch is
    kept as an iteration with ``fetch_failed`` set so velocity can flag it.
    """

    def __init__(self, client, size_fields: Optional[list] = None):
        self.client = client
        self.size_fields = list(size_fields or [])

    def _fields(self, context: StructuralContext) -> list:
        fields = list(ISSUE_FIELDS)
        extra = list(self.size_fields)
        if context.size_field_id and context.size_field_id not in extra:
            extra.insert(0, context.size_field_id)
        for field_id in extra:
            if field_id not in fields:
                fields.append(field_id)
        return fields

    def _size_fields(self, context: StructuralContext) -> list:
        if context.size_field_id:
            return [context.size_field_id] + [f for f in self.size_fields if f != context.size_field_id]
        return self.size_fields

    def _snapshots(self, issues: list, context: StructuralContext) -> tuple:
        return tuple(snapshots_from_issues(issues, context.status_table, self._size_fields(context)))

    def get_board_data(self, project_key: str, config: TelemetryConfig,
                       context: StructuralContext) -> BoardData:
        fields = self._fields(context)
        historical = self._snapshots(self._historical_issues(project_key, config, fields), context)

        if context.board_id is None or context.tracking_strategy == TrackingStrategy.NONE:
            current = self._search(f'project = "{project_key}" ORDER BY updated DESC', fields)
            return BoardData(
                current_items=self._snapshots(current, context),
                historical_items=historical
            )

        if context.tracking_strategy == TrackingStrategy.CONTINUOUS:
            return BoardData(
                current_items=self._snapshots(self._board_issues(context.board_id, fields), context),
                historical_items=historical,
                board_name=context.board_name
            )

        active_iteration, current = self._active_sprint(context, fields)
        if not current and config.include_board_items_when_empty:
            logger.info(f"Active sprint empty for board {context.board_id}, using board issues")
            current = self._board_issues(context.board_id, fields)

        return BoardData(
            current_items=self._snapshots(current, context),
            historical_items=historical,
            closed_iterations=self._closed_iterations(context, config, fields),
            active_iteration=active_iteration,
            board_name=context.board_name
        )

    def _search(self, jql: str, fields: list) -> list:
        try:
            return self.client.search(jql, fields)
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Search failed for '{jql}': {e}")
            return []

    def _historical_issues(self, project_key: str, config: TelemetryConfig, fields: list) -> list:
        jql = (
            f'project = "{project_key}" AND statusCategory = Done '
            f'AND updated >= -{config.history_window_days}d'
        )
        return self._search(jql, fields)

    def _board_issues(self, board_id: int, fields: list) -> list:
        try:
            return self.client.get_board_issues(board_id, fields)
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Board issues unavailable for board {board_id}: {e}")
            return []

    def _active_sprint(self, context: StructuralContext, fields: list) -> tuple:
        try:
            sprints = self.client.get_sprints(context.board_id, "active")
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Active sprint lookup failed for board {context.board_id}: {e}")
            return None, []

        if not sprints:
            return None, []

        sprint = sprints[0]
        try:
            issues = self.client.get_sprint_issues(sprint["id"], fields)
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Issues unavailable for active sprint {sprint['id']}: {e}")
            return iteration_from_sprint(sprint, fetch_failed=True), []

        items = self._snapshots(issues, context)
        return iteration_from_sprint(sprint, items), issues

    def _closed_iterations(self, context: StructuralContext, config: TelemetryConfig,
                           fields: list) -> tuple:
        try:
            sprints = self.client.get_sprints(context.board_id, "closed")
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Closed sprints unavailable for board {context.board_id}: {e}")
            return ()

        sprints.sort(key=lambda s: s.get("completeDate") or s.get("endDate") or "", reverse=True)
        sprints = sprints[:config.closed_iteration_count]
        if not sprints:
            return ()

        def fetch_iteration(sprint):
            try:
                issues = self.client.get_sprint_issues(sprint["id"], fields)
            except (requests.RequestException, ValueError) as e:
                logger.warning(f"Issues unavailable for sprint {sprint['id']}: {e}")
                return iteration_from_sprint(sprint, fetch_failed=True)
            return iteration_from_sprint(sprint, self._snapshots(issues, context))

        iterations = {}
        with ThreadPoolExecutor(max_workers=MAX_SPRINT_WORKERS) as executor:
            futures = {executor.submit(fetch_iteration, sprint): sprint["id"] for sprint in sprints}
            for future in as_completed(futures):
                iterations[futures[future]] = future.result()

        # Keep most recent first regardless of completion order
        return tuple(iterations[sprint["id"]] for sprint in sprints)
