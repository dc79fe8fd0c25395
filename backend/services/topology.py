"""Structural context of a project: tracking strategy, estimation and metric validity."""

import logging
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

from services.jira_client import FETCH_ERRORS
from services.status_classifier import CanonicalCategory, StatusTable
from services.ttl_cache import TTLCache

logger = logging.getLogger(__name__)

CONTEXT_TTL_SECONDS = 5 * 60


class TrackingStrategy(str, Enum):
    TIMEBOXED = "timeboxed"
    CONTINUOUS = "continuous"
    NONE = "none"


class ProjectKind(str, Enum):
    # Work-management projects without boards or sprints
    GENERIC = "generic"
    # Software projects that support structured iterations
    STRUCTURED_WORK = "structured_work"


class EstimationMode(str, Enum):
    SIZE = "size"
    COUNT = "count"


class Validity(str, Enum):
    VALID = "valid"
    HIDDEN = "hidden"


FLOW_METRICS = (
    "cycleTime", "leadTime", "wip", "wipConsistency", "throughput", "flowEfficiency"
)
ITERATION_METRICS = ("velocity", "iterationHealth", "iterationProgress", "scopeCreep")


def supports_iterations(project_kind: ProjectKind, tracking_strategy: TrackingStrategy) -> bool:
    return (
        project_kind != ProjectKind.GENERIC
        and tracking_strategy == TrackingStrategy.TIMEBOXED
    )


def compute_metric_validity(project_kind: ProjectKind,
                            tracking_strategy: TrackingStrategy) -> Mapping[str, Validity]:
    """Which metrics are meaningful for a project's structure.

    Flow metrics are always valid. Iteration metrics are hidden unless the
    project runs timeboxed iterations.
    """
    iteration_validity = (
        Validity.VALID if supports_iterations(project_kind, tracking_strategy)
        else Validity.HIDDEN
    )
    validity = {name: Validity.VALID for name in FLOW_METRICS}
    validity.update({name: iteration_validity for name in ITERATION_METRICS})
    return MappingProxyType(validity)


@dataclass(frozen=True)
class StructuralContext:
    project_key: str
    tracking_strategy: TrackingStrategy
    project_kind: ProjectKind
    estimation_mode: EstimationMode
    status_table: StatusTable
    metric_validity: Mapping[str, Validity]
    project_name: str = ""
    board_id: Optional[int] = None
    board_name: Optional[str] = None
    size_field_id: Optional[str] = None
    start_statuses: tuple = ()
    done_statuses: tuple = ()
    degraded: tuple = ()
    locale: str = "en"

    @property
    def supports_iterations(self) -> bool:
        return supports_iterations(self.project_kind, self.tracking_strategy)

    def to_dict(self) -> dict:
        return {
            "projectKey": self.project_key,
            "projectName": self.project_name,
            "trackingStrategy": self.tracking_strategy.value,
            "projectKind": self.project_kind.value,
            "estimationMode": self.estimation_mode.value,
            "boardId": self.board_id,
            "boardName": self.board_name,
            "sizeFieldId": self.size_field_id,
            "metricValidity": {k: v.value for k, v in self.metric_validity.items()},
            "startStatuses": list(self.start_statuses),
            "doneStatuses": list(self.done_statuses),
            "statuses": [
                {"id": e.id, "name": e.name, "category": e.category.value}
                for e in self.status_table.entries()
            ],
            "degraded": list(self.degraded),
            "locale": self.locale
        }


def tracking_strategy_for_board(board: Optional[dict]) -> TrackingStrategy:
    if not board:
        return TrackingStrategy.NONE
    board_type = (board.get("type") or "").lower()
    if board_type == "kanban":
        return TrackingStrategy.CONTINUOUS
    # Scrum boards, and unlabelled boards which Jira treats as scrum
    return TrackingStrategy.TIMEBOXED


def estimation_from_configuration(config: dict) -> tuple:
    """Return (EstimationMode, size field id) from a board configuration."""
    estimation = (config or {}).get("estimation") or {}
    field_id = (estimation.get("field") or {}).get("fieldId")
    if estimation.get("type") == "field" and field_id:
        return EstimationMode.SIZE, field_id
    return EstimationMode.COUNT, None


class WorkflowTopologyBuilder:
    """Resolves the StructuralContext for a project.

    Each sub-fetch degrades independently to a conservative default, so
    ``build`` never fails because Jira was partly unreachable.
    """

    def __init__(self, client, status_source, cache: Optional[TTLCache] = None):
        self.client = client
        self.status_source = status_source
        self.cache = cache if cache is not None else TTLCache(CONTEXT_TTL_SECONDS)

    def build(self, project_key: str, locale: str = "en") -> StructuralContext:
        key = (getattr(self.client, "server", None), project_key, locale)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        context = self._build(project_key, locale)
        # Degraded contexts are retried on the next request
        if not context.degraded:
            self.cache.set(key, context)
        return context

    def _build(self, project_key: str, locale: str) -> StructuralContext:
        degraded = []

        project_kind = ProjectKind.STRUCTURED_WORK
        project_name = project_key
        try:
            project = self.client.get_project(project_key)
            project_name = project.get("name") or project_key
            if project.get("projectTypeKey") == "business":
                project_kind = ProjectKind.GENERIC
        except FETCH_ERRORS as e:
            logger.warning(f"Project metadata unavailable for {project_key}: {e}")
            degraded.append("project")

        tracking_strategy = TrackingStrategy.TIMEBOXED
        board = None
        try:
            boards = self.client.get_boards(project_key)
            # TODO: let the caller pick a board when a project has several
            first = boards[0] if boards else None
            tracking_strategy = tracking_strategy_for_board(first)
            board = first
        except FETCH_ERRORS as e:
            logger.warning(f"Board lookup failed for {project_key}: {e}")
            degraded.append("board")

        estimation_mode = EstimationMode.COUNT
        size_field_id = None
        if board:
            try:
                config = self.client.get_board_configuration(board["id"])
                estimation_mode, size_field_id = estimation_from_configuration(config)
            except FETCH_ERRORS as e:
                logger.warning(f"Board configuration unavailable for board {board.get('id')}: {e}")
                degraded.append("estimation")

        try:
            status_table = self.status_source.get_project_status_table(project_key)
        except FETCH_ERRORS as e:
            logger.warning(f"Status table unavailable for {project_key}: {e}")
            degraded.append("statuses")
            status_table = StatusTable()

        logger.info(
            f"Context for {project_key}: {tracking_strategy.value}, "
            f"{project_kind.value}, {estimation_mode.value}"
        )

        return StructuralContext(
            project_key=project_key,
            project_name=project_name,
            tracking_strategy=tracking_strategy,
            project_kind=project_kind,
            estimation_mode=estimation_mode,
            status_table=status_table,
            metric_validity=compute_metric_validity(project_kind, tracking_strategy),
            board_id=board.get("id") if board else None,
            board_name=board.get("name") if board else None,
            size_field_id=size_field_id,
            start_statuses=tuple(status_table.start_statuses()),
            done_statuses=tuple(status_table.done_statuses()),
            degraded=tuple(degraded),
            locale=locale
        )


def context_summary(context: StructuralContext) -> str:
    """Plain-text description of a context, one fact per line."""
    table = context.status_table
    lines = [
        f"Project: {context.project_name} ({context.project_key})",
        f"Tracking: {context.tracking_strategy.value.upper()}",
        f"Estimation: {context.estimation_mode.value}",
    ]
    if context.board_name:
        lines.append(f"Board: {context.board_name} ({context.board_id})")

    labels = (
        ("TODO", CanonicalCategory.NOT_STARTED),
        ("IN_PROGRESS", CanonicalCategory.ACTIVE),
        ("DONE", CanonicalCategory.DONE),
    )
    for label, category in labels:
        names = table.names_in(category)
        lines.append(f"{label} Statuses: {', '.join(names) or 'None'}")

    hidden = [k for k, v in context.metric_validity.items() if v == Validity.HIDDEN]
    lines.append(f"Hidden Metrics: {', '.join(hidden) or 'None'}")
    if context.degraded:
        lines.append(f"Degraded: {', '.join(context.degraded)}")
    return "\n".join(lines)
