"""Telemetry orchestration: context, data, metrics and the validity gate."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from services.board_data import BoardData, BoardDataSource
from services.flow_types import flow_distribution
from services.jira_client import JiraClient
from services.metric_aggregator import HealthResult, MetricAggregator, assess_health, issues_by_category
from services.status_tables import (
    SIZE_FIELD_TTL_SECONDS,
    STATUS_TABLE_TTL_SECONDS,
    SizeFieldDiscovery,
    StatusTableSource,
)
from services.telemetry_config import TelemetryConfig
from services.topology import CONTEXT_TTL_SECONDS, StructuralContext, WorkflowTopologyBuilder
from services.ttl_cache import TTLCache
from services.validity_gate import apply_gate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TelemetryResult:
    metrics: dict
    raw_metrics: dict
    health: HealthResult
    context: StructuralContext
    items: tuple = ()
    issues_by_category: dict = field(default_factory=dict)
    team_load: dict = field(default_factory=dict)
    stalled_items: list = field(default_factory=list)
    flow_distribution: dict = field(default_factory=dict)
    closed_iterations: tuple = ()
    generated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "metrics": {k: v.to_dict() for k, v in self.metrics.items()},
            "rawMetrics": {k: v.to_dict() for k, v in self.raw_metrics.items()},
            "health": self.health.to_dict(),
            "context": self.context.to_dict(),
            "items": [item.to_dict() for item in self.items],
            "issuesByCategory": self.issues_by_category,
            "teamLoad": self.team_load,
            "stalledItems": self.stalled_items,
            "flowDistribution": self.flow_distribution,
            "closedIterations": [i.to_dict() for i in self.closed_iterations],
            "generatedAt": self.generated_at.isoformat() if self.generated_at else None
        }


@dataclass
class TelemetryCaches:
    """Process-wide caches, created once by the app and shared across requests."""

    status_tables: TTLCache = field(default_factory=lambda: TTLCache(STATUS_TABLE_TTL_SECONDS))
    contexts: TTLCache = field(default_factory=lambda: TTLCache(CONTEXT_TTL_SECONDS))
    size_fields: TTLCache = field(default_factory=lambda: TTLCache(SIZE_FIELD_TTL_SECONDS))

    def clear(self):
        self.status_tables.invalidate()
        self.contexts.invalidate()
        self.size_fields.invalidate()


class TelemetryService:
    """Builds the telemetry result for one project."""

    def __init__(self, client: JiraClient, config: Optional[TelemetryConfig] = None,
                 caches: Optional[TelemetryCaches] = None):
        self.client = client
        self.config = config or TelemetryConfig()
        caches = caches or TelemetryCaches()

        status_source = StatusTableSource(client, caches.status_tables)
        self.size_fields = SizeFieldDiscovery(
            client, self.config.size_field_candidates, caches.size_fields
        )
        self.topology = WorkflowTopologyBuilder(client, status_source, caches.contexts)
        self.aggregator = MetricAggregator(self.config)

    def get_context(self, project_key: str) -> StructuralContext:
        return self.topology.build(project_key, self.config.locale)

    def get_board_data(self, project_key: str,
                       context: Optional[StructuralContext] = None) -> BoardData:
        context = context or self.get_context(project_key)
        source = BoardDataSource(self.client, self.size_fields.get_size_fields())
        return source.get_board_data(project_key, self.config, context)

    def get_items(self, project_key: str, now: Optional[datetime] = None) -> dict:
        """Current items grouped by category, with hours spent in each."""
        context = self.get_context(project_key)
        data = self.get_board_data(project_key, context)
        return issues_by_category(data.current_items, context.status_table, now)

    def get_telemetry(self, project_key: str, now: Optional[datetime] = None) -> TelemetryResult:
        now = now or datetime.now(timezone.utc)
        context = self.get_context(project_key)
        data = self.get_board_data(project_key, context)

        raw = self.aggregator.compute(
            list(data.current_items),
            list(data.historical_items),
            list(data.closed_iterations),
            context,
            active_iteration=data.active_iteration,
            now=now
        )
        metrics = apply_gate(raw, context)
        health = assess_health(
            context.tracking_strategy,
            metrics["iterationProgress"].value,
            metrics["wip"].value
        )

        logger.info(f"Telemetry for {project_key}: health {health.status.value}")

        return TelemetryResult(
            metrics=metrics,
            raw_metrics=raw,
            health=health,
            context=context,
            items=data.current_items,
            issues_by_category=issues_by_category(data.current_items, context.status_table, now),
            team_load=self.aggregator.team_load(list(data.current_items)),
            stalled_items=self.aggregator.stalled_items(list(data.current_items), now),
            flow_distribution=flow_distribution(list(data.current_items)),
            closed_iterations=data.closed_iterations,
            generated_at=now
        )
