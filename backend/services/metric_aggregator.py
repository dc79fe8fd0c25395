"""Flow and iteration metrics aggregated from work item snapshots."""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from services.reconstruction import (
    METHOD_CHANGELOG,
    METHOD_LEAD_TIME_FALLBACK,
    active_duration,
    category_durations,
    sample_active_at,
    status_transitions,
)
from services.status_classifier import CanonicalCategory
from services.telemetry_config import TelemetryConfig
from services.topology import EstimationMode, ProjectKind, StructuralContext, TrackingStrategy

logger = logging.getLogger(__name__)

HIGH_PRIORITIES = ("Highest", "High", "Critical", "Blocker")
WIP_SAMPLE_WEEKS = 3

# Mid-iteration additions worth reporting
SCOPE_CREEP_MIN_ITEMS = 2
SCOPE_CREEP_MIN_SIZE = 5

# Weights of the iteration health score factors
HEALTH_WEIGHTS = {"velocity": 0.3, "time": 0.3, "stalled": 0.25, "scope": 0.15}


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives.

    ``round`` uses banker's rounding (round(6.5) == 6), which is not what
    a dashboard reader expects.
    """
    return int(math.floor(value + 0.5))


def round_one_decimal(value: float) -> float:
    return math.floor(value * 10 + 0.5) / 10


def explain(code: str, *flags, **qualifiers) -> str:
    """Build an explanation code such as ``iteration-average:count-based:partial``."""
    parts = [code]
    parts.extend(flag for flag in flags if flag)
    parts.extend(f"{key}={value}" for key, value in qualifiers.items())
    return ":".join(parts)


@dataclass(frozen=True)
class MetricResult:
    value: Optional[float]
    explanation_code: str
    source_window: str = "none"
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "explanationCode": self.explanation_code,
            "sourceWindow": self.source_window,
            "details": self.details
        }


class HealthStatus(str, Enum):
    OPTIMAL = "OPTIMAL"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class HealthResult:
    status: HealthStatus
    pace_delta: Optional[float]
    wip_load: Optional[float]

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "paceDelta": self.pace_delta,
            "wipLoad": self.wip_load
        }


def assess_health(tracking_strategy: TrackingStrategy, pace_delta: Optional[float],
                  wip_load: Optional[float]) -> HealthResult:
    """Classify overall health from pace (timeboxed only) and WIP load."""
    pace = pace_delta or 0
    wip = wip_load or 0

    if tracking_strategy == TrackingStrategy.TIMEBOXED:
        if pace < -20 or wip > 120:
            status = HealthStatus.CRITICAL
        elif pace < -10 or wip > 90:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.OPTIMAL
    else:
        # Continuous flow is judged on WIP alone
        if wip > 100:
            status = HealthStatus.CRITICAL
        elif wip > 85:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.OPTIMAL

    return HealthResult(status, pace_delta, wip_load)


def _percentile(sorted_values: list, fraction: float) -> float:
    index = min(int(len(sorted_values) * fraction), len(sorted_values) - 1)
    return sorted_values[index]


def _hours_summary(hours: list) -> dict:
    ordered = sorted(hours)
    return {
        "count": len(ordered),
        "medianHours": round_half_up(_percentile(ordered, 0.5)),
        "p85Hours": round_half_up(_percentile(ordered, 0.85)),
        "minHours": round_half_up(ordered[0]),
        "maxHours": round_half_up(ordered[-1])
    }


def _heuristic_flag(items, replayed: bool = False) -> Optional[str]:
    if replayed or any(item.classification_heuristic for item in items):
        return "heuristic-status"
    return None


def _completion_time(item) -> Optional[datetime]:
    return item.resolved_at or item.updated_at


class MetricAggregator:
    """Computes the metric set for one request.

    Every metric returns a MetricResult. Missing or partial data yields a
    zero or absent value with an explanation code, never an exception.
    """

    def __init__(self, config: Optional[TelemetryConfig] = None):
        self.config = config or TelemetryConfig()

    def compute(self, current_items: list, historical_items: list,
                closed_iterations: list, context: StructuralContext,
                active_iteration=None, now: Optional[datetime] = None) -> dict:
        now = now or datetime.now(timezone.utc)
        table = context.status_table

        completion = self.completion(current_items, context)
        velocity = self.velocity(closed_iterations, historical_items, context)
        results = {
            "wip": self.wip_load(current_items),
            "wipConsistency": self.wip_consistency(current_items, historical_items, table, now),
            "velocity": velocity,
            "cycleTime": self.cycle_time(historical_items, table),
            "leadTime": self.lead_time(historical_items),
            "throughput": self.throughput(historical_items),
            "flowEfficiency": self.flow_efficiency(current_items, now),
            "completion": completion,
            "iterationProgress": self.iteration_progress(completion, active_iteration, now),
            "iterationHealth": self.iteration_health(active_iteration, velocity, context, now),
            "scopeCreep": self.scope_creep(active_iteration, context),
        }

        failing = [k for k, v in results.items() if v.value is None]
        logger.info(
            f"Computed {len(results)} metrics for {context.project_key} "
            f"({len(failing)} without a value)"
        )
        return results

    # Work in progress

    def _active(self, items: list) -> list:
        return [i for i in items if i.current_category == CanonicalCategory.ACTIVE]

    def wip_load(self, current_items: list) -> MetricResult:
        active = self._active(current_items)
        limit = self.config.wip_limit
        details = {"current": len(active), "limit": limit}

        if limit <= 0:
            return MetricResult(None, "no-limit-configured", "current items", details)

        value = round_half_up(len(active) / limit * 100)
        return MetricResult(
            value,
            explain("wip-load", _heuristic_flag(current_items)),
            "current items",
            details
        )

    def wip_consistency(self, current_items: list, historical_items: list,
                        table, now: datetime) -> MetricResult:
        """Population standard deviation of weekly WIP samples.

        The first sample is the live count; the earlier ones are
        reconstructed from the historical items' changelogs.
        """
        current = len(self._active(current_items))
        window = f"{WIP_SAMPLE_WEEKS + 1} weekly samples"

        if not historical_items and current == 0:
            return MetricResult(0, "insufficient-history", window, {"samples": []})

        samples = [current]
        approximated = 0
        replayed_heuristic = False
        for week in range(1, WIP_SAMPLE_WEEKS + 1):
            sample = sample_active_at(historical_items, now - timedelta(weeks=week), table)
            samples.append(sample.count)
            approximated += sample.approximated
            replayed_heuristic = replayed_heuristic or sample.heuristic

        details = {"samples": samples, "approximatedSamples": approximated}
        mean = sum(samples) / len(samples)
        if mean == 0:
            return MetricResult(0, "wip-always-zero", window, details)

        variance = sum((s - mean) ** 2 for s in samples) / len(samples)
        deviation = round_one_decimal(math.sqrt(variance))
        return MetricResult(
            deviation,
            explain(
                "wip-deviation",
                "lead-time-proxy" if approximated else None,
                _heuristic_flag(current_items, replayed_heuristic),
                mean=round_one_decimal(mean)
            ),
            window,
            details
        )

    # Delivery

    def _contribution(self, item, context: StructuralContext) -> float:
        if context.project_kind == ProjectKind.GENERIC:
            return 1
        if context.estimation_mode == EstimationMode.COUNT:
            return 1
        return item.size_estimate or 0

    def _counts_items(self, context: StructuralContext) -> bool:
        return (
            context.project_kind == ProjectKind.GENERIC
            or context.estimation_mode == EstimationMode.COUNT
        )

    def velocity(self, closed_iterations: list, historical_items: list,
                 context: StructuralContext) -> MetricResult:
        count_based = "count-based" if self._counts_items(context) else None

        if context.tracking_strategy != TrackingStrategy.TIMEBOXED:
            return MetricResult(
                None,
                explain("not-applicable", strategy=context.tracking_strategy.value),
                "none",
                {"pseudoVelocity": self.pseudo_velocity(historical_items, context)}
            )

        if not closed_iterations:
            return MetricResult(0, "no-closed-iterations", "none", {"iterations": []})

        per_iteration = []
        failed = 0
        for iteration in closed_iterations:
            if iteration.fetch_failed:
                failed += 1
                per_iteration.append({"id": iteration.id, "name": iteration.name,
                                      "completed": 0, "fetchFailed": True})
                continue
            per_iteration.append({
                "id": iteration.id,
                "name": iteration.name,
                "completed": self._iteration_total(iteration, context),
                "fetchFailed": False
            })

        window = f"{len(closed_iterations)} closed iterations"
        if failed == len(closed_iterations):
            logger.warning(f"No iteration data available for {context.project_key}")
            return MetricResult(0, "iteration-data-unavailable", window,
                                {"iterations": per_iteration})

        # Failed iterations stay in the denominator as zero
        total = sum(entry["completed"] for entry in per_iteration)
        value = round_half_up(total / len(closed_iterations))
        return MetricResult(
            value,
            explain("iteration-average", count_based, "partial" if failed else None),
            window,
            {"iterations": per_iteration}
        )

    def _iteration_total(self, iteration, context: StructuralContext) -> float:
        total = 0
        for item in iteration.items:
            if item.current_category != CanonicalCategory.DONE:
                continue
            if iteration.start and iteration.end and item.resolved_at:
                if not (iteration.start <= item.resolved_at <= iteration.end):
                    continue
            total += self._contribution(item, context)
        return total

    def pseudo_velocity(self, historical_items: list, context: StructuralContext) -> dict:
        """Completions normalized to an iteration-sized window, for boards without sprints."""
        window_days = self.config.pseudo_velocity_window_days
        done = [i for i in historical_items if i.current_category == CanonicalCategory.DONE]
        times = [t for t in (_completion_time(i) for i in done) if t is not None]
        if not times:
            return {"value": 0, "windowDays": window_days, "explanationCode": "no-completed-items"}

        span_days = (max(times) - min(times)).total_seconds() / 86400
        span_days = max(span_days, self.config.pseudo_velocity_min_days)
        total = sum(self._contribution(i, context) for i in done)
        return {
            "value": round_half_up(total / span_days * window_days),
            "windowDays": window_days,
            "explanationCode": explain(
                "pseudo-velocity", "count-based" if self._counts_items(context) else None
            )
        }

    def cycle_time(self, historical_items: list, table) -> MetricResult:
        done = [i for i in historical_items if i.current_category == CanonicalCategory.DONE]
        if not done:
            return MetricResult(0, "no-completed-items", "none", {"count": 0})

        exact = []
        fallback = []
        replayed_heuristic = False
        for item in done:
            duration = active_duration(item, table)
            if duration.method == METHOD_CHANGELOG:
                exact.append(duration.hours)
                replayed_heuristic = replayed_heuristic or duration.heuristic
            elif duration.method == METHOD_LEAD_TIME_FALLBACK:
                fallback.append(duration.hours)

        window = f"{len(done)} completed items"
        flag = _heuristic_flag(done, replayed_heuristic)
        if exact:
            return MetricResult(
                round_one_decimal(sum(exact) / len(exact)),
                explain("active-time-average", flag),
                window,
                _hours_summary(exact)
            )
        if fallback:
            return MetricResult(
                round_one_decimal(sum(fallback) / len(fallback)),
                explain("lead-time-fallback", flag),
                window,
                _hours_summary(fallback)
            )
        return MetricResult(0, "insufficient-history", window, {"count": 0})

    def lead_time(self, historical_items: list) -> MetricResult:
        hours = [
            (i.resolved_at - i.created_at).total_seconds() / 3600
            for i in historical_items
            if i.current_category == CanonicalCategory.DONE
            and i.resolved_at and i.resolved_at > i.created_at
        ]
        if not hours:
            return MetricResult(0, "no-completed-items", "none", {"count": 0})
        return MetricResult(
            round_one_decimal(sum(hours) / len(hours)),
            "creation-to-resolution-average",
            f"{len(hours)} completed items",
            _hours_summary(hours)
        )

    def throughput(self, historical_items: list) -> MetricResult:
        done = [
            i for i in historical_items
            if i.current_category == CanonicalCategory.DONE or i.resolved_at
        ]
        times = [t for t in (_completion_time(i) for i in done) if t is not None]
        if not done or not times:
            return MetricResult(0, "no-completed-items", "none", {"count": 0})

        days = (max(times) - min(times)).total_seconds() / 86400
        days = max(days, 1)
        window = f"{round_half_up(days)} days"
        details = {"count": len(done), "days": round_one_decimal(days)}

        if days < 7:
            # Too short to extrapolate a weekly rate
            return MetricResult(len(done), "window-too-short-for-rate", window, details)

        rate = round_one_decimal(len(done) / (days / 7))
        return MetricResult(rate, explain("weekly-rate", _heuristic_flag(done)), window, details)

    def flow_efficiency(self, current_items: list, now: datetime) -> MetricResult:
        """Share of ACTIVE items that moved within the stalled threshold."""
        active = self._active(current_items)
        if not active:
            return MetricResult(100, "no-active-items", "current items", {"active": 0, "moving": 0})

        moving = 0
        for item in active:
            last_activity = self._last_activity(item)
            if last_activity is None:
                continue
            idle_hours = (now - last_activity).total_seconds() / 3600
            if idle_hours <= self.config.stalled_threshold_hours:
                moving += 1

        return MetricResult(
            round_half_up(moving / len(active) * 100),
            explain("recently-moved-share", threshold=self.config.stalled_threshold_hours),
            "current items",
            {"active": len(active), "moving": moving}
        )

    def _last_activity(self, item) -> Optional[datetime]:
        transitions = status_transitions(item)
        if transitions:
            return transitions[-1].timestamp
        return item.updated_at or item.created_at

    def completion(self, current_items: list, context: StructuralContext) -> MetricResult:
        if not current_items:
            return MetricResult(0, "no-current-items", "current items", {"done": 0, "total": 0})

        count_based = self._counts_items(context)
        done = sum(
            self._contribution(i, context) for i in current_items
            if i.current_category == CanonicalCategory.DONE
        )
        total = sum(self._contribution(i, context) for i in current_items)

        if total == 0:
            # Size mode, but nothing carries an estimate
            count_based = True
            done = sum(1 for i in current_items if i.current_category == CanonicalCategory.DONE)
            total = len(current_items)

        return MetricResult(
            round_half_up(done / total * 100),
            explain("completion-ratio",
                    "count-based" if count_based else None,
                    _heuristic_flag(current_items)),
            "current items",
            {"done": done, "total": total}
        )

    def iteration_progress(self, completion: MetricResult, active_iteration,
                           now: datetime) -> MetricResult:
        """Completion minus the linear progress expected by now."""
        if active_iteration is None or not active_iteration.start or not active_iteration.end:
            return MetricResult(None, "no-active-iteration", "none", {})

        span = (active_iteration.end - active_iteration.start).total_seconds()
        window = f"iteration {active_iteration.name}"
        if span <= 0:
            return MetricResult(0, "iteration-window-invalid", window, {})

        elapsed = (now - active_iteration.start).total_seconds()
        expected = min(100, max(0, round_half_up(elapsed / span * 100)))
        actual = completion.value or 0
        return MetricResult(
            actual - expected,
            explain("pace-delta", expected=expected),
            window,
            {"expected": expected, "actual": actual}
        )

    def iteration_health(self, active_iteration, velocity: MetricResult,
                         context: StructuralContext, now: datetime) -> MetricResult:
        """Weighted 0-100 score for the running iteration.

        Factors: completed size against the velocity average, progress
        against elapsed time, the share of items not stalled and the
        share of items not in flight.
        """
        if active_iteration is None:
            return MetricResult(None, "no-active-iteration", "none", {})

        items = list(active_iteration.items)
        window = f"iteration {active_iteration.name}"
        if not items:
            return MetricResult(None, "no-iteration-items", window, {})

        count_based = self._counts_items(context)
        done = [i for i in items if i.current_category == CanonicalCategory.DONE]
        completed = sum(self._contribution(i, context) for i in done)
        total = sum(self._contribution(i, context) for i in items)
        if total == 0:
            count_based = True
            total = len(items)

        time_factor = 0.5
        if active_iteration.start and active_iteration.end:
            span = (active_iteration.end - active_iteration.start).total_seconds()
            if span > 0:
                elapsed = (now - active_iteration.start).total_seconds()
                expected = min(1, max(0, elapsed / span))
                time_factor = (completed / total) / (expected or 0.1)

        if velocity.value:
            velocity_factor = min(1.5, completed / velocity.value)
        else:
            velocity_factor = 0.5

        active = self._active(items)
        stalled = [
            i for i in active
            if self._idle_hours(i, now) > self.config.stalled_threshold_for(i.item_type)
        ]
        stalled_factor = 1 - len(stalled) / len(items)
        scope_factor = 1 - (len(active) / len(items)) * 0.5

        factors = {
            "velocity": velocity_factor,
            "time": time_factor,
            "stalled": stalled_factor,
            "scope": scope_factor
        }
        raw = sum(factors[name] * weight for name, weight in HEALTH_WEIGHTS.items()) * 100
        score = min(100, max(0, round_half_up(raw)))

        if score >= 80:
            band = "on-track"
        elif score >= 50:
            band = "at-risk"
        else:
            band = "off-track"

        return MetricResult(
            score,
            explain("weighted-factors",
                    "count-based" if count_based else None,
                    _heuristic_flag(items),
                    band=band),
            window,
            {
                "factors": {name: round(value, 2) for name, value in factors.items()},
                "stalled": len(stalled),
                "completed": completed,
                "total": total
            }
        )

    def scope_creep(self, active_iteration, context: StructuralContext) -> MetricResult:
        """Items created after the running iteration started."""
        if active_iteration is None:
            return MetricResult(None, "no-active-iteration", "none", {})
        if active_iteration.start is None:
            return MetricResult(None, "no-iteration-start", f"iteration {active_iteration.name}", {})

        added = [i for i in active_iteration.items if i.created_at > active_iteration.start]
        added_size = sum(i.size_estimate or 0 for i in added)
        detected = len(added) >= SCOPE_CREEP_MIN_ITEMS or added_size >= SCOPE_CREEP_MIN_SIZE

        return MetricResult(
            len(added),
            explain("added-after-start",
                    "count-based" if self._counts_items(context) else None,
                    "detected" if detected else None),
            f"iteration {active_iteration.name}",
            {
                "addedCount": len(added),
                "addedSize": added_size,
                "detected": detected,
                "keys": [i.key for i in added]
            }
        )

    def _idle_hours(self, item, now: datetime) -> float:
        last_update = item.updated_at or item.created_at
        return (now - last_update).total_seconds() / 3600

    # Team

    def team_load(self, current_items: list) -> dict:
        """ACTIVE items per assignee as a percentage of capacity."""
        capacity = self.config.assignee_capacity
        if capacity <= 0:
            return {}

        counts = {}
        for item in self._active(current_items):
            name = item.assignee or "Unassigned"
            counts[name] = counts.get(name, 0) + 1
        return {name: round_half_up(count / capacity * 100) for name, count in counts.items()}

    def stalled_items(self, current_items: list, now: Optional[datetime] = None) -> list:
        """High priority ACTIVE items idle past their type's threshold."""
        now = now or datetime.now(timezone.utc)
        stalled = []

        for item in self._active(current_items):
            if (item.priority or "Medium") not in HIGH_PRIORITIES:
                continue
            idle_hours = self._idle_hours(item, now)
            if idle_hours <= self.config.stalled_threshold_for(item.item_type):
                continue
            stalled.append({
                "key": item.key,
                "summary": item.summary,
                "assignee": item.assignee or "Unassigned",
                "status": item.current_status_name,
                "priority": item.priority,
                "hoursSinceUpdate": round_half_up(idle_hours),
                "reason": infer_blocking_reason(item)
            })

        return stalled


def infer_blocking_reason(item) -> str:
    labels = [label.lower() for label in item.labels]
    summary = (item.summary or "").lower()

    if any("block" in label for label in labels):
        return "Explicitly marked as blocked"
    if "api" in summary:
        return "Waiting on API specification"
    if "design" in summary:
        return "Awaiting design approval"
    if "depend" in summary:
        return "External dependency"
    if any("review" in label for label in labels):
        return "Stuck in code review"
    if "test" in summary:
        return "Waiting on test environment"
    return "Unknown blocker - needs investigation"


def issues_by_category(items: list, table=None, now: Optional[datetime] = None) -> dict:
    """Items grouped by current category.

    With a status table, each entry also carries the hours it has spent in
    each category up to ``now`` (or its completion time when earlier).
    """
    now = now or datetime.now(timezone.utc)
    grouped = {category.value: [] for category in CanonicalCategory}
    for item in items:
        entry = item.to_dict()
        if table is not None:
            until = now
            if item.current_category == CanonicalCategory.DONE and item.completed_at:
                until = min(until, item.completed_at)
            hours = category_durations(item, table, until)
            entry["categoryHours"] = {
                category.value: round_one_decimal(value) for category, value in hours.items()
            }
        grouped[item.current_category.value].append(entry)
    return grouped
