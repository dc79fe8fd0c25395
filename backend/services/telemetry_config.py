"""Telemetry configuration: defaults, the JSON config file and request overrides."""

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join(
    os.path.dirname(__file__), "..", "config", "telemetry-config.json"
)

# Query parameters a request may override, with their parsers
OVERRIDABLE = {
    "wip_limit": int,
    "assignee_capacity": int,
    "stalled_threshold_hours": float,
    "closed_iteration_count": int,
    "locale": str,
}


@dataclass(frozen=True)
class TelemetryConfig:
    wip_limit: int = 8
    assignee_capacity: int = 3
    stalled_threshold_hours: float = 24
    stalled_threshold_hours_by_type: dict = field(default_factory=dict)
    size_field_candidates: tuple = ("Story Points", "Story point estimate", "Estimation")
    # Use the board's issues when the active sprint has none
    include_board_items_when_empty: bool = True
    locale: str = "en"
    closed_iteration_count: int = 5
    history_window_days: int = 30
    pseudo_velocity_window_days: int = 14
    pseudo_velocity_min_days: int = 7

    @classmethod
    def from_dict(cls, data: dict) -> "TelemetryConfig":
        """Build from a JSON object using camelCase or snake_case keys.

        Unknown keys are ignored.
        """
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in (data or {}).items():
            name = _snake_case(key)
            if name not in known:
                continue
            if name == "size_field_candidates":
                value = tuple(value)
            elif name == "stalled_threshold_hours_by_type":
                value = {str(k).lower(): v for k, v in (value or {}).items()}
            values[name] = value
        return cls(**values)

    def with_overrides(self, args) -> "TelemetryConfig":
        """Apply request query parameters, skipping values that don't parse."""
        changes = {}
        for name, parse in OVERRIDABLE.items():
            raw = args.get(name)
            if raw in (None, ""):
                continue
            try:
                changes[name] = parse(raw)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid {name} override: {raw!r}")
        return replace(self, **changes) if changes else self

    def stalled_threshold_for(self, item_type: Optional[str]) -> float:
        return self.stalled_threshold_hours_by_type.get(
            (item_type or "").lower(), self.stalled_threshold_hours
        )


def _snake_case(key: str) -> str:
    out = []
    for ch in key:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


def load_telemetry_config(path: Optional[str] = None) -> TelemetryConfig:
    """Load the telemetry config file, falling back to defaults."""
    config_path = path or DEFAULT_CONFIG_PATH

    if not os.path.exists(config_path):
        logger.info("No telemetry-config.json found, using defaults")
        return TelemetryConfig()

    try:
        with open(config_path, "r") as f:
            config = TelemetryConfig.from_dict(json.load(f))
        logger.info(f"Loaded telemetry config from {config_path}")
        return config
    except (json.JSONDecodeError, IOError, TypeError, AttributeError) as e:
        logger.warning(f"Failed to load telemetry config: {e}")
        return TelemetryConfig()
