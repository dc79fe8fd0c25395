"""Final filter that hides metrics a project's structure makes meaningless."""

from services.metric_aggregator import MetricResult
from services.topology import ITERATION_METRICS, ProjectKind, StructuralContext, Validity


def applicable(metric_name: str, context: StructuralContext) -> bool:
    validity = context.metric_validity.get(metric_name)
    if validity is None:
        # Metrics outside the validity matrix are flow-level and always shown
        return metric_name not in ITERATION_METRICS
    return validity == Validity.VALID


def hidden_reason(context: StructuralContext) -> str:
    if context.project_kind == ProjectKind.GENERIC:
        return "generic-project"
    return f"strategy={context.tracking_strategy.value}"


def apply_gate(results: dict, context: StructuralContext) -> dict:
    """Return a copy of ``results`` with inapplicable metrics nulled.

    The input is left untouched so raw values stay available for diagnostics.
    """
    gated = {}
    for name, result in results.items():
        if applicable(name, context):
            gated[name] = result
            continue
        gated[name] = MetricResult(
            None,
            f"metric-hidden:{hidden_reason(context)}",
            result.source_window,
            {}
        )
    return gated
