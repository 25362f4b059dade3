"""Plan loading, dependency validation and wave partitioning."""

from cruise_orchestrator.planning.plan_loader import (
    PlanLoadError,
    load_plan,
    parse_plan,
    plan_to_dict,
)
from cruise_orchestrator.planning.task_graph import (
    DependencyCycleError,
    UnknownDependencyError,
    compute_waves,
    detect_cycle,
    transitive_dependents,
    validate_plan,
)

__all__ = [
    "DependencyCycleError",
    "PlanLoadError",
    "UnknownDependencyError",
    "compute_waves",
    "detect_cycle",
    "load_plan",
    "parse_plan",
    "plan_to_dict",
    "transitive_dependents",
    "validate_plan",
]
