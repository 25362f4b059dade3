"""Lifecycle state machine: monitoring, permission recovery and run reports."""

from cruise_orchestrator.lifecycle.monitor import (
    ProgressState,
    ProgressSummary,
    TimeoutConfig,
    TimeoutReason,
)
from cruise_orchestrator.lifecycle.operator import Abort, ConsoleOperator, Operator
from cruise_orchestrator.lifecycle.permissions import (
    CannotFix,
    DefaultClassifier,
    DenialKind,
    PermissionClassifier,
    PermissionDenial,
    PermissionDetector,
    Widen,
)
from cruise_orchestrator.lifecycle.watcher import (
    DefaultEvaluator,
    RecoveryStrategy,
    RunReport,
    RunStatus,
    Termination,
    Watcher,
    WatcherConfig,
    WatcherState,
)

__all__ = [
    "Abort",
    "CannotFix",
    "ConsoleOperator",
    "DefaultClassifier",
    "DefaultEvaluator",
    "DenialKind",
    "Operator",
    "PermissionClassifier",
    "PermissionDenial",
    "PermissionDetector",
    "ProgressState",
    "ProgressSummary",
    "RecoveryStrategy",
    "RunReport",
    "RunStatus",
    "Termination",
    "TimeoutConfig",
    "TimeoutReason",
    "Watcher",
    "WatcherConfig",
    "WatcherState",
    "Widen",
]
