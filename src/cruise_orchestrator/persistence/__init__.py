"""Sandbox-local state that lets a review phase survive a restart."""

from cruise_orchestrator.persistence.phase_state import (
    PhaseName,
    PhaseState,
    PhaseStateError,
    PhaseStateStore,
    load_phase_state,
)

__all__ = [
    "PhaseName",
    "PhaseState",
    "PhaseStateError",
    "PhaseStateStore",
    "load_phase_state",
]
