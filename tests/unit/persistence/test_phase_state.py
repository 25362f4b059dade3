"""Unit tests for phase-state persistence."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from cruise_orchestrator.persistence.phase_state import (
    PhaseName,
    PhaseState,
    PhaseStateError,
    PhaseStateStore,
    load_phase_state,
)

if TYPE_CHECKING:
    from pathlib import Path


def _state(**overrides: object) -> PhaseState:
    fields: dict[str, object] = {
        "sandbox_location": "/tmp/sb-1",
        "branch_name": "feature/login",
        "pr_url": "https://github.com/acme/app/pull/7",
        "pr_number": 7,
    }
    fields.update(overrides)
    return PhaseState(**fields)  # type: ignore[arg-type]


def test_store_lives_under_the_sandbox_state_dir(tmp_path: Path) -> None:
    store = PhaseStateStore(tmp_path)

    assert store.path == tmp_path / ".cruise" / "phase-state.json"
    assert not store.exists()


def test_save_then_load_preserves_every_field(tmp_path: Path) -> None:
    state = _state(
        phase=PhaseName.AWAITING_APPROVAL,
        current_review_domain="security,general_polish",
        backoff_interval_secs=40.0,
        pending_comment_ids=(11, 12),
        finding_domains={11: "security", 12: "task_granularity"},
        completed_rounds=2,
    )
    store = PhaseStateStore(tmp_path)

    store.save(state)

    assert store.exists()
    assert load_phase_state(tmp_path) == state
    raw = json.loads(store.path.read_text(encoding="utf-8"))
    assert raw["finding_domains"] == {"11": "security", "12": "task_granularity"}


def test_queue_and_fix_transitions() -> None:
    state = _state().with_queued(5, "security").with_queued(6, "general_polish")

    assert state.with_queued(5, "security") is state
    fixed = state.with_fixed(5)

    assert fixed.pending_comment_ids == (6,)
    assert dict(fixed.finding_domains) == {6: "general_polish"}
    assert fixed.without_pending([6]).pending_comment_ids == ()


def test_touched_refreshes_last_activity() -> None:
    state = _state(last_activity="2020-01-01T00:00:00Z")

    touched = state.touched(phase=PhaseName.REVIEWING)

    assert touched.phase is PhaseName.REVIEWING
    assert touched.last_activity != state.last_activity
    assert touched.last_activity.endswith("Z")


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"branch_name": " "}, "branch_name"),
        ({"backoff_interval_secs": -1.0}, "backoff_interval_secs"),
        ({"completed_rounds": -1}, "completed_rounds"),
        ({"pr_number": None}, "set together"),
    ],
)
def test_invalid_states_are_rejected(overrides: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        _state(**overrides)


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(PhaseStateError, match="no phase state"):
        PhaseStateStore(tmp_path).load()


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("{not json", "not valid JSON"),
        ("[]", "JSON object"),
        ('{"schema_version": 99}', "schema_version"),
        ('{"sandbox_location": "/x", "branch_name": "b"}', "last_activity"),
        (
            '{"sandbox_location": "/x", "branch_name": "b", "last_activity": "t",'
            ' "pending_comment_ids": ["a"]}',
            "pending_comment_ids",
        ),
        (
            '{"sandbox_location": "/x", "branch_name": "b", "last_activity": "t",'
            ' "phase": "sleeping"}',
            "malformed phase state",
        ),
    ],
)
def test_malformed_files_raise_phase_state_error(
    tmp_path: Path, content: str, message: str
) -> None:
    store = PhaseStateStore(tmp_path)
    store.path.parent.mkdir(parents=True)
    store.path.write_text(content, encoding="utf-8")

    with pytest.raises(PhaseStateError, match=message):
        store.load()
