"""
Unit tests for config schema validation.

Structured issues are reported with dotted paths; warnings never block a
config from loading.
"""

from __future__ import annotations

from typing import Any

import pytest

from cruise_orchestrator.config.schema import (
    ConfigSchemaVersion,
    ConfigValidationError,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    validate_config,
)


def _with(overlay: dict[str, Any]) -> dict[str, Any]:
    return merge_config(default_config(), overlay)


def _rendered_issues(config: object) -> list[str]:
    return [issue.render() for issue in validate_config(config).issues]


def test_defaults_validate_without_warnings() -> None:
    result = validate_config(default_config())

    assert result.is_valid
    assert result.config is not None
    assert result.config["review"]["domains"][0] == "security"
    assert result.config["review"]["rotate_domains"] is False
    assert result.config["runner"]["reviewer"] == "gemini"
    assert result.warnings == ()


@pytest.mark.parametrize(
    ("runner", "message"),
    [
        (
            {"reviewer": "claude", "reviewer_binary": "claude"},
            "reviewer uses the same binary as the primary runner",
        ),
        ({"reviewer": "claude"}, "does not look like the claude CLI"),
        ({"reviewer_binary": "/opt/bin/claude"}, "does not look like the gemini CLI"),
    ],
)
def test_reviewer_runner_mismatches_warn(runner: dict[str, str], message: str) -> None:
    result = validate_config(_with({"runner": runner}))

    assert result.is_valid
    assert [warning.path for warning in result.warnings] == ["runner.reviewer_binary"]
    assert message in result.warnings[0].message


def test_claude_reviewer_with_its_own_binary_is_clean() -> None:
    result = validate_config(
        _with({"runner": {"reviewer": "claude", "reviewer_binary": "/usr/local/bin/claude-review"}})
    )

    assert result.warnings == ()


def test_default_config_is_a_fresh_copy() -> None:
    first = default_config()
    first["review"]["domains"].clear()

    assert default_config()["review"]["domains"]


def test_unknown_keys_are_rejected_with_their_path() -> None:
    issues = _rendered_issues(_with({"timeouts": {"bogus": 1}, "extra": {}}))

    assert "extra: unknown field" in issues
    assert "timeouts.bogus: unknown field" in issues


def test_missing_section_is_reported() -> None:
    config = default_config()
    del config["review"]  # type: ignore[misc]

    assert _rendered_issues(config) == ["review: missing required field"]


@pytest.mark.parametrize(
    ("overlay", "expected"),
    [
        ({"build": {"max_parallel": "three"}}, "build.max_parallel: expected integer, got str"),
        ({"build": {"max_parallel": True}}, "build.max_parallel: expected integer, got bool"),
        ({"build": {"max_parallel": 0}}, "build.max_parallel: must be >= 1"),
        ({"timeouts": {"total_seconds": -1}}, "timeouts.total_seconds: must be > 0"),
        ({"approval": {"multiplier": 0.5}}, "approval.multiplier: must be >= 1.0"),
        ({"runner": {"primary_binary": "  "}}, "runner.primary_binary: must not be empty"),
        (
            {"runner": {"reviewer": "codex"}},
            "runner.reviewer: invalid value 'codex'; expected one of: claude, gemini",
        ),
        (
            {"review": {"rotate_domains": 1}},
            "review.rotate_domains: expected boolean, got int",
        ),
        (
            {"observability": {"log_to_stdout": "yes"}},
            "observability.log_to_stdout: expected boolean, got str",
        ),
    ],
)
def test_type_and_range_violations(overlay: dict[str, Any], expected: str) -> None:
    assert expected in _rendered_issues(_with(overlay))


def test_recovery_strategy_must_be_known() -> None:
    issues = _rendered_issues(_with({"recovery": {"strategy": "reckless"}}))

    assert issues == [
        "recovery.strategy: invalid value 'reckless'; "
        "expected one of: aggressive, interactive, moderate"
    ]


def test_review_domains_are_validated() -> None:
    issues = _rendered_issues(_with({"review": {"domains": ["security", "style", "security"]}}))

    assert issues[0].startswith("review.domains[1]: invalid value 'style'")
    assert issues[1] == "review.domains[2]: duplicate domain 'security'"
    assert _rendered_issues(_with({"review": {"domains": "security"}})) == [
        "review.domains: expected array, got str"
    ]


@pytest.mark.parametrize(
    ("timeouts", "expected"),
    [
        (
            {"idle_seconds": 60.0, "total_seconds": 60.0},
            "timeouts.idle_seconds: must be less than timeouts.total_seconds",
        ),
        (
            {"idle_seconds": 30.0, "tick_seconds": 45.0},
            "timeouts.tick_seconds: must not exceed timeouts.idle_seconds",
        ),
    ],
)
def test_timeout_cross_checks(timeouts: dict[str, float], expected: str) -> None:
    assert _rendered_issues(_with({"timeouts": timeouts})) == [expected]


def test_poll_ceiling_must_not_be_below_initial_interval() -> None:
    issues = _rendered_issues(
        _with({"approval": {"poll_initial_seconds": 60.0, "poll_max_seconds": 10.0}})
    )

    assert issues == [
        "approval.poll_max_seconds: must be greater than or equal to "
        "approval.poll_initial_seconds"
    ]


def test_schema_version_mismatch_carries_migration_guidance() -> None:
    newer = ConfigSchemaVersion + 1
    issues = _rendered_issues(_with({"meta": {"schema_version": newer}}))

    assert issues == [f"meta.schema_version: {migration_guidance(newer)}"]
    assert "upgrade cruise-orchestrator" in migration_guidance(newer)
    assert migration_guidance(ConfigSchemaVersion) == "schema version is current"


def test_suspicious_settings_produce_warnings() -> None:
    result = validate_config(
        _with(
            {
                "runner": {"reviewer": "claude", "reviewer_binary": "claude-review"},
                "timeouts": {"idle_seconds": 5.0, "total_seconds": 9000.0, "tick_seconds": 1.0},
                "recovery": {"max_escalations": 0},
            }
        )
    )

    assert result.is_valid
    assert [warning.path for warning in result.warnings] == [
        "timeouts.idle_seconds",
        "timeouts.total_seconds",
        "recovery.max_escalations",
    ]


def test_assert_valid_config_lists_every_issue() -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(_with({"build": {"max_parallel": 0}, "review": {"extra": 1}}))

    assert len(excinfo.value.issues) == 2
    assert "- build.max_parallel: must be >= 1" in str(excinfo.value)


def test_merge_config_is_deep_and_non_destructive() -> None:
    base = default_config()
    merged = merge_config(base, {"timeouts": {"idle_seconds": 30.0}})

    assert merged["timeouts"]["idle_seconds"] == 30.0
    assert merged["timeouts"]["total_seconds"] == base["timeouts"]["total_seconds"]
    assert base["timeouts"]["idle_seconds"] == 120.0
