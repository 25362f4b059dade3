"""
Unit tests for the config loader.

Precedence is CLI > env > file > defaults; environment names derive from the
dotted config path.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from cruise_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    env_name_for_path,
    load_config,
    load_config_with_warnings,
    normalize_paths,
)


def _write_config(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_precedence_defaults_file_env_cli(tmp_path: Path) -> None:
    empty = _write_config(tmp_path / "empty.toml", "")
    config_path = _write_config(tmp_path / "cruise.toml", "[build]\nmax_parallel = 4\n")
    env = {"CRUISE_BUILD_MAX_PARALLEL": "6"}

    assert load_config(empty, environ={})["build"]["max_parallel"] == 3
    assert load_config(config_path, environ={})["build"]["max_parallel"] == 4
    assert load_config(config_path, environ=env)["build"]["max_parallel"] == 6
    cli_loaded = load_config(
        config_path, environ=env, cli_overrides={"build.max_parallel": 7}
    )
    assert cli_loaded["build"]["max_parallel"] == 7


def test_env_values_are_coerced_by_default_type(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "cruise.toml", "")

    loaded = load_config(
        config_path,
        environ={
            "CRUISE_TIMEOUTS_IDLE_SECONDS": "30",
            "CRUISE_BUILD_RETRY_FAILED_ONCE": "off",
            "CRUISE_RECOVERY_STRATEGY": " aggressive ",
            "CRUISE_REVIEW_DOMAINS": "security, general_polish,",
            "CRUISE_RUNNER_MODEL": "opus",
            "CRUISE_RUNNER_REVIEWER": "claude",
            "CRUISE_REVIEW_ROTATE_DOMAINS": "yes",
        },
    )

    assert loaded["timeouts"]["idle_seconds"] == 30.0
    assert loaded["build"]["retry_failed_once"] is False
    assert loaded["recovery"]["strategy"] == "aggressive"
    assert loaded["review"]["domains"] == ["security", "general_polish"]
    assert loaded["runner"]["model"] == "opus"
    assert loaded["runner"]["reviewer"] == "claude"
    assert loaded["review"]["rotate_domains"] is True


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({"CRUISE_BUILD_MAX_PARALLEL": "many"}, "must be an integer"),
        ({"CRUISE_TIMEOUTS_TOTAL_SECONDS": "forever"}, "must be a number"),
        ({"CRUISE_OBSERVABILITY_LOG_TO_STDOUT": "sometimes"}, "must be a boolean"),
    ],
)
def test_invalid_env_values_name_the_variable(
    tmp_path: Path, env: dict[str, str], message: str
) -> None:
    config_path = _write_config(tmp_path / "cruise.toml", "")
    (name,) = env

    with pytest.raises(ConfigLoadError, match=message) as excinfo:
        load_config(config_path, environ=env)
    assert name in str(excinfo.value)


def test_env_name_for_path() -> None:
    assert env_name_for_path(("timeouts", "idle_seconds")) == "CRUISE_TIMEOUTS_IDLE_SECONDS"


def test_missing_explicit_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_missing_default_file_falls_back_to_defaults(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    loaded = load_config_with_warnings(environ={})

    assert loaded.source is None
    assert loaded.config["build"]["max_parallel"] == 3


def test_invalid_toml_is_reported(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "cruise.toml", "[build\n")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_invalid_file_values_fail_validation(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "cruise.toml",
        "[timeouts]\nidle_seconds = 900.0\ntotal_seconds = 600.0\nsurprise = true\n",
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, environ={})
    assert [issue.path for issue in excinfo.value.issues] == ["timeouts.surprise"]


def test_cross_field_errors_after_overrides(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "cruise.toml", "")

    with pytest.raises(ConfigValidationError, match="must be less than timeouts.total_seconds"):
        load_config(config_path, environ={"CRUISE_TIMEOUTS_IDLE_SECONDS": "5000"})


def test_warnings_are_returned_with_config(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "cruise.toml", "[recovery]\nmax_escalations = 0\n")

    loaded = load_config_with_warnings(config_path, environ={})

    assert loaded.source == config_path.resolve()
    assert [warning.path for warning in loaded.warnings] == ["recovery.max_escalations"]


def test_paths_are_normalized_relative_to_config_file(tmp_path: Path) -> None:
    config_dir = tmp_path / "conf"
    config_path = _write_config(
        config_dir / "cruise.toml",
        '[paths]\nworktree_root = "../trees/"\nlog_dir = "/var/tmp/cruise-logs"\n',
    )

    loaded = load_config(config_path, environ={})

    assert loaded["paths"]["worktree_root"] == (tmp_path.resolve() / "trees").as_posix()
    assert loaded["paths"]["log_dir"] == "/var/tmp/cruise-logs"


def test_normalize_paths_does_not_mutate_input(tmp_path: Path) -> None:
    config = {"paths": {"worktree_root": "wt", "log_dir": "logs"}}

    normalized = normalize_paths(config, base_dir=tmp_path)

    assert normalized["paths"]["log_dir"] == (tmp_path / "logs").as_posix()
    assert config["paths"]["log_dir"] == "logs"


def test_dump_effective_config_is_deterministic(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "cruise.toml", "")

    first = dump_effective_config(load_config(config_path, environ={}))
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    assert json.loads(first)["integration"]["conflict_threshold"] == 2
