"""
Configuration schema, defaults and validation.

Validation returns structured issues (dotted field path + message) so that
every problem in a config file is reported at once. Hard errors make the
config unusable; warnings flag settings that are legal but probably not what
the operator intended and are returned alongside the normalized config.
"""

from __future__ import annotations

import copy
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any, Final, Literal, NotRequired, TypedDict

from cruise_orchestrator.constants import CONFIG_SCHEMA_VERSION, DEFAULT_BASE_BRANCH, DEFAULT_REMOTE

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

RECOVERY_STRATEGIES: Final[tuple[str, ...]] = ("moderate", "aggressive", "interactive")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
REVIEWER_RUNNERS: Final[tuple[str, ...]] = ("gemini", "claude")
REVIEW_DOMAINS: Final[tuple[str, ...]] = (
    "security",
    "technical_feasibility",
    "task_granularity",
    "dependency_completeness",
    "general_polish",
)

# Thresholds for warnings; values past them are legal but suspicious.
MIN_SENSIBLE_IDLE_SECONDS: Final[float] = 10.0
MAX_SENSIBLE_TOTAL_SECONDS: Final[float] = 7200.0
MAX_SENSIBLE_ESCALATIONS: Final[int] = 10

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "worktree_root"),
    ("paths", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class RunnerConfig(TypedDict):
    primary_binary: str
    reviewer: Literal["gemini", "claude"]
    reviewer_binary: str
    model: NotRequired[str]
    reviewer_model: NotRequired[str]


class TimeoutsConfig(TypedDict):
    idle_seconds: float
    total_seconds: float
    tick_seconds: float


class RecoveryConfig(TypedDict):
    strategy: Literal["moderate", "aggressive", "interactive"]
    max_escalations: int


class BuildConfig(TypedDict):
    max_parallel: int
    retry_failed_once: bool


class ReviewConfig(TypedDict):
    max_concurrent_reviewers: int
    channel_capacity: int
    domains: list[str]
    rotate_domains: bool


class ApprovalConfig(TypedDict):
    poll_initial_seconds: float
    poll_max_seconds: float
    multiplier: float
    timeout_seconds: float


class IntegrationConfig(TypedDict):
    base_branch: str
    remote: str
    conflict_threshold: int


class PathsConfig(TypedDict):
    worktree_root: str
    log_dir: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_to_stdout: bool


class CruiseConfig(TypedDict):
    meta: MetaConfig
    runner: RunnerConfig
    timeouts: TimeoutsConfig
    recovery: RecoveryConfig
    build: BuildConfig
    review: ReviewConfig
    approval: ApprovalConfig
    integration: IntegrationConfig
    paths: PathsConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[CruiseConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "runner": {
        "primary_binary": "claude",
        "reviewer": "gemini",
        "reviewer_binary": "gemini",
    },
    "timeouts": {
        "idle_seconds": 120.0,
        "total_seconds": 1800.0,
        "tick_seconds": 1.0,
    },
    "recovery": {
        "strategy": "moderate",
        "max_escalations": 1,
    },
    "build": {
        "max_parallel": 3,
        "retry_failed_once": True,
    },
    "review": {
        "max_concurrent_reviewers": 3,
        "channel_capacity": 16,
        "domains": list(REVIEW_DOMAINS),
        "rotate_domains": False,
    },
    "approval": {
        "poll_initial_seconds": 5.0,
        "poll_max_seconds": 300.0,
        "multiplier": 2.0,
        "timeout_seconds": 86400.0,
    },
    "integration": {
        "base_branch": DEFAULT_BASE_BRANCH,
        "remote": DEFAULT_REMOTE,
        "conflict_threshold": 2,
    },
    "paths": {
        "worktree_root": ".cruise/worktrees/",
        "log_dir": ".cruise/logs/",
    },
    "observability": {
        "log_level": "INFO",
        "log_to_stdout": False,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation finding."""

    path: str
    message: str

    def render(self) -> str:
        return f"{self.path}: {self.message}"


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Normalized config when there are no errors; warnings never block."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]
    warnings: tuple[ConfigValidationIssue, ...] = ()

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.render()}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> CruiseConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade cruise.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade cruise-orchestrator"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate a complete config; see the module docstring for errors vs warnings."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())

    _validate_cross_fields(normalized, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())

    return ConfigValidationResult(
        config=normalized,
        issues=(),
        warnings=config_warnings(normalized),
    )


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def config_warnings(config: Mapping[str, Any]) -> tuple[ConfigValidationIssue, ...]:
    """Legal but suspicious settings in an already validated config."""

    warnings = _IssueCollector()
    timeouts = config["timeouts"]
    if timeouts["idle_seconds"] < MIN_SENSIBLE_IDLE_SECONDS:
        warnings.add(
            "timeouts.idle_seconds",
            f"{timeouts['idle_seconds']:g}s is shorter than {MIN_SENSIBLE_IDLE_SECONDS:g}s; "
            "runs thinking between tool calls may be killed",
        )
    if timeouts["total_seconds"] > MAX_SENSIBLE_TOTAL_SECONDS:
        warnings.add(
            "timeouts.total_seconds",
            f"{timeouts['total_seconds']:g}s exceeds {MAX_SENSIBLE_TOTAL_SECONDS:g}s; "
            "a stuck run may hold a sandbox for a long time",
        )

    escalations = config["recovery"]["max_escalations"]
    if escalations == 0:
        warnings.add(
            "recovery.max_escalations",
            "0 disables permission recovery under the moderate strategy",
        )
    elif escalations > MAX_SENSIBLE_ESCALATIONS:
        warnings.add(
            "recovery.max_escalations",
            f"{escalations} escalations can widen a sandbox far beyond the task's needs",
        )

    runner = config["runner"]
    if runner["reviewer_binary"] == runner["primary_binary"]:
        warnings.add(
            "runner.reviewer_binary",
            "reviewer uses the same binary as the primary runner; reviews are not independent",
        )
    elif runner["reviewer"] not in PurePath(runner["reviewer_binary"]).name:
        warnings.add(
            "runner.reviewer_binary",
            f"{runner['reviewer_binary']!r} does not look like the {runner['reviewer']} CLI "
            "selected by runner.reviewer",
        )
    return warnings.items()


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    validators: dict[str, Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]]] = {
        "meta": _validate_meta,
        "runner": _validate_runner,
        "timeouts": _validate_timeouts,
        "recovery": _validate_recovery,
        "build": _validate_build,
        "review": _validate_review,
        "approval": _validate_approval,
        "integration": _validate_integration,
        "paths": _validate_paths,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(payload, set(validators), "", issues)
    _require_keys(payload, set(validators), "", issues)

    out: dict[str, Any] = {}
    for key in sorted(validators):
        raw = payload.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is None:
            continue
        out[key] = validators[key](section, key, issues)
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_runner(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    required = {"primary_binary", "reviewer", "reviewer_binary"}
    _reject_unknown_keys(payload, required | {"model", "reviewer_model"}, path, issues)
    _require_keys(payload, required, path, issues)
    out: dict[str, Any] = {}
    if "reviewer" in payload:
        parsed_reviewer = _as_enum(
            payload["reviewer"], _join(path, "reviewer"), issues, allowed_values=REVIEWER_RUNNERS
        )
        if parsed_reviewer is not None:
            out["reviewer"] = parsed_reviewer
    for key in ("primary_binary", "reviewer_binary", "model", "reviewer_model"):
        if key in payload:
            parsed = _as_str(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_timeouts(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"idle_seconds", "total_seconds", "tick_seconds"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            parsed = _as_positive_float(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_recovery(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"strategy", "max_escalations"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "strategy" in payload:
        parsed_strategy = _as_enum(
            payload["strategy"],
            _join(path, "strategy"),
            issues,
            allowed_values=RECOVERY_STRATEGIES,
        )
        if parsed_strategy is not None:
            out["strategy"] = parsed_strategy
    if "max_escalations" in payload:
        parsed_max = _as_int(
            payload["max_escalations"], _join(path, "max_escalations"), issues, minimum=0
        )
        if parsed_max is not None:
            out["max_escalations"] = parsed_max
    return out


def _validate_build(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"max_parallel", "retry_failed_once"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "max_parallel" in payload:
        parsed = _as_int(payload["max_parallel"], _join(path, "max_parallel"), issues, minimum=1)
        if parsed is not None:
            out["max_parallel"] = parsed
    if "retry_failed_once" in payload:
        parsed_retry = _as_bool(
            payload["retry_failed_once"], _join(path, "retry_failed_once"), issues
        )
        if parsed_retry is not None:
            out["retry_failed_once"] = parsed_retry
    return out


def _validate_review(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"max_concurrent_reviewers", "channel_capacity", "domains", "rotate_domains"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in ("max_concurrent_reviewers", "channel_capacity"):
        if key in payload:
            parsed = _as_int(payload[key], _join(path, key), issues, minimum=1)
            if parsed is not None:
                out[key] = parsed
    if "rotate_domains" in payload:
        parsed_rotate = _as_bool(payload["rotate_domains"], _join(path, "rotate_domains"), issues)
        if parsed_rotate is not None:
            out["rotate_domains"] = parsed_rotate
    if "domains" in payload:
        domains_path = _join(path, "domains")
        raw = payload["domains"]
        if not isinstance(raw, list):
            issues.add(domains_path, f"expected array, got {type(raw).__name__}")
        else:
            parsed_domains: list[str] = []
            for index, item in enumerate(raw):
                parsed_domain = _as_enum(
                    item,
                    f"{domains_path}[{index}]",
                    issues,
                    allowed_values=REVIEW_DOMAINS,
                )
                if parsed_domain is None:
                    continue
                if parsed_domain in parsed_domains:
                    issues.add(f"{domains_path}[{index}]", f"duplicate domain {parsed_domain!r}")
                    continue
                parsed_domains.append(parsed_domain)
            out["domains"] = parsed_domains
    return out


def _validate_approval(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"poll_initial_seconds", "poll_max_seconds", "multiplier", "timeout_seconds"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in ("poll_initial_seconds", "poll_max_seconds", "timeout_seconds"):
        if key in payload:
            parsed = _as_positive_float(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    if "multiplier" in payload:
        parsed_multiplier = _as_float(
            payload["multiplier"], _join(path, "multiplier"), issues, minimum=1.0
        )
        if parsed_multiplier is not None:
            out["multiplier"] = parsed_multiplier
    return out


def _validate_integration(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"base_branch", "remote", "conflict_threshold"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in ("base_branch", "remote"):
        if key in payload:
            parsed = _as_str(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    if "conflict_threshold" in payload:
        parsed_threshold = _as_int(
            payload["conflict_threshold"], _join(path, "conflict_threshold"), issues, minimum=0
        )
        if parsed_threshold is not None:
            out["conflict_threshold"] = parsed_threshold
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"worktree_root", "log_dir"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            parsed = _as_path_text(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"log_level", "log_to_stdout"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "log_level" in payload:
        parsed_level = _as_enum(
            payload["log_level"], _join(path, "log_level"), issues, allowed_values=LOG_LEVELS
        )
        if parsed_level is not None:
            out["log_level"] = parsed_level
    if "log_to_stdout" in payload:
        parsed_stdout = _as_bool(payload["log_to_stdout"], _join(path, "log_to_stdout"), issues)
        if parsed_stdout is not None:
            out["log_to_stdout"] = parsed_stdout
    return out


def _validate_cross_fields(config: Mapping[str, Any], issues: _IssueCollector) -> None:
    timeouts = config["timeouts"]
    if timeouts["idle_seconds"] >= timeouts["total_seconds"]:
        issues.add(
            "timeouts.idle_seconds",
            "must be less than timeouts.total_seconds",
        )
    if timeouts["tick_seconds"] > timeouts["idle_seconds"]:
        issues.add("timeouts.tick_seconds", "must not exceed timeouts.idle_seconds")

    approval = config["approval"]
    if approval["poll_max_seconds"] < approval["poll_initial_seconds"]:
        issues.add(
            "approval.poll_max_seconds",
            "must be greater than or equal to approval.poll_initial_seconds",
        )


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_positive_float(value: object, path: str, issues: _IssueCollector) -> float | None:
    parsed = _as_float(value, path, issues)
    if parsed is None:
        return None
    if parsed <= 0:
        issues.add(path, "must be > 0")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_deep_copy_value(item) for item in value]
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "CruiseConfig",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "RECOVERY_STRATEGIES",
    "REVIEWER_RUNNERS",
    "REVIEW_DOMAINS",
    "assert_valid_config",
    "config_warnings",
    "default_config",
    "merge_config",
    "migration_guidance",
    "validate_config",
]
