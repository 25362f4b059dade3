"""
Config package public API.

Loads ``cruise.toml`` plus ``CRUISE_`` environment overrides and reports
structured validation issues and warnings.
"""

from cruise_orchestrator.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    LoadedConfig,
    dump_effective_config,
    env_name_for_path,
    load_config,
    load_config_with_warnings,
    normalize_paths,
)
from cruise_orchestrator.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    CruiseConfig,
    assert_valid_config,
    config_warnings,
    default_config,
    merge_config,
    migration_guidance,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "CruiseConfig",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "LoadedConfig",
    "PATH_FIELDS",
    "assert_valid_config",
    "config_warnings",
    "default_config",
    "dump_effective_config",
    "env_name_for_path",
    "load_config",
    "load_config_with_warnings",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "validate_config",
]
