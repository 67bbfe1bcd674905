"""Configuration loading, validation and redaction."""

from case_forge.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    effective_config,
    env_overrides,
    load_config,
    normalize_paths,
    provider_api_key,
)
from case_forge.config.schema import (
    DEFAULT_CONFIG,
    CaseForgeConfig,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    thresholds_from_config,
    validate_config,
)

__all__ = [
    "CaseForgeConfig",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "effective_config",
    "env_overrides",
    "load_config",
    "merge_config",
    "normalize_paths",
    "provider_api_key",
    "redact_config",
    "thresholds_from_config",
    "validate_config",
]
