"""
case-forge — configuration schema and validation

File: src/case_forge/config/schema.py
Last updated: 2026-10-18

Purpose
- Built-in defaults for every config section and the field table that
  validates a merged config against them.

Functional requirements
- Each problem is reported as an issue carrying the dotted field path.
- Provider sections name an environment variable; a key that looks like an
  inline secret is rejected rather than treated as an unknown field.
- Profiles are partial overlays and may not touch ``meta`` or nest profiles.
- Threshold overrides must still form a consistent ``ValidationThresholds``.

Non-functional requirements
- Validation never mutates its input and returns plain dicts and lists.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final, Literal, NotRequired, TypedDict

from case_forge.constants import CONFIG_SCHEMA_VERSION
from case_forge.validation.thresholds import DEFAULT_THRESHOLDS, ValidationThresholds

PROVIDER_NAMES: Final[tuple[str, ...]] = ("anthropic", "openai")
ASSET_MODES: Final[tuple[str, ...]] = ("warn", "strict")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMATS: Final[tuple[str, ...]] = ("json", "text")
REDACTED: Final[str] = "<redacted>"

# Fields resolved against the config file's directory by the loader.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("paths", "mirror_root"),
    ("paths", "templates_dir"),
    ("validation", "rules_file"),
    ("observability", "log_dir"),
)

_ENV_VAR_NAME = re.compile(r"[A-Z_][A-Z0-9_]*")
_PROFILE_NAME = re.compile(r"[a-z][a-z0-9_-]*")
_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_WORD_SPLIT = re.compile(r"[^a-z0-9]+")

_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"apikey", "api", "auth", "credential", "key", "passwd", "password", "secret", "token"}
)
_SECRET_PHRASES: Final[tuple[str, ...]] = (
    "access_token",
    "api_key",
    "client_secret",
    "password",
    "private_key",
    "secret",
)
# Counters and switches that only look like secrets.
_NOT_SECRETS: Final[frozenset[str]] = frozenset({"max_output_tokens", "redact_secrets"})


class MetaConfig(TypedDict):
    schema_version: int


class ProviderSettings(TypedDict, total=False):
    model: str
    api_key_env: str
    max_output_tokens: int
    timeout_seconds: float


class ProvidersConfig(TypedDict):
    default: Literal["anthropic", "openai"]
    fallback_order: list[str]
    anthropic: ProviderSettings
    openai: ProviderSettings


class GenerationConfig(TypedDict):
    max_document_attempts: int
    backoff_base_seconds: float
    backoff_cap_seconds: float
    backoff_jitter_ratio: float
    call_timeout_seconds: float
    max_run_seconds: float
    provider_max_retries: int
    parse_max_attempts: int
    track_usage: bool


class ValidationConfig(TypedDict):
    asset_mode: Literal["warn", "strict"]
    thresholds: dict[str, int]
    rules_file: NotRequired[str]


class PathsConfig(TypedDict):
    state_db: str
    mirror_root: str
    templates_dir: NotRequired[str]


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_dir: str
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    providers: dict[str, object]
    generation: dict[str, object]
    validation: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class CaseForgeConfig(TypedDict):
    meta: MetaConfig
    providers: ProvidersConfig
    generation: GenerationConfig
    validation: ValidationConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[CaseForgeConfig] = {
    "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
    "providers": {
        "default": "openai",
        "fallback_order": ["openai", "anthropic"],
        "openai": {
            "model": "gpt-4o",
            "api_key_env": "OPENAI_API_KEY",
            "max_output_tokens": 16000,
        },
        "anthropic": {
            "model": "claude-3-5-sonnet-latest",
            "api_key_env": "ANTHROPIC_API_KEY",
            "max_output_tokens": 16000,
        },
    },
    "generation": {
        "max_document_attempts": 3,
        "backoff_base_seconds": 1.0,
        "backoff_cap_seconds": 8.0,
        "backoff_jitter_ratio": 0.1,
        "call_timeout_seconds": 120.0,
        "max_run_seconds": 1800.0,
        "provider_max_retries": 3,
        "parse_max_attempts": 3,
        "track_usage": True,
    },
    "validation": {
        "asset_mode": "warn",
        "thresholds": DEFAULT_THRESHOLDS.to_dict(),
    },
    "paths": {
        "state_db": "state/caseforge.sqlite",
        "mirror_root": "content/sources",
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": "logs/",
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {"validation": {"asset_mode": "strict"}},
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """One problem found in a config, addressed by dotted path."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """A config failed validation; ``issues`` lists every problem found."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {item.path}: {item.message}" for item in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


_FieldKind = Literal[
    "section", "text", "path", "env", "enum", "int", "float", "bool", "version",
    "provider_list", "thresholds",
]


@dataclass(frozen=True, slots=True)
class _Field:
    kind: _FieldKind
    required: bool = True
    minimum: float | None = None
    above: float | None = None
    maximum: float | None = None
    choices: tuple[str, ...] = ()
    fields: Mapping[str, _Field] = field(default_factory=dict)


_PROVIDER_FIELDS: Final[dict[str, _Field]] = {
    "model": _Field("text"),
    "api_key_env": _Field("env"),
    "max_output_tokens": _Field("int", required=False, minimum=1),
    "timeout_seconds": _Field("float", required=False, above=0.0),
}

_SCHEMA: Final[dict[str, _Field]] = {
    "meta": _Field("section", fields={"schema_version": _Field("version")}),
    "providers": _Field(
        "section",
        fields={
            "default": _Field("enum", choices=PROVIDER_NAMES),
            "fallback_order": _Field("provider_list"),
            **{name: _Field("section", fields=_PROVIDER_FIELDS) for name in PROVIDER_NAMES},
        },
    ),
    "generation": _Field(
        "section",
        fields={
            "max_document_attempts": _Field("int", minimum=1),
            "backoff_base_seconds": _Field("float", minimum=0.0),
            "backoff_cap_seconds": _Field("float", above=0.0),
            "backoff_jitter_ratio": _Field("float", minimum=0.0, maximum=1.0),
            "call_timeout_seconds": _Field("float", above=0.0),
            "max_run_seconds": _Field("float", above=0.0),
            "provider_max_retries": _Field("int", minimum=0),
            "parse_max_attempts": _Field("int", minimum=1),
            "track_usage": _Field("bool"),
        },
    ),
    "validation": _Field(
        "section",
        fields={
            "asset_mode": _Field("enum", choices=ASSET_MODES),
            "thresholds": _Field("thresholds"),
            "rules_file": _Field("path", required=False),
        },
    ),
    "paths": _Field(
        "section",
        fields={
            "state_db": _Field("path"),
            "mirror_root": _Field("path"),
            "templates_dir": _Field("path", required=False),
        },
    ),
    "observability": _Field(
        "section",
        fields={
            "log_level": _Field("enum", choices=LOG_LEVELS),
            "log_format": _Field("enum", choices=LOG_FORMATS),
            "log_dir": _Field("path"),
            "redact_secrets": _Field("bool"),
        },
    ),
}


class _Issues:
    __slots__ = ("found",)

    def __init__(self) -> None:
        self.found: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self.found.append(ConfigValidationIssue(path=path, message=message))


def default_config() -> CaseForgeConfig:
    """Fresh deep copy of the built-in defaults."""
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < CONFIG_SCHEMA_VERSION:
        return (
            f"schema version {found_version} is older than supported {CONFIG_SCHEMA_VERSION}; "
            "upgrade caseforge.toml to the current schema"
        )
    return (
        f"schema version {found_version} is newer than supported {CONFIG_SCHEMA_VERSION}; "
        "upgrade case-forge or pin the config to the supported schema"
    )


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is modified."""
    merged = _plain(base)
    _overlay_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    selected = (profile or "").strip()
    if not selected:
        return _plain(config)
    profiles = config.get("profiles")
    overlay = profiles.get(selected) if isinstance(profiles, Mapping) else None
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue("profiles", f"profile {selected!r} is not defined")]
        )
    return assert_valid_config(merge_config(config, overlay))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    issues = _Issues()
    root = _as_mapping(config, "<root>", issues)
    checked = _check_root(root, "", issues, partial=False) if root is not None else None
    if issues.found or checked is None:
        return ConfigValidationResult(config=None, issues=tuple(issues.found))
    return ConfigValidationResult(config=checked, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with secrets and env var references replaced by ``<redacted>``."""
    if not isinstance(config, Mapping):
        return {}
    return _redacted(config)


def thresholds_from_config(config: Mapping[str, object]) -> ValidationThresholds:
    validation = config.get("validation")
    overrides = validation.get("thresholds") if isinstance(validation, Mapping) else None
    if not isinstance(overrides, Mapping):
        return DEFAULT_THRESHOLDS
    return DEFAULT_THRESHOLDS.with_overrides(overrides)


def _check_root(
    payload: Mapping[str, object], path: str, issues: _Issues, *, partial: bool
) -> dict[str, Any]:
    out = _check_fields(payload, _SCHEMA, path, issues, partial=partial, extra={"profiles"})
    if "profiles" in payload:
        where = _join(path, "profiles")
        profiles = _as_mapping(payload["profiles"], where, issues)
        if profiles is not None:
            out["profiles"] = _check_profiles(profiles, where, issues)
    if not partial:
        _check_cross_fields(out, path, issues)
    return out


def _check_fields(
    payload: Mapping[str, object],
    schema: Mapping[str, _Field],
    path: str,
    issues: _Issues,
    *,
    partial: bool,
    extra: set[str] | None = None,
) -> dict[str, Any]:
    allowed = set(schema) | (extra or set())
    for key in sorted(set(payload) - allowed):
        if _is_secret_key(key):
            issues.add(
                _join(path, key),
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(_join(path, key), "unknown field")

    out: dict[str, Any] = {}
    for key, spec in schema.items():
        where = _join(path, key)
        if key not in payload:
            if spec.required and not partial:
                issues.add(where, "missing required field")
            continue
        value = _check_value(payload[key], spec, where, issues, partial=partial)
        if value is not None:
            out[key] = value
    return out


def _check_value(
    value: object, spec: _Field, path: str, issues: _Issues, *, partial: bool
) -> Any:
    kind = spec.kind
    if kind == "section":
        section = _as_mapping(value, path, issues)
        if section is None:
            return None
        return _check_fields(section, spec.fields, path, issues, partial=partial)
    if kind == "thresholds":
        return _check_thresholds(value, path, issues, partial=partial)
    if kind == "provider_list":
        return _check_provider_list(value, path, issues)
    if kind == "bool":
        if isinstance(value, bool):
            return value
        issues.add(path, f"expected boolean, got {type(value).__name__}")
        return None
    if kind in ("int", "version"):
        if isinstance(value, bool) or not isinstance(value, int):
            issues.add(path, f"expected integer, got {type(value).__name__}")
            return None
        if kind == "version":
            if value < 1:
                issues.add(path, "must be >= 1")
                return None
            if value != CONFIG_SCHEMA_VERSION:
                issues.add(path, migration_guidance(value))
            return value
        return value if _in_range(value, spec, path, issues) else None
    if kind == "float":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            issues.add(path, f"expected number, got {type(value).__name__}")
            return None
        number = float(value)
        if not math.isfinite(number):
            issues.add(path, "must be finite")
            return None
        return number if _in_range(number, spec, path, issues) else None
    return _check_text(value, spec, path, issues)


def _check_text(value: object, spec: _Field, path: str, issues: _Issues) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    text = value.strip()
    if not text:
        issues.add(path, "must not be empty")
        return None
    if spec.kind == "path" and "\x00" in text:
        issues.add(path, "must not contain NUL bytes")
        return None
    if spec.kind == "env" and not _ENV_VAR_NAME.fullmatch(text):
        issues.add(path, "must be an env var name (example: OPENAI_API_KEY)")
        return None
    if spec.kind == "enum" and text not in spec.choices:
        expected = ", ".join(sorted(spec.choices))
        issues.add(path, f"invalid value {text!r}; expected one of: {expected}")
        return None
    return text


def _in_range(value: float, spec: _Field, path: str, issues: _Issues) -> bool:
    if spec.minimum is not None and value < spec.minimum:
        issues.add(path, f"must be >= {spec.minimum}")
        return False
    if spec.above is not None and value <= spec.above:
        issues.add(path, f"must be > {spec.above}")
        return False
    if spec.maximum is not None and value > spec.maximum:
        issues.add(path, f"must be <= {spec.maximum}")
        return False
    return True


def _check_provider_list(value: object, path: str, issues: _Issues) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected list, got {type(value).__name__}")
        return None
    names = _Field("enum", choices=PROVIDER_NAMES)
    order: list[str] = []
    for index, item in enumerate(value):
        name = _check_text(item, names, f"{path}[{index}]", issues)
        if name is None:
            continue
        if name in order:
            issues.add(f"{path}[{index}]", f"duplicate provider {name!r}")
            continue
        order.append(name)
    return order


def _check_thresholds(
    value: object, path: str, issues: _Issues, *, partial: bool
) -> dict[str, int] | None:
    overrides = _as_mapping(value, path, issues)
    if overrides is None:
        return None
    limit = _Field("int", minimum=0)
    known = ValidationThresholds.field_names()
    checked = _check_fields(
        overrides, {name: limit for name in known}, path, issues, partial=True
    )
    if not partial and not issues.found:
        try:
            DEFAULT_THRESHOLDS.with_overrides(checked)
        except ValueError as exc:
            issues.add(path, str(exc))
    return dict(sorted(checked.items()))


def _check_profiles(
    payload: Mapping[str, object], path: str, issues: _Issues
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in sorted(payload):
        where = _join(path, name)
        if not _PROFILE_NAME.fullmatch(name):
            issues.add(where, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        overlay = _as_mapping(payload[name], where, issues)
        if overlay is None:
            continue
        for reserved in ("meta", "profiles"):
            if reserved in overlay:
                issues.add(_join(where, reserved), f"profiles cannot override {reserved}")
        kept = {key: item for key, item in overlay.items() if key not in ("meta", "profiles")}
        out[name] = _check_root(kept, where, issues, partial=True)
    return out


def _check_cross_fields(config: Mapping[str, Any], path: str, issues: _Issues) -> None:
    providers = config.get("providers") or {}
    default = providers.get("default")
    order = providers.get("fallback_order")
    if isinstance(default, str) and order and default not in order:
        issues.add(
            _join(path, "providers.fallback_order"),
            f"default provider {default!r} must appear in fallback_order",
        )
    generation = config.get("generation") or {}
    base = generation.get("backoff_base_seconds")
    cap = generation.get("backoff_cap_seconds")
    if isinstance(base, float) and isinstance(cap, float) and base > cap:
        issues.add(
            _join(path, "generation.backoff_base_seconds"), "must be <= backoff_cap_seconds"
        )


def _as_mapping(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    bad_keys = [key for key in value if not isinstance(key, str)]
    for key in bad_keys:
        issues.add(path, f"object key must be string, got {type(key).__name__}")
    return {key: item for key, item in value.items() if isinstance(key, str)}


def _is_secret_key(key: str, *, include_env_refs: bool = False) -> bool:
    spaced = _CAMEL_BOUNDARY.sub(r"\1_\2", key.strip()).lower()
    words = [word for word in _WORD_SPLIT.split(spaced) if word]
    if words and words[-1] == "env":
        return include_env_refs
    joined = "_".join(words)
    if joined in _NOT_SECRETS:
        return False
    return any(phrase in joined for phrase in _SECRET_PHRASES) or not _SECRET_WORDS.isdisjoint(
        words
    )


def _redacted(value: object) -> Any:
    if isinstance(value, Mapping):
        return {
            key: REDACTED if _is_secret_key(key, include_env_refs=True) else _redacted(value[key])
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redacted(item) for item in value]
    return value


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _plain(value: Mapping[str, object]) -> dict[str, Any]:
    keys = sorted(key for key in value if isinstance(key, str))
    return {key: _plain_value(value[key]) for key in keys}


def _plain_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return _plain(value)
    if isinstance(value, (list, tuple)):
        return [_plain_value(item) for item in value]
    return value


def _overlay_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(k for k in overlay if isinstance(k, str)):
        value = overlay[key]
        current = target.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            _overlay_into(current, value)
        else:
            target[key] = _plain_value(value)


__all__ = [
    "ASSET_MODES",
    "CaseForgeConfig",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_FORMATS",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "PROVIDER_NAMES",
    "ProfileOverlay",
    "REDACTED",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "thresholds_from_config",
    "validate_config",
]
