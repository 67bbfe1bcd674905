"""
case-forge — config loader

File: src/case_forge/config/loader.py
Last updated: 2026-10-18

Purpose
- Build the effective config from layers, lowest first: built-in defaults,
  ``caseforge.toml``, the selected profile, ``CASEFORGE_*`` environment
  variables, then CLI overrides.

Functional requirements
- Every layer is validated against the schema before it is used.
- An environment variable is coerced to the type of the default it replaces;
  lists are comma-separated.
- Relative paths resolve against the config file's directory.
- Provider credentials are read from the env var each provider section names,
  never from the file.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from case_forge.config.schema import (
    PATH_FIELDS,
    PROVIDER_NAMES,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "caseforge.toml"
ENV_PREFIX: Final[str] = "CASEFORGE_"

_TRUE_WORDS: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})
# Sections that never take environment overrides.
_ENV_EXCLUDED: Final[frozenset[str]] = frozenset({"meta", "profiles"})


class ConfigLoadError(ValueError):
    """The config file could not be read or an override could not be coerced."""


def _parse_bool(raw: str) -> bool:
    word = raw.lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise ValueError(raw)


def _parse_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


_Parser = tuple[Callable[[str], object], str]

_PARSERS: Final[dict[type, _Parser]] = {
    bool: (_parse_bool, "a boolean (true/false/1/0/yes/no/on/off)"),
    int: (int, "an integer"),
    float: (float, "a number"),
    str: (str, "a string"),
    list: (_parse_list, "a comma-separated list"),
}

# Optional keys absent from the defaults that still accept env overrides.
_OPTIONAL_ENV_FIELDS: Final[tuple[tuple[tuple[str, ...], type], ...]] = (
    (("paths", "templates_dir"), str),
    (("validation", "rules_file"), str),
    *((("providers", name, "timeout_seconds"), float) for name in PROVIDER_NAMES),
)


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
    require_secret_env_values: bool = False,
) -> dict[str, Any]:
    """Return the validated effective config.

    Without ``config_path`` a ``caseforge.toml`` in the working directory is
    used when present; an explicit path that does not exist is an error. The
    profile comes from ``profile``, then ``cli_overrides["profile"]``, then
    ``CASEFORGE_PROFILE``.
    """
    env = dict(os.environ if environ is None else environ)
    cli = dict(cli_overrides or {})
    path = (
        Path.cwd() / DEFAULT_CONFIG_FILE
        if config_path is None
        else Path(config_path).expanduser()
    ).resolve()

    config = assert_valid_config(
        merge_config(default_config(), _read_toml(path, required=config_path is not None))
    )
    selected = _selected_profile(profile, cli, env)
    if selected is not None:
        config = apply_profile_overlay(config, selected)
    config = merge_config(config, env_overrides(config, env))
    config = merge_config(config, _cli_layer(cli))
    config = normalize_paths(assert_valid_config(config), base_dir=path.parent)

    if require_secret_env_values:
        _require_provider_credentials(config, env)
    return config


def env_overrides(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    """Nested overlay built from the ``CASEFORGE_*`` variables that are set."""
    layer: dict[str, Any] = {}
    for env_name, (field_path, kind) in sorted(_env_fields(config).items()):
        raw = environ.get(env_name)
        if raw is None:
            continue
        parse, expected = _PARSERS[kind]
        try:
            value = parse(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(
                f"{env_name} -> {'.'.join(field_path)} must be {expected}"
            ) from exc
        _assign(layer, field_path, value)
    return layer


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Copy of ``config`` with every path field absolute and POSIX-style."""
    normalized = merge_config({}, config)
    for field_path in PATH_FIELDS:
        raw = _lookup(normalized, field_path)
        if isinstance(raw, str):
            _assign(normalized, field_path, _absolute(raw, base_dir))
    return normalized


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    return redact_config(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Redacted config as stable, indented JSON."""
    return json.dumps(effective_config(config), sort_keys=True, indent=2, ensure_ascii=False)


def provider_api_key(
    config: Mapping[str, object],
    provider: str,
    environ: Mapping[str, str] | None = None,
) -> str | None:
    env_name = _lookup(config, ("providers", provider, "api_key_env"))
    if not isinstance(env_name, str):
        return None
    value = (os.environ if environ is None else environ).get(env_name, "").strip()
    return value or None


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _selected_profile(
    profile: str | None, cli: Mapping[str, object], environ: Mapping[str, str]
) -> str | None:
    if profile is not None:
        candidate: object = profile
    elif "profile" in cli:
        candidate = cli["profile"]
        if not isinstance(candidate, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
    else:
        candidate = environ.get(f"{ENV_PREFIX}PROFILE", "")
    return str(candidate).strip() or None


def _env_fields(config: Mapping[str, object]) -> dict[str, tuple[tuple[str, ...], type]]:
    fields: dict[str, tuple[tuple[str, ...], type]] = {}
    for field_path, value in _leaves(config):
        if field_path[0] in _ENV_EXCLUDED:
            continue
        kind = _kind_of(value)
        if kind is not None:
            fields[_env_name(field_path)] = (field_path, kind)
    for field_path, kind in _OPTIONAL_ENV_FIELDS:
        fields.setdefault(_env_name(field_path), (field_path, kind))
    return fields


def _leaves(
    payload: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(payload):
        value = payload[key]
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _kind_of(value: object) -> type | None:
    if isinstance(value, list):
        return list if all(isinstance(item, str) for item in value) else None
    return type(value) if type(value) in _PARSERS else None


def _env_name(field_path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in field_path)


def _cli_layer(cli: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key in sorted(cli):
        if key == "profile":
            continue
        field_path = tuple(part for part in key.split(".") if part)
        if not field_path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        value = cli[key]
        existing = _lookup(layer, field_path)
        if isinstance(value, Mapping) and isinstance(existing, Mapping):
            value = merge_config(existing, value)
        _assign(layer, field_path, value)
    return layer


def _assign(target: dict[str, Any], field_path: tuple[str, ...], value: object) -> None:
    node = target
    for part in field_path[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = node[part] = {}
        node = child
    node[field_path[-1]] = value


def _lookup(payload: Mapping[str, object], field_path: tuple[str, ...]) -> object | None:
    node: object = payload
    for part in field_path:
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


def _require_provider_credentials(
    config: Mapping[str, object], environ: Mapping[str, str]
) -> None:
    order = _lookup(config, ("providers", "fallback_order"))
    missing = []
    for provider in order if isinstance(order, list) else PROVIDER_NAMES:
        env_name = _lookup(config, ("providers", provider, "api_key_env"))
        if isinstance(env_name, str) and not environ.get(env_name, "").strip():
            missing.append(f"providers.{provider}.api_key_env -> {env_name}")
    if missing:
        raise ConfigLoadError(
            "missing required secret environment variable values: " + ", ".join(sorted(missing))
        )


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "effective_config",
    "env_overrides",
    "load_config",
    "normalize_paths",
    "provider_api_key",
]
