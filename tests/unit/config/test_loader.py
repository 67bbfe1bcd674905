"""Config precedence: CLI > env > profile > file > defaults."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from case_forge.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    env_overrides,
    load_config,
    provider_api_key,
)
from case_forge.config.schema import ConfigValidationError, default_config

if TYPE_CHECKING:
    from pathlib import Path


def _write_config(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)


def test_defaults_load_without_a_config_file() -> None:
    config = load_config(environ={})

    assert config["generation"]["max_document_attempts"] == 3
    assert config["validation"]["asset_mode"] == "warn"
    assert config["providers"]["fallback_order"] == ["openai", "anthropic"]
    assert config["validation"]["thresholds"]["deck_min_slides"] == 12


def test_file_env_and_cli_layers_apply_in_order(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "caseforge.toml",
        """
[generation]
max_document_attempts = 4
call_timeout_seconds = 60.0

[validation.thresholds]
table_min_rows = 9
""".strip(),
    )

    config = load_config(
        config_path,
        environ={
            "CASEFORGE_GENERATION_MAX_DOCUMENT_ATTEMPTS": "5",
            "CASEFORGE_GENERATION_CALL_TIMEOUT_SECONDS": "30",
            "CASEFORGE_PROVIDERS_FALLBACK_ORDER": "anthropic, openai",
        },
        cli_overrides={"generation.max_document_attempts": 7},
    )

    assert config["generation"]["max_document_attempts"] == 7
    assert config["generation"]["call_timeout_seconds"] == 30.0
    assert config["providers"]["fallback_order"] == ["anthropic", "openai"]
    assert config["validation"]["thresholds"]["table_min_rows"] == 9
    assert config["validation"]["thresholds"]["deck_min_slides"] == 12


def test_strict_profile_switches_asset_mode(tmp_path: Path) -> None:
    assert load_config(profile="strict", environ={})["validation"]["asset_mode"] == "strict"
    assert (
        load_config(environ={"CASEFORGE_PROFILE": "strict"})["validation"]["asset_mode"] == "strict"
    )


def test_unknown_profile_is_rejected() -> None:
    with pytest.raises(ConfigValidationError, match="nightly"):
        load_config(profile="nightly", environ={})


def test_explicit_missing_file_fails(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_invalid_toml_and_bad_env_values_fail(tmp_path: Path) -> None:
    broken = _write_config(tmp_path / "broken.toml", "[generation\n")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})
    with pytest.raises(ConfigLoadError, match="must be an integer"):
        load_config(environ={"CASEFORGE_GENERATION_MAX_DOCUMENT_ATTEMPTS": "many"})
    with pytest.raises(ConfigLoadError, match="must be a boolean"):
        load_config(environ={"CASEFORGE_GENERATION_TRACK_USAGE": "maybe"})


def test_embedded_api_keys_are_rejected(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "caseforge.toml",
        '[providers.openai]\napi_key = "sk-FAKE123456789012345"\n',
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, environ={})

    assert excinfo.value.issues[0].path == "providers.openai.api_key"
    assert "embedded secret" in excinfo.value.issues[0].message


def test_paths_resolve_relative_to_config_file(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "conf" / "caseforge.toml", '[paths]\nmirror_root = "../content"\n'
    )

    config = load_config(config_path, environ={})

    base = tmp_path.resolve()
    assert config["paths"]["mirror_root"] == (base / "content").as_posix()
    assert config["paths"]["state_db"] == (base / "conf" / "state" / "caseforge.sqlite").as_posix()


def test_missing_provider_credentials_fail_when_required() -> None:
    with pytest.raises(ConfigLoadError, match="OPENAI_API_KEY"):
        load_config(environ={"ANTHROPIC_API_KEY": "present"}, require_secret_env_values=True)

    config = load_config(
        environ={"OPENAI_API_KEY": "a", "ANTHROPIC_API_KEY": "b"}, require_secret_env_values=True
    )
    assert provider_api_key(config, "openai", {"OPENAI_API_KEY": "  sk-test  "}) == "sk-test"
    assert provider_api_key(config, "openai", {}) is None
    assert provider_api_key(config, "mistral", {"OPENAI_API_KEY": "x"}) is None


def test_dump_is_redacted_and_deterministic() -> None:
    config = load_config(environ={})

    first = dump_effective_config(config)
    second = dump_effective_config(load_config(environ={}))
    payload = json.loads(first)

    assert first == second
    assert payload["providers"]["openai"]["api_key_env"] == "<redacted>"
    assert payload["providers"]["openai"]["max_output_tokens"] == 16000
    assert payload["observability"]["redact_secrets"] is True


def test_env_overrides_cover_optional_fields_and_skip_meta() -> None:
    layer = env_overrides(
        default_config(),
        {
            "CASEFORGE_VALIDATION_RULES_FILE": " rules.yaml ",
            "CASEFORGE_PROVIDERS_ANTHROPIC_TIMEOUT_SECONDS": "45",
            "CASEFORGE_META_SCHEMA_VERSION": "2",
            "UNRELATED": "x",
        },
    )

    assert layer == {
        "providers": {"anthropic": {"timeout_seconds": 45.0}},
        "validation": {"rules_file": "rules.yaml"},
    }
