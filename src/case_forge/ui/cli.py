"""Command-line interface router for case-forge."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import structlog
import yaml

from case_forge.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
)
from case_forge.domain.errors import PipelineError
from case_forge.domain.ids import generate_run_id
from case_forge.domain.models import AssetType, CaseGenerationResult, Difficulty
from case_forge.observability.logging import setup_logging, shutdown_logging
from case_forge.orchestration.factory import generate_case, resolve_thresholds
from case_forge.parsing.structural_parser import parse_structure
from case_forge.persistence.state_db import StateDB, StateDBError
from case_forge.validation.content import validate_asset

DEFAULT_PARSE_ATTEMPTS: Final[int] = 3

# Request flags and the request keys they populate.
_REQUEST_FLAGS: Final[tuple[tuple[str, str], ...]] = (
    ("arena_id", "arena_id"),
    ("competency_name", "competency_name"),
    ("blueprint_id", "blueprint_id"),
    ("blueprint_title", "blueprint_title"),
    ("difficulty", "difficulty"),
    ("estimated_duration", "estimated_duration"),
    ("case_id", "case_id"),
    ("created_by", "created_by"),
)


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="case-forge",
        description=(
            "case-forge — generate, validate and persist business case studies.\n\n"
            "Common workflows:\n"
            "  case-forge generate --arena A --competency C   Generate one case\n"
            "  case-forge validate-asset --type MEMO memo.md  Check one asset\n"
            "  case-forge parse output.txt                    Recover JSON from model output\n"
            "  case-forge config --dump                       Show effective config\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./caseforge.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # generate ------------------------------------------------------------
    generate_parser = subparsers.add_parser(
        "generate",
        parents=[common],
        help="Generate one case with its assets and persist it.",
    )
    generate_parser.add_argument(
        "--request",
        dest="request_path",
        default=None,
        help="JSON or YAML file holding the generation request; flags override its fields.",
    )
    generate_parser.add_argument("--arena", dest="arena_id", default=None)
    generate_parser.add_argument("--competency", dest="competency_name", default=None)
    generate_parser.add_argument("--blueprint-id", dest="blueprint_id", default=None)
    generate_parser.add_argument("--blueprint-title", dest="blueprint_title", default=None)
    generate_parser.add_argument(
        "--difficulty",
        choices=[item.value for item in Difficulty],
        default=None,
    )
    generate_parser.add_argument(
        "--duration",
        dest="estimated_duration",
        type=int,
        default=None,
        help="Estimated duration in minutes.",
    )
    generate_parser.add_argument("--case-id", dest="case_id", default=None)
    generate_parser.add_argument("--created-by", dest="created_by", default=None)
    generate_parser.add_argument("--provider", default=None, help="Preferred provider.")
    generate_parser.add_argument("--model", default=None, help="Model for the preferred provider.")
    generate_parser.add_argument(
        "--no-track-usage",
        dest="track_usage",
        action="store_false",
        default=True,
        help="Do not record token usage for this run.",
    )
    generate_parser.add_argument(
        "--log-dir",
        default=None,
        help="Directory for the per-run JSONL log (overrides observability.log_dir).",
    )
    generate_parser.add_argument(
        "--log-stderr",
        action="store_true",
        default=False,
        help="Mirror structured logs to stderr.",
    )
    generate_parser.set_defaults(handler=_cmd_generate)

    # validate-asset ------------------------------------------------------
    validate_parser = subparsers.add_parser(
        "validate-asset",
        parents=[common],
        help="Validate one asset file against the content rules.",
    )
    validate_parser.add_argument(
        "--type",
        dest="asset_type",
        required=True,
        choices=[item.value for item in AssetType],
    )
    validate_parser.add_argument("path", help="Asset file to validate.")
    validate_parser.set_defaults(handler=_cmd_validate_asset)

    # parse ---------------------------------------------------------------
    parse_parser = subparsers.add_parser(
        "parse",
        parents=[common],
        help="Recover a JSON structure from raw model output.",
    )
    parse_parser.add_argument("path", help="File holding raw model output.")
    parse_parser.add_argument(
        "--max-attempts",
        type=int,
        default=DEFAULT_PARSE_ATTEMPTS,
        help=f"Parse attempts including repairs (default: {DEFAULT_PARSE_ATTEMPTS}).",
    )
    parse_parser.add_argument(
        "--array",
        action="store_true",
        default=False,
        help="Expect a top-level array instead of an object.",
    )
    parse_parser.set_defaults(handler=_cmd_parse)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show or check the effective configuration.",
    )
    config_mode = config_parser.add_mutually_exclusive_group()
    config_mode.add_argument(
        "--dump",
        action="store_true",
        default=False,
        help="Print the redacted effective config (default).",
    )
    config_mode.add_argument(
        "--check",
        action="store_true",
        default=False,
        help="Only validate the config and report the selected profile.",
    )
    config_parser.set_defaults(handler=_cmd_config)

    # migrate -------------------------------------------------------------
    migrate_parser = subparsers.add_parser(
        "migrate",
        parents=[common],
        help="Apply pending state DB migrations.",
    )
    migrate_parser.set_defaults(handler=_cmd_migrate)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_generate(args: argparse.Namespace) -> int:
    from case_forge.main import exit_code_for

    config = _load_effective_config(args)
    request = _build_request_payload(args)
    run_id = generate_run_id()
    observability = config.get("observability")
    try:
        handle = setup_logging(
            observability if isinstance(observability, Mapping) else None,
            run_id=run_id,
            log_dir=args.log_dir,
            log_to_stderr=bool(args.log_stderr),
        )
    except (OSError, ValueError) as exc:
        raise CLIError(f"cannot set up logging: {exc}", exit_code=2) from exc

    log = structlog.get_logger("case_forge.cli")
    try:
        try:
            result = asyncio.run(generate_case(request, config=config, logger=log, run_id=run_id))
        except ConfigLoadError as exc:
            raise CLIError(str(exc), exit_code=2) from exc
        except PipelineError as exc:
            _emit_json({"run_id": run_id, "ok": False, "error": exc.to_dict()})
            return int(exit_code_for(exc))
    finally:
        shutdown_logging(handle)

    summary = _result_summary(result, run_id=run_id)
    if args.verbose:
        summary["result"] = result.to_dict()
    _emit_json(summary)
    return 0


def _cmd_validate_asset(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    try:
        thresholds = resolve_thresholds(config)
    except ConfigLoadError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    content = _read_text(args.path)
    result = validate_asset(content, args.asset_type, thresholds=thresholds)
    payload: dict[str, object] = {
        "content_type": result.content_type,
        "valid": result.valid,
        "violations": list(result.violations),
    }
    if args.verbose:
        payload["content_length"] = len(result.content)
    _emit_json(payload)
    return 0 if result.valid else 3


def _cmd_parse(args: argparse.Namespace) -> int:
    if args.max_attempts < 1:
        raise CLIError("--max-attempts must be >= 1", exit_code=2)
    text = _read_text(args.path)
    outcome = parse_structure(
        text,
        max_attempts=args.max_attempts,
        opener="[" if args.array else "{",
    )
    payload: dict[str, object] = {
        "state": outcome.state.value,
        "ok": outcome.ok,
        "repaired": outcome.repaired,
        "attempts": len(outcome.attempts),
        "truncated": outcome.truncated,
    }
    if args.verbose:
        payload["transformations"] = [
            item.transformation for item in outcome.attempts if item.transformation is not None
        ]
    if outcome.ok:
        payload["value"] = outcome.value
        _emit_json(payload)
        return 0
    payload["error"] = outcome.error.to_dict() if outcome.error is not None else None
    _emit_json(payload)
    return 3


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    if args.check:
        _emit_json({"valid": True, "profile": args.profile})
        return 0
    print(dump_effective_config(config))
    return 0


def _cmd_migrate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    paths = config.get("paths")
    state_db_path = paths.get("state_db") if isinstance(paths, Mapping) else None
    if not isinstance(state_db_path, str) or not state_db_path:
        raise CLIError("paths.state_db is not configured", exit_code=2)
    db = StateDB(state_db_path)
    try:
        version = db.migrate()
    except StateDBError as exc:
        raise CLIError(f"migration failed: {exc}", exit_code=5) from exc
    _emit_json({"state_db": state_db_path, "schema_version": version})
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    cli_overrides: dict[str, object] = {}
    if getattr(args, "track_usage", True) is False:
        cli_overrides["generation.track_usage"] = False
    try:
        return load_config(
            getattr(args, "config_path", None),
            profile=getattr(args, "profile", None),
            cli_overrides=cli_overrides,
        )
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _build_request_payload(args: argparse.Namespace) -> dict[str, object]:
    payload: dict[str, object] = {}
    if args.request_path is not None:
        loaded = _load_request_file(args.request_path)
        payload.update(loaded)
    for attr, key in _REQUEST_FLAGS:
        value = getattr(args, attr, None)
        if value is not None:
            payload[key] = value

    options_raw = payload.get("options")
    options: dict[str, object] = dict(options_raw) if isinstance(options_raw, Mapping) else {}
    if args.provider is not None:
        options["provider"] = args.provider
    if args.model is not None:
        options["model"] = args.model
    if not args.track_usage:
        options["track_usage"] = False
    if options:
        payload["options"] = options

    missing = [key for key in ("arena_id", "competency_name") if not payload.get(key)]
    if missing:
        flags = ", ".join("--arena" if key == "arena_id" else "--competency" for key in missing)
        raise CLIError(f"missing required request fields: {flags}", exit_code=2)
    return payload


def _load_request_file(path: str) -> Mapping[str, object]:
    text = _read_text(path)
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise CLIError(
            f"request file {path!r} is not valid JSON or YAML: {exc}", exit_code=2
        ) from exc
    if not isinstance(loaded, Mapping):
        raise CLIError(f"request file {path!r} must contain a mapping", exit_code=2)
    return loaded


def _read_text(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"cannot read {path!r}: {exc}", exit_code=2) from exc


def _result_summary(result: CaseGenerationResult, *, run_id: str) -> dict[str, object]:
    return {
        "run_id": run_id,
        "ok": True,
        "case_id": result.case_id,
        "storage_path": result.storage_path,
        "repaired": result.repaired,
        "case_violations": list(result.case_violations),
        "assets": [item.to_dict() for item in result.assets],
        "asset_warnings": result.asset_warnings,
        "failed_assets": list(result.failed_assets),
        "usage": result.usage.to_dict(),
    }


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


__all__ = ["CLIError", "build_parser", "run_cli"]
