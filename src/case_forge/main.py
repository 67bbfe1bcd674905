"""
case-forge — process entrypoint

File: src/case_forge/main.py
Last updated: 2026-10-18

Purpose
- The ``case-forge`` console script: run the CLI and turn whatever escapes
  it into a fixed exit code.

Functional requirements
- Known failures print one line to stderr; anything else prints a traceback
  and exits 1.
- The exit code is decided by the first recognised error in the cause chain.
"""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    UNEXPECTED_ERROR = 1
    USAGE_ERROR = 2
    VALIDATION_FAILED = 3
    GENERATION_FAILED = 4
    PERSISTENCE_CONFLICT = 5


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    try:
        from case_forge.ui.cli import run_cli

        return _exit_status(run_cli(argv))
    except SystemExit as exc:
        return _exit_status(exc.code)
    except BaseException as exc:  # noqa: BLE001 - process boundary
        code = exit_code_for(exc)
        if code is ExitCode.UNEXPECTED_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            print(str(exc).strip() or type(exc).__name__, file=sys.stderr)
        return int(code)


def exit_code_for(exc: BaseException) -> ExitCode:
    """Exit code for ``exc``, looking through ``__cause__`` and ``__context__``."""
    for item in _chain(exc):
        for error_types, code in _exit_code_table():
            if isinstance(item, error_types):
                return code
    return ExitCode.UNEXPECTED_ERROR


def _exit_code_table() -> tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...]:
    # Imported lazily so ``--help`` stays cheap.
    from case_forge.config.loader import ConfigLoadError
    from case_forge.config.schema import ConfigValidationError
    from case_forge.domain.errors import (
        CaseValidationError,
        GenerationCallError,
        InvalidRequestError,
        PersistenceConflictError,
        RunDeadlineExceededError,
        StructuralParseError,
    )
    from case_forge.synthesis.providers.base import ProviderUnavailableError

    return (
        ((ConfigLoadError, ConfigValidationError, InvalidRequestError), ExitCode.USAGE_ERROR),
        ((StructuralParseError, CaseValidationError), ExitCode.VALIDATION_FAILED),
        (
            (GenerationCallError, RunDeadlineExceededError, ProviderUnavailableError),
            ExitCode.GENERATION_FAILED,
        ),
        ((PersistenceConflictError,), ExitCode.PERSISTENCE_CONFLICT),
        ((FileNotFoundError, NotADirectoryError, PermissionError), ExitCode.USAGE_ERROR),
    )


def _chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        implicit = None if current.__suppress_context__ else current.__context__
        current = current.__cause__ or implicit


def _exit_status(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in set(ExitCode):
        return raw
    if isinstance(raw, str) and raw.strip():
        print(raw.strip(), file=sys.stderr)
    return int(ExitCode.UNEXPECTED_ERROR)


__all__ = ["ExitCode", "cli_entrypoint", "exit_code_for"]
