"""Stable constants shared across pipeline stages."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1
CASE_DOCUMENT_VERSION: Final[str] = "1.0"

# Default runtime paths (relative to the working directory unless overridden by config).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
MIRROR_DIR: Final[PurePosixPath] = PurePosixPath("content/sources")
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")

# Storage layout for assembled case documents.
CASE_STORAGE_ROOT: Final[str] = "cases/year1"

# Diagnostics.
RAW_PREVIEW_CHARS: Final[int] = 500
ERROR_CONTEXT_RADIUS: Final[int] = 150

DIFFICULTY_LEVELS: Final[tuple[str, ...]] = ("beginner", "intermediate", "advanced")
RUBRIC_LEVELS: Final[tuple[str, ...]] = ("Unsatisfactory", "Developing", "Proficient", "Exemplary")
POWER_LEVELS: Final[tuple[str, ...]] = ("low", "medium", "high")
TIME_KEYS: Final[tuple[str, ...]] = ("date", "period", "month", "quarter", "year")

__all__ = [
    "CASE_DOCUMENT_VERSION",
    "CASE_STORAGE_ROOT",
    "CONFIG_SCHEMA_VERSION",
    "DIFFICULTY_LEVELS",
    "ERROR_CONTEXT_RADIUS",
    "LOG_DIR",
    "MIRROR_DIR",
    "POWER_LEVELS",
    "RAW_PREVIEW_CHARS",
    "RUBRIC_LEVELS",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
    "TIME_KEYS",
]
