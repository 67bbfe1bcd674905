"""
case-forge — identifiers

File: src/case_forge/domain/ids.py
Last updated: 2026-10-18

Purpose
- Run and event IDs (``run-<ulid>``, ``evt-<ulid>``), case IDs
  (``cs_<blueprint>_<epoch-ms>``) and case-file slugs.

Functional requirements
- Case IDs double as storage keys and mirror directory names, so only
  ``[A-Za-z0-9_-]`` is accepted.
- ULIDs sort by creation time: 48 bits of epoch milliseconds, 80 random bits.
"""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

RUN_ID_PREFIX: Final[str] = "run"
EVENT_ID_PREFIX: Final[str] = "evt"
CASE_ID_PREFIX: Final[str] = "cs"

_RANDOM_BYTES: Final[int] = 10
_CASE_ID_RE: Final[re.Pattern[str]] = re.compile(r"[A-Za-z0-9_\-]{3,128}")
_ULID_RE: Final[re.Pattern[str]] = re.compile(rf"[0-7][{CROCKFORD_ALPHABET}]{{25}}")
_SLUG_BREAK_RE: Final[re.Pattern[str]] = re.compile(r"[^a-z0-9]+")

RandomBytes = Callable[[int], bytes]


def generate_run_id(
    *, timestamp_ms: int | None = None, randbytes: RandomBytes | None = None
) -> str:
    return f"{RUN_ID_PREFIX}-{_ulid(timestamp_ms, randbytes)}"


def generate_event_id(
    *, timestamp_ms: int | None = None, randbytes: RandomBytes | None = None
) -> str:
    return f"{EVENT_ID_PREFIX}-{_ulid(timestamp_ms, randbytes)}"


def validate_run_id(value: str) -> None:
    _check_prefixed(value, RUN_ID_PREFIX)


def validate_event_id(value: str) -> None:
    _check_prefixed(value, EVENT_ID_PREFIX)


def default_case_id(blueprint_id: str, *, timestamp_ms: int | None = None) -> str:
    if not isinstance(blueprint_id, str) or not blueprint_id.strip():
        raise ValueError("blueprint_id must be a non-empty string")
    case_id = f"{CASE_ID_PREFIX}_{blueprint_id.strip()}_{_now_ms(timestamp_ms)}"
    validate_case_id(case_id)
    return case_id


def validate_case_id(case_id: str) -> None:
    if not isinstance(case_id, str) or _CASE_ID_RE.fullmatch(case_id) is None:
        raise ValueError(
            "case_id must be 3-128 characters of [A-Za-z0-9_-], "
            f"e.g. cs_<blueprint>_<epoch-ms> (got {case_id!r})"
        )


def slugify(value: str) -> str:
    """``"Q3 -- Board/Memo.md"`` becomes ``"q3_board_memo_md"``."""
    return _SLUG_BREAK_RE.sub("_", value.lower())


def slugify_file_id(file_name: str) -> str:
    slug = slugify(file_name)
    if not slug.strip("_"):
        raise ValueError(f"file name {file_name!r} has no alphanumeric characters")
    return slug


def _ulid(timestamp_ms: int | None, randbytes: RandomBytes | None) -> str:
    entropy = bytes((randbytes or secrets.token_bytes)(_RANDOM_BYTES))
    if len(entropy) != _RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BYTES} bytes")
    value = _now_ms(timestamp_ms) << 80 | int.from_bytes(entropy, "big")
    digits = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 32)
        digits.append(CROCKFORD_ALPHABET[digit])
    return "".join(reversed(digits))


def _now_ms(timestamp_ms: int | None) -> int:
    resolved = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if isinstance(resolved, bool) or not isinstance(resolved, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(resolved).__name__}")
    if not 0 <= resolved <= MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms must be within 0..{MAX_TIMESTAMP_MS}, got {resolved}")
    return resolved


def _check_prefixed(value: str, prefix: str) -> None:
    if not isinstance(value, str) or not value.startswith(f"{prefix}-"):
        raise ValueError(f"expected prefix '{prefix}-' in {value!r}")
    if _ULID_RE.fullmatch(value[len(prefix) + 1 :].upper()) is None:
        raise ValueError(f"{value!r} does not end in a 26-character ULID")


__all__ = [
    "CASE_ID_PREFIX",
    "CROCKFORD_ALPHABET",
    "EVENT_ID_PREFIX",
    "MAX_TIMESTAMP_MS",
    "RUN_ID_PREFIX",
    "ULID_LENGTH",
    "default_case_id",
    "generate_event_id",
    "generate_run_id",
    "slugify",
    "slugify_file_id",
    "validate_case_id",
    "validate_event_id",
    "validate_run_id",
]
