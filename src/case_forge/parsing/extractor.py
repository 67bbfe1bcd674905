"""Locate the outermost balanced JSON structure inside free-form generator output.

Generator output routinely arrives wrapped in prose ("Here is your data:") or
Markdown code fences. ``extract_structure`` trims that wrapping and returns the
substring from the first plausible opening brace to its matching closer. The
scan tracks string-literal state with an escape flag so braces inside string
values never change the nesting depth. When the depth never returns to zero
the remainder is returned and ``truncated`` is set.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

_FENCE_LINE_RE: Final[re.Pattern[str]] = re.compile(r"^\s*`{3,}[^\n`]*$")
_CLOSERS: Final[dict[str, str]] = {"{": "}", "[": "]"}


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    text: str
    truncated: bool = False
    start: int | None = None

    @property
    def found(self) -> bool:
        return self.start is not None


def strip_code_fences(text: str) -> str:
    """Trim ``text`` and drop a leading fence line and a trailing fence line."""
    cleaned = text.strip()
    if not cleaned.startswith("```"):
        return cleaned
    lines = cleaned.split("\n")
    if lines and _FENCE_LINE_RE.match(lines[0]):
        lines = lines[1:]
    if lines and lines[-1].strip() == "```":
        lines = lines[:-1]
    return "\n".join(lines).strip()


def extract_structure(text: str, *, opener: str = "{") -> ExtractionResult:
    """Return the first balanced ``opener``-rooted structure found in ``text``."""
    if opener not in _CLOSERS:
        raise ValueError(f"opener must be one of {sorted(_CLOSERS)}, got {opener!r}")
    if not isinstance(text, str):
        raise ValueError(f"text must be a string, got {type(text).__name__}")

    cleaned = strip_code_fences(text)
    start = _find_start(cleaned, opener)
    if start is None:
        return ExtractionResult(text=cleaned)

    end = _find_matching_close(cleaned, start, opener, _CLOSERS[opener])
    if end is None:
        return ExtractionResult(text=cleaned[start:], truncated=True, start=start)
    return ExtractionResult(text=cleaned[start : end + 1], start=start)


def _find_start(text: str, opener: str) -> int | None:
    # Prefer the first opener outside any quoted preamble span; prose with an
    # unbalanced quote falls back to the first opener anywhere.
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if char == opener and not in_string:
            return index
    first = text.find(opener)
    return first if first >= 0 else None


def _find_matching_close(text: str, start: int, opener: str, closer: str) -> int | None:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return index
    return None


__all__ = ["ExtractionResult", "extract_structure", "strip_code_fences"]
