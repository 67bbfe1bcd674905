"""Best-effort syntactic repairs for generator JSON that failed strict parsing.

``repair_json_text`` applies the same fixed sequence of rewrites on every call:

1. re-extract the outermost structure (drops preamble and fences),
2. remove trailing commas before ``}`` or ``]``,
3. strip ``//`` and ``/* */`` comments,
4. rewrite ``'word':`` keys as ``"word":``,
5. escape interior quotes that do not terminate their string.

No step raises; a step that cannot apply leaves the text unchanged. The
result is more likely to parse, with no guarantee that it does.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any, Final

import structlog

from case_forge.parsing.extractor import extract_structure

_SINGLE_QUOTED_KEY_RE: Final[re.Pattern[str]] = re.compile(r"'([A-Za-z0-9_\-]+)'(\s*):")
_STRUCTURAL_DELIMITERS: Final[frozenset[str]] = frozenset(":,}]")

RepairStep = Callable[[str], str]


@dataclass(frozen=True, slots=True)
class RepairReport:
    text: str
    applied: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.applied)


def reextract(text: str, *, opener: str = "{") -> str:
    return extract_structure(text, opener=opener).text


def remove_trailing_commas(text: str) -> str:
    """Drop commas that are followed only by whitespace and a closing delimiter."""
    out: list[str] = []
    pending_comma: int | None = None
    for char, in_string in _walk(text):
        if in_string:
            pending_comma = None
            out.append(char)
            continue
        if char == ",":
            pending_comma = len(out)
            out.append(char)
            continue
        if char in "}]" and pending_comma is not None:
            del out[pending_comma]
            pending_comma = None
            out.append(char)
            continue
        if not char.isspace():
            pending_comma = None
        out.append(char)
    return "".join(out)


def strip_comments(text: str) -> str:
    """Remove line and block comments that appear outside string literals."""
    out: list[str] = []
    index = 0
    length = len(text)
    in_string = False
    escaped = False
    while index < length:
        char = text[index]
        if in_string:
            out.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            index += 1
            continue
        if char == '"':
            in_string = True
            out.append(char)
            index += 1
            continue
        if text.startswith("//", index):
            newline = text.find("\n", index)
            index = length if newline < 0 else newline
            continue
        if text.startswith("/*", index):
            close = text.find("*/", index + 2)
            index = length if close < 0 else close + 2
            continue
        out.append(char)
        index += 1
    return "".join(out)


def normalize_single_quoted_keys(text: str) -> str:
    return _SINGLE_QUOTED_KEY_RE.sub(r'"\1"\2:', text)


def escape_interior_quotes(text: str) -> str:
    """Escape quotes inside strings that are not followed by a structural delimiter.

    A quote met while already inside a string terminates it only when the next
    non-whitespace character is ``:``, ``,``, ``}``, ``]`` or the end of the
    text. Any other quote is treated as an unescaped interior quote. This
    heuristic misfires on prose that legitimately places a delimiter right
    after a quotation mark, so it stays a separate unit that can be measured on
    its own.
    """
    out: list[str] = []
    in_string = False
    escaped = False
    length = len(text)
    for index, char in enumerate(text):
        if not in_string:
            if char == '"':
                in_string = True
            out.append(char)
            continue
        if escaped:
            escaped = False
            out.append(char)
            continue
        if char == "\\":
            escaped = True
            out.append(char)
            continue
        if char != '"':
            out.append(char)
            continue
        lookahead = index + 1
        while lookahead < length and text[lookahead].isspace():
            lookahead += 1
        if lookahead >= length or text[lookahead] in _STRUCTURAL_DELIMITERS:
            in_string = False
            out.append(char)
        else:
            out.append('\\"')
    return "".join(out)


REPAIR_STEP_NAMES: Final[tuple[str, ...]] = (
    "reextract",
    "trailing_commas",
    "comments",
    "single_quoted_keys",
    "interior_quotes",
)


def repair_steps(opener: str = "{") -> tuple[tuple[str, RepairStep], ...]:
    """Return the fixed repair sequence; ``opener`` selects the extracted root."""
    return (
        ("reextract", lambda text: reextract(text, opener=opener)),
        ("trailing_commas", remove_trailing_commas),
        ("comments", strip_comments),
        ("single_quoted_keys", normalize_single_quoted_keys),
        ("interior_quotes", escape_interior_quotes),
    )


def repair_with_report(
    text: str, *, opener: str = "{", logger: Any | None = None
) -> RepairReport:
    """Run every repair step in order and report which ones changed the text."""
    log = logger if logger is not None else structlog.get_logger(__name__)
    if not isinstance(text, str):
        return RepairReport(text="")
    current = text
    applied: list[str] = []
    for name, step in repair_steps(opener):
        try:
            rewritten = step(current)
        except (ValueError, IndexError, re.error) as exc:
            log.debug("json_repair_step_skipped", step=name, error=str(exc))
            continue
        if rewritten != current:
            applied.append(name)
            current = rewritten
    return RepairReport(text=current, applied=tuple(applied))


def repair_json_text(text: str, *, opener: str = "{") -> str:
    return repair_with_report(text, opener=opener).text


def _walk(text: str) -> Iterator[tuple[str, bool]]:
    """Yield ``(char, inside_string)`` pairs; quote characters count as inside."""
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            yield char, True
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
            yield char, True
            continue
        yield char, False


__all__ = [
    "REPAIR_STEP_NAMES",
    "RepairReport",
    "escape_interior_quotes",
    "normalize_single_quoted_keys",
    "reextract",
    "remove_trailing_commas",
    "repair_json_text",
    "repair_steps",
    "repair_with_report",
    "strip_comments",
]
