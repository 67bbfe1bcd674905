"""
case-forge — prompt template engine

File: src/case_forge/synthesis/prompt_templates.py
Last updated: 2026-10-18

Purpose
- Render the packaged ``*.j2`` generation prompts (outline, case, asset,
  repair) and serve the system prompts and authoring framework text kept in
  ``system.yaml``.

Functional requirements
- The same inputs always render the same prompt and hash.
- A template variable that is missing, unexpected or outside the allowed
  set fails the render.
- Template names are bare identifiers; nothing outside the root is loaded.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Collection, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound, meta

SYSTEM_PROMPTS_FILE: Final[str] = "system.yaml"

_NAME_RE: Final[re.Pattern[str]] = re.compile(r"[A-Za-z0-9_]+")
_VERSION_RE: Final[re.Pattern[str]] = re.compile(r"(?im)^\s*Last updated:\s*(.+?)\s*$")


class PromptTemplateError(RuntimeError):
    pass


class PromptTemplateNotFoundError(PromptTemplateError, FileNotFoundError):
    pass


class PromptTemplateVariableError(PromptTemplateError, ValueError):
    pass


@dataclass(frozen=True, slots=True)
class RenderedPrompt:
    """A rendered prompt; the hashes and version go into usage and event logs."""

    prompt: str
    prompt_hash: str
    template_name: str
    template_version: str
    template_hash: str


class PromptTemplateEngine:
    def __init__(self, *, template_root: Path | str | None = None) -> None:
        root = Path(template_root) if template_root is not None else default_template_root()
        root = root.resolve()
        if not root.is_dir():
            raise PromptTemplateNotFoundError(f"template root is not a directory: {root}")
        self.template_root = root
        self._environment = Environment(
            loader=FileSystemLoader(root, encoding="utf-8"),
            undefined=StrictUndefined,
            autoescape=False,
            newline_sequence="\n",
        )
        self._system_prompts: dict[str, str] | None = None

    def render(
        self,
        name: str,
        *,
        variables: Mapping[str, object],
        allowed_variables: Collection[str] | None = None,
    ) -> RenderedPrompt:
        """Render ``<name>.j2``; ``allowed_variables`` defaults to the keys of ``variables``."""
        template_name = _template_file(name)
        try:
            source, _, _ = self._environment.loader.get_source(  # type: ignore[union-attr]
                self._environment, template_name
            )
        except TemplateNotFound as exc:
            raise PromptTemplateNotFoundError(
                f"template not found: {template_name!r} under {self.template_root}"
            ) from exc
        source = _unix_newlines(source)
        used = meta.find_undeclared_variables(self._environment.parse(source))
        allowed = set(variables if allowed_variables is None else allowed_variables)
        _check_variables(used=used, provided=set(variables), allowed=allowed)

        values = {
            key: _unix_newlines(value) if isinstance(value, str) else value
            for key, value in variables.items()
        }
        prompt = _unix_newlines(self._environment.from_string(source).render(**values))
        version = _VERSION_RE.search(source)
        return RenderedPrompt(
            prompt=prompt,
            prompt_hash=_sha256(prompt),
            template_name=template_name,
            template_version=version.group(1) if version else "unversioned",
            template_hash=_sha256(source),
        )

    def system_prompt(self, key: str) -> str:
        if self._system_prompts is None:
            self._system_prompts = self._read_system_prompts()
        try:
            return self._system_prompts[key]
        except KeyError:
            known = ", ".join(sorted(self._system_prompts))
            raise PromptTemplateVariableError(
                f"unknown system prompt {key!r}; expected one of: {known}"
            ) from None

    def _read_system_prompts(self) -> dict[str, str]:
        path = self.template_root / SYSTEM_PROMPTS_FILE
        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise PromptTemplateNotFoundError(f"missing {path}") from exc
        except yaml.YAMLError as exc:
            raise PromptTemplateError(f"invalid YAML in {path}: {exc}") from exc
        if not isinstance(loaded, dict) or not all(
            isinstance(key, str) and isinstance(value, str) for key, value in loaded.items()
        ):
            raise PromptTemplateError(f"{path} must map prompt names to strings")
        return {key: _unix_newlines(value).strip() for key, value in loaded.items()}


def default_template_root() -> Path:
    return Path(__file__).resolve().parent / "templates"


def _template_file(name: str) -> str:
    stem = name.strip().removesuffix(".j2") if isinstance(name, str) else ""
    if _NAME_RE.fullmatch(stem) is None:
        raise ValueError(f"invalid template name: {name!r}")
    return f"{stem.lower()}.j2"


def _check_variables(*, used: set[str], provided: set[str], allowed: set[str]) -> None:
    problems = (
        ("template uses variables not allowed by whitelist", used - allowed),
        ("unexpected variables were provided", provided - allowed),
        ("missing required template variables", used - provided),
    )
    for label, names in problems:
        if names:
            raise PromptTemplateVariableError(f"{label}: {', '.join(sorted(names))}")


def _unix_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


__all__ = [
    "PromptTemplateEngine",
    "PromptTemplateError",
    "PromptTemplateNotFoundError",
    "PromptTemplateVariableError",
    "RenderedPrompt",
    "SYSTEM_PROMPTS_FILE",
    "default_template_root",
]
