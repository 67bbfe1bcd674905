"""Filesystem mirror of generated asset content and case storage paths."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

from case_forge.constants import CASE_STORAGE_ROOT
from case_forge.domain.ids import slugify, validate_case_id


@runtime_checkable
class MirrorStore(Protocol):
    def write(self, case_id: str, file_base: str, extension: str, content: str) -> Path: ...


class LocalMirrorStore:
    """Writes ``{root}/{case_id}/{file_base}.{extension}`` atomically."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, case_id: str, file_base: str, extension: str) -> Path:
        validate_case_id(case_id)
        name = f"{file_base}.{extension.lstrip('.')}"
        if not file_base or Path(name).name != name or name.startswith("."):
            raise ValueError(f"invalid mirror file name: {name!r}")
        return self._root / case_id / name

    def write(self, case_id: str, file_base: str, extension: str, content: str) -> Path:
        target = self.path_for(case_id, file_base, extension)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return target


def case_storage_path(arena_id: str, competency_name: str, case_id: str) -> str:
    """Storage key of an assembled case document."""
    return f"{CASE_STORAGE_ROOT}/{arena_id}/{slugify(competency_name)}/{case_id}.json"


__all__ = ["LocalMirrorStore", "MirrorStore", "case_storage_path"]
