from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from case_forge.persistence.mirror import LocalMirrorStore, MirrorStore, case_storage_path

if TYPE_CHECKING:
    from pathlib import Path


@pytest.mark.unit
def test_write_places_file_under_case_directory(tmp_path: Path) -> None:
    mirror = LocalMirrorStore(tmp_path / "sources")

    path = mirror.write("cs_bp_1_1700000000000", "board_memo", "md", "# Memo\n")

    assert path == tmp_path / "sources" / "cs_bp_1_1700000000000" / "board_memo.md"
    assert path.read_text(encoding="utf-8") == "# Memo\n"
    assert isinstance(mirror, MirrorStore)


@pytest.mark.unit
def test_write_replaces_existing_content_without_temp_leftovers(tmp_path: Path) -> None:
    mirror = LocalMirrorStore(tmp_path)

    mirror.write("cs_case_1", "data", ".csv", "a,b\n")
    path = mirror.write("cs_case_1", "data", ".csv", "c,d\n")

    assert path.read_text(encoding="utf-8") == "c,d\n"
    assert sorted(item.name for item in path.parent.iterdir()) == ["data.csv"]


@pytest.mark.unit
@pytest.mark.parametrize(
    ("case_id", "file_base"),
    [("../escape", "memo"), ("cs_case_1", "../memo"), ("cs_case_1", ""), ("cs_case_1", ".hidden")],
)
def test_rejects_unsafe_names(tmp_path: Path, case_id: str, file_base: str) -> None:
    with pytest.raises(ValueError):
        LocalMirrorStore(tmp_path).path_for(case_id, file_base, "md")


@pytest.mark.unit
def test_case_storage_path_slugifies_competency() -> None:
    assert (
        case_storage_path("arena_ops", "Strategic Thinking", "cs_bp_1_1")
        == "cases/year1/arena_ops/strategic_thinking/cs_bp_1_1.json"
    )
