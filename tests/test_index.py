from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path, PurePosixPath

import pytest

from marketplace_core.errors import CorruptDocument
from marketplace_core.fs_json import write_json
from marketplace_core.index import IndexMaintainer
from marketplace_core.paths import Family, index_path, resolve

CREATED = datetime(2025, 7, 1, 9, 30, tzinfo=UTC)


def _write_project(data_root: Path, project_id: str) -> PurePosixPath:
    relative = resolve(Family.PROJECTS, project_id, CREATED)
    write_json(
        data_root / relative,
        {
            "projectId": project_id,
            "title": "Site",
            "totalBudget": 100,
            "freelancerId": 1,
            "commissionerId": 2,
            "createdAt": CREATED.isoformat(),
        },
    )
    return relative


def test_upsert_and_lookup(tmp_path: Path) -> None:
    index = IndexMaintainer(tmp_path)
    relative = PurePosixPath("projects/2025/07/01/P-1/project.json")

    assert index.lookup(Family.PROJECTS, "P-1") is None
    assert index.upsert(Family.PROJECTS, "P-1", relative, CREATED) is True
    assert index.lookup(Family.PROJECTS, "P-1") == relative
    entry = index.load(Family.PROJECTS)["P-1"]
    assert entry.created_at == CREATED


def test_identical_upsert_leaves_index_file_untouched(tmp_path: Path) -> None:
    index = IndexMaintainer(tmp_path)
    relative = PurePosixPath("projects/2025/07/01/P-1/project.json")
    index.upsert(Family.PROJECTS, "P-1", relative, CREATED)
    path = index_path(tmp_path, Family.PROJECTS)
    before = path.stat().st_mtime_ns, path.read_bytes()

    assert index.upsert(Family.PROJECTS, "P-1", relative, CREATED) is False
    assert (path.stat().st_mtime_ns, path.read_bytes()) == before


def test_remove(tmp_path: Path) -> None:
    index = IndexMaintainer(tmp_path, locking=False)
    index.upsert(Family.GIGS, "7", PurePosixPath("gigs/2025/July/01/7/gig.json"), CREATED)
    assert index.remove(Family.GIGS, "7") is True
    assert index.remove(Family.GIGS, "7") is False
    assert index.load(Family.GIGS) == {}


def test_rebuild_regenerates_from_tree(tmp_path: Path) -> None:
    first = _write_project(tmp_path, "P-1")
    second = _write_project(tmp_path, "P-2")
    index = IndexMaintainer(tmp_path)
    index.upsert(Family.PROJECTS, "P-ghost", PurePosixPath("projects/2020/01/01/P-ghost/project.json"), CREATED)

    assert index.rebuild(Family.PROJECTS) == 2
    entries = index.load(Family.PROJECTS)
    assert sorted(entries) == ["P-1", "P-2"]
    assert entries["P-1"].path == first.as_posix()
    assert entries["P-2"].path == second.as_posix()

    snapshot = index_path(tmp_path, Family.PROJECTS).read_bytes()
    assert index.rebuild(Family.PROJECTS) == 2
    assert index_path(tmp_path, Family.PROJECTS).read_bytes() == snapshot


def test_rebuild_skips_unreadable_documents(tmp_path: Path) -> None:
    _write_project(tmp_path, "P-1")
    broken = tmp_path / resolve(Family.PROJECTS, "P-2", CREATED)
    broken.parent.mkdir(parents=True)
    broken.write_text("{", encoding="utf-8")

    assert IndexMaintainer(tmp_path).rebuild(Family.PROJECTS) == 1


def test_corrupt_index_raises(tmp_path: Path) -> None:
    index_path(tmp_path, Family.PROJECTS).write_text("[]", encoding="utf-8")
    with pytest.raises(CorruptDocument):
        IndexMaintainer(tmp_path).lookup(Family.PROJECTS, "P-1")
