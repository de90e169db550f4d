import json
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from sitever.errors import RegistryError, VersionAlreadyExists, VersionNotFound  # noqa: E402
from sitever.models import SnapshotEntry, VersionedFile, VersionInsert  # noqa: E402
from sitever.registry import JsonVersionRegistry  # noqa: E402
from sitever.sqlite_registry import SqliteVersionRegistry  # noqa: E402


@pytest.fixture(params=["json", "sqlite"])
def make_registry(request, tmp_path):
    """Factory returning a registry bound to the same file on every call."""
    if request.param == "json":
        path = tmp_path / "registry.json"
        return lambda: JsonVersionRegistry(path)
    path = tmp_path / "registry.db"
    return lambda: SqliteVersionRegistry(path)


def _insert(number, project="site-a", active=False, parent=None):
    return VersionInsert(
        project_id=project,
        version_number=number,
        snapshot_path=f"/sites/{project}/versions/v{number}",
        is_active=active,
        parent_version_id=parent,
    )


def test_create_and_get(make_registry):
    reg = make_registry()
    v = reg.create_version(_insert("1.0"))

    assert v.id.startswith("version-")
    assert v.version_number == "1.0"
    assert v.is_active is False
    assert v.created_at.tzinfo is not None
    assert reg.get_version_by_id(v.id) == v
    assert reg.get_version_by_id("version-missing") is None


def test_versions_newest_first_and_scoped(make_registry):
    reg = make_registry()
    a = reg.create_version(_insert("1.0"))
    b = reg.create_version(_insert("1.1"))
    c = reg.create_version(_insert("2.0"))
    reg.create_version(_insert("1.0", project="site-b"))

    assert [v.id for v in reg.get_versions("site-a")] == [c.id, b.id, a.id]
    assert len(reg.get_versions("site-b")) == 1
    assert reg.get_versions("site-c") == []


def test_set_active_deactivates_others(make_registry):
    reg = make_registry()
    a = reg.create_version(_insert("1.0", active=True))
    b = reg.create_version(_insert("1.1"))
    other = reg.create_version(_insert("1.0", project="site-b", active=True))

    assert reg.get_active_version("site-a").id == a.id

    activated = reg.set_active_version(b.id)
    assert activated.id == b.id and activated.is_active

    active = [v for v in reg.get_versions("site-a") if v.is_active]
    assert [v.id for v in active] == [b.id]
    # Other projects are untouched
    assert reg.get_active_version("site-b").id == other.id
    assert reg.set_active_version("version-missing") is None


def test_create_active_version_deactivates_previous(make_registry):
    reg = make_registry()
    reg.create_version(_insert("1.0", active=True))
    b = reg.create_version(_insert("1.1", active=True))
    assert [v.id for v in reg.get_versions("site-a") if v.is_active] == [b.id]


def test_duplicate_number_rejected(make_registry):
    reg = make_registry()
    reg.create_version(_insert("1.0"))
    with pytest.raises(VersionAlreadyExists):
        reg.create_version(_insert("1.0"))


def test_version_files(make_registry):
    reg = make_registry()
    v = reg.create_version(_insert("1.0"))
    rows = [
        VersionedFile(v.id, "index.html", "a" * 64, 10),
        VersionedFile(v.id, "src/app.css", "b" * 64, 20),
    ]
    reg.create_version_files(rows)
    reg.create_version_files([])

    got = sorted(reg.get_version_files(v.id), key=lambda f: f.file_path)
    assert got == rows
    assert reg.get_version_files("version-missing") == []


def test_lineage_and_metadata_persist(make_registry):
    reg = make_registry()
    root = reg.create_version(_insert("1.0", active=True))
    child = reg.create_version(VersionInsert(
        project_id="site-a",
        version_number="1.1",
        snapshot_path="/x",
        parent_version_id=root.id,
        changelog="Rolled back to version 1.0",
        quality_score=0.93,
        tokens_json='{"colors": []}',
    ))
    reg.create_version_files([VersionedFile(child.id, "a.txt", "c" * 64, 3)])

    reopened = make_registry()
    again = reopened.get_version_by_id(child.id)
    assert again.parent_version_id == root.id
    assert again.changelog == "Rolled back to version 1.0"
    assert again.quality_score == pytest.approx(0.93)
    assert again.tokens_json == '{"colors": []}'
    assert reopened.get_active_version("site-a").id == root.id
    assert len(reopened.get_version_files(child.id)) == 1


def test_json_registry_is_plain_json(tmp_path):
    path = tmp_path / "registry.json"
    reg = JsonVersionRegistry(path)
    v = reg.create_version(_insert("1.0"))

    data = json.loads(path.read_text())
    assert data["versions"][0]["id"] == v.id
    assert not path.with_suffix(".json.tmp").exists()


def test_json_registry_rejects_corrupt_file(tmp_path):
    path = tmp_path / "registry.json"
    path.write_text("{not json")
    with pytest.raises(RegistryError):
        JsonVersionRegistry(path)


def test_json_registry_write_failure_surfaces(tmp_path, monkeypatch):
    path = tmp_path / "registry.json"
    reg = JsonVersionRegistry(path)
    reg.create_version(_insert("1.0"))

    def _fail(self, target):
        raise OSError("disk full")

    monkeypatch.setattr(Path, "replace", _fail)
    with pytest.raises(RegistryError):
        reg.create_version(_insert("1.1"))
    monkeypatch.undo()

    # Memory matches what is on disk
    assert [v.version_number for v in reg.get_versions("site-a")] == ["1.0"]


def test_version_and_file_rows_written_together(make_registry):
    reg = make_registry()
    entries = [
        SnapshotEntry("index.html", "a" * 64, 10),
        SnapshotEntry("src/app.css", "b" * 64, 20),
    ]
    v = reg.create_version(_insert("1.0"), files=entries)

    reopened = make_registry()
    got = sorted(reopened.get_version_files(v.id), key=lambda f: f.file_path)
    assert got == [e.bind(v.id) for e in entries]


def test_rejected_file_rows_leave_no_version(make_registry):
    reg = make_registry()
    entries = [
        SnapshotEntry("index.html", "a" * 64, 10),
        SnapshotEntry("index.html", "b" * 64, 11),
    ]
    with pytest.raises(RegistryError):
        reg.create_version(_insert("1.0"), files=entries)

    assert reg.get_versions("site-a") == []
    assert make_registry().get_versions("site-a") == []
    # The number is still free
    assert reg.create_version(_insert("1.0")).version_number == "1.0"


def test_unknown_parent_is_not_a_duplicate(make_registry):
    reg = make_registry()
    with pytest.raises(VersionNotFound):
        reg.create_version(_insert("1.0", parent="version-missing"))
    assert reg.get_versions("site-a") == []


def test_file_rows_for_unknown_version(make_registry):
    reg = make_registry()
    v = reg.create_version(_insert("1.0"))
    rows = [
        VersionedFile(v.id, "index.html", "a" * 64, 10),
        VersionedFile("version-missing", "ghost.js", "b" * 64, 1),
    ]
    with pytest.raises(VersionNotFound):
        reg.create_version_files(rows)

    assert reg.get_version_files(v.id) == []
    assert make_registry().get_version_files(v.id) == []
