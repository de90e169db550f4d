import os
import shutil
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from sitever.errors import (  # noqa: E402
    CopyFailed,
    SnapshotInUse,
    SourceEmpty,
    SourceNotFound,
    VersionAlreadyExists,
)
from sitever.hashing import hash_file  # noqa: E402
from sitever.models import VersionedFile  # noqa: E402
from sitever.snapshot import SnapshotStore, version_dirname  # noqa: E402


@pytest.fixture
def source(tmp_path):
    src = tmp_path / "generated"
    (src / "src" / "components").mkdir(parents=True)
    (src / "index.html").write_text("<h1>home</h1>")
    (src / "src" / "components" / "Hero.tsx").write_text("export const Hero = () => null;")
    (src / "src" / "app.css").write_bytes(b"body{margin:0}")
    return src


@pytest.fixture
def store(tmp_path):
    return SnapshotStore(tmp_path / "site")


def test_version_dirname():
    assert version_dirname("1.2") == "v1.2"
    assert version_dirname("10.0") == "v10.0"


def test_create_snapshot_copies_tree_and_digests(store, source):
    result = store.create_snapshot(source, "1.0")

    assert result.snapshot_path == store.versions_dir / "v1.0"
    assert result.file_count == 3
    paths = sorted(e.file_path for e in result.files)
    assert paths == ["index.html", "src/app.css", "src/components/Hero.tsx"]

    # Every recorded digest matches a re-hash of the copied file
    for entry in result.files:
        copied = result.snapshot_path / entry.file_path
        assert copied.read_bytes() == (source / entry.file_path).read_bytes()
        assert hash_file(copied) == entry.file_hash
        assert copied.stat().st_size == entry.file_size


def test_missing_source(store, tmp_path):
    with pytest.raises(SourceNotFound):
        store.create_snapshot(tmp_path / "nope", "1.0")


def test_empty_source_creates_nothing(store, tmp_path):
    empty = tmp_path / "empty"
    (empty / "only" / "dirs").mkdir(parents=True)

    with pytest.raises(SourceEmpty):
        store.create_snapshot(empty, "1.0")
    assert not store.snapshot_path("1.0").exists()


def test_version_numbers_are_write_once(store, source):
    store.create_snapshot(source, "1.0")
    (source / "index.html").write_text("changed")

    with pytest.raises(VersionAlreadyExists):
        store.create_snapshot(source, "1.0")
    # Original content untouched
    assert (store.snapshot_path("1.0") / "index.html").read_text() == "<h1>home</h1>"


def test_partial_copy_is_removed(store, source, monkeypatch):
    real_copy = shutil.copyfileobj
    calls = {"n": 0}

    def _flaky_copy(fsrc, fdst, *a, **kw):
        calls["n"] += 1
        if calls["n"] == 2:
            raise OSError(28, "No space left on device")
        return real_copy(fsrc, fdst, *a, **kw)

    monkeypatch.setattr("sitever.snapshot.shutil.copyfileobj", _flaky_copy)

    with pytest.raises(CopyFailed) as excinfo:
        store.create_snapshot(source, "1.0")

    assert isinstance(excinfo.value.__cause__, OSError)
    assert not store.snapshot_path("1.0").exists()


def test_verify_snapshot_detects_divergence(store, source):
    result = store.create_snapshot(source, "1.0")
    rows = [e.bind("version-x") for e in result.files]

    assert store.verify_snapshot("1.0", rows).ok

    snap = result.snapshot_path
    (snap / "index.html").write_text("tampered")
    (snap / "src" / "app.css").unlink()
    (snap / "extra.txt").write_text("stray")

    report = store.verify_snapshot("1.0", rows)
    assert not report.ok
    assert report.corrupted == ["index.html"]
    assert report.missing == ["src/app.css"]
    assert report.unexpected == ["extra.txt"]


def test_verify_flags_rows_without_files(store, source):
    result = store.create_snapshot(source, "1.0")
    rows = [e.bind("version-x") for e in result.files]
    rows.append(VersionedFile("version-x", "ghost.js", "0" * 64, 0))
    assert store.verify_snapshot("1.0", rows).missing == ["ghost.js"]


def test_orphans(store, source):
    store.create_snapshot(source, "1.0")
    store.create_snapshot(source, "1.1")
    (store.versions_dir / "not-a-version").mkdir()

    assert store.list_snapshot_dirs() == ["1.0", "1.1"]
    assert store.find_orphans(["1.0"]) == ["1.1"]

    with pytest.raises(SnapshotInUse):
        store.remove_orphan("1.1", active_target=store.snapshot_path("1.1"))

    store.remove_orphan("1.1")
    assert store.find_orphans(["1.0"]) == []


def _deny_scandir(monkeypatch, blocked: str):
    real_scandir = os.scandir

    def _scandir(path="."):
        if str(path).endswith(blocked):
            raise PermissionError(13, "Permission denied", str(path))
        return real_scandir(path)

    monkeypatch.setattr("sitever.snapshot.os.scandir", _scandir)


def test_unreadable_source_subdirectory_fails(store, source, monkeypatch):
    _deny_scandir(monkeypatch, "components")

    with pytest.raises(CopyFailed) as excinfo:
        store.create_snapshot(source, "1.0")

    assert isinstance(excinfo.value.__cause__, PermissionError)
    assert not store.snapshot_path("1.0").exists()


def test_verify_unreadable_snapshot_raises(store, source, monkeypatch):
    result = store.create_snapshot(source, "1.0")
    rows = [e.bind("version-x") for e in result.files]

    _deny_scandir(monkeypatch, "components")
    with pytest.raises(PermissionError):
        store.verify_snapshot("1.0", rows)
