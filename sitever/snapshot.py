"""Snapshot store.

A snapshot is a plain copy of a candidate output tree placed under
``<project_root>/versions/v<major>.<minor>/``.  Snapshots are write-once:
a version number that already has a directory is never reused and a
snapshot directory is never modified after creation.

Creation is all-or-nothing at the directory level: if anything fails while
copying or hashing, the partially written directory is removed before the
error reaches the caller.
"""

from __future__ import annotations

import json
import os
import shutil
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from tqdm import tqdm

from .errors import (
    CopyFailed,
    MalformedVersion,
    SnapshotInUse,
    SourceEmpty,
    SourceNotFound,
    VersionAlreadyExists,
    VersionNotFound,
)
from .hashing import hash_file
from .logger import get_logger
from .models import SnapshotEntry, SnapshotResult, VerificationReport, VersionedFile
from .numbering import parse_version

VERSIONS_DIRNAME = "versions"


def version_dirname(version_number: str) -> str:
    major, minor = parse_version(version_number)
    return f"v{major}.{minor}"


def _raise(error: OSError) -> None:
    raise error


def _list_files(root: Path) -> List[Path]:
    """Return every regular file under *root*, relative, in a stable order.

    An unreadable subdirectory raises instead of being skipped.
    """
    found: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
        dirnames.sort()
        base = Path(dirpath)
        for name in sorted(filenames):
            full = base / name
            if full.is_file():
                found.append(full.relative_to(root))
    return found


def _fsync_dir(path: Path) -> None:
    if os.name != "posix":
        return
    fd = os.open(str(path), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class SnapshotStore:
    """Create, inspect and verify snapshot directories for one project."""

    def __init__(self, project_root: Path, show_progress: bool = False):
        self.project_root = Path(project_root).resolve()
        self.versions_dir = self.project_root / VERSIONS_DIRNAME
        self.show_progress = show_progress
        self.logger = get_logger()

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------
    def snapshot_path(self, version_number: str) -> Path:
        return self.versions_dir / version_dirname(version_number)

    def exists(self, version_number: str) -> bool:
        return self.snapshot_path(version_number).is_dir()

    def list_snapshot_dirs(self) -> List[str]:
        """Version numbers of every well-formed snapshot directory on disk."""
        if not self.versions_dir.is_dir():
            return []
        numbers = []
        for entry in self.versions_dir.iterdir():
            if not entry.is_dir() or not entry.name.startswith("v"):
                continue
            try:
                parsed = parse_version(entry.name[1:])
            except MalformedVersion:
                continue
            numbers.append(parsed)
        return [f"{major}.{minor}" for major, minor in sorted(numbers)]

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_snapshot(self, source_dir: Path, version_number: str) -> SnapshotResult:
        """Copy *source_dir* into a new snapshot named for *version_number*.

        Raises:
            SourceNotFound: *source_dir* does not exist or is not a directory.
            SourceEmpty: *source_dir* holds no regular files.
            VersionAlreadyExists: the snapshot directory is already present.
            CopyFailed: an OS-level failure while listing, copying or hashing.
        """
        source = Path(source_dir)
        dest = self.snapshot_path(version_number)

        if not source.is_dir():
            raise SourceNotFound(f"Source directory does not exist: {source}")

        try:
            files = _list_files(source)
        except OSError as e:
            raise CopyFailed(f"Could not read source tree {source}: {e}") from e
        if not files:
            raise SourceEmpty(f"Source directory is empty: {source}")

        if dest.exists() or dest.is_symlink():
            raise VersionAlreadyExists(f"Version {version_number} already exists at {dest}")

        self.versions_dir.mkdir(parents=True, exist_ok=True)
        try:
            dest.mkdir()
        except FileExistsError:
            raise VersionAlreadyExists(
                f"Version {version_number} already exists at {dest}"
            ) from None
        except OSError as e:
            raise CopyFailed(f"Could not create snapshot directory {dest}: {e}") from e

        entries: List[SnapshotEntry] = []
        try:
            for rel in tqdm(
                files,
                desc=f"Snapshot {dest.name}",
                unit="file",
                disable=not self.show_progress,
            ):
                target = dest / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                self._copy_file(source / rel, target)
                entries.append(SnapshotEntry(
                    file_path=rel.as_posix(),
                    file_hash=hash_file(target),
                    file_size=target.stat().st_size,
                ))
            for directory in sorted({(dest / rel).parent for rel in files}, reverse=True):
                _fsync_dir(directory)
            _fsync_dir(self.versions_dir)
        except OSError as e:
            self._discard(dest, reason=str(e))
            raise CopyFailed(f"Failed to snapshot {source} as {version_number}: {e}") from e

        self.logger.info(json.dumps({
            "event": "snapshot_created",
            "version": version_number,
            "path": str(dest),
            "files": len(entries),
        }))
        return SnapshotResult(snapshot_path=dest, files=entries)

    def discard(self, version_number: str) -> None:
        """Remove a snapshot that was never registered (failed cut)."""
        self._discard(self.snapshot_path(version_number), reason="unregistered")

    def _copy_file(self, src: Path, dst: Path) -> None:
        with src.open('rb') as fsrc, dst.open('xb') as fdst:
            shutil.copyfileobj(fsrc, fdst)
            fdst.flush()
            os.fsync(fdst.fileno())
        shutil.copystat(src, dst)

    def _discard(self, dest: Path, reason: str) -> None:
        try:
            shutil.rmtree(dest)
        except FileNotFoundError:
            return
        except OSError as cleanup_error:
            self.logger.error(json.dumps({
                "event": "snapshot_cleanup_error",
                "path": str(dest),
                "error": str(cleanup_error),
            }))
            return
        self.logger.warning(json.dumps({
            "event": "snapshot_cleanup",
            "path": str(dest),
            "reason": reason,
        }))

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------
    def verify_snapshot(
        self, version_number: str, expected: Iterable[VersionedFile]
    ) -> VerificationReport:
        """Compare recorded file rows against the files on disk.

        A snapshot that cannot be read raises :class:`OSError`; it is never
        reported as a partial listing.
        """
        root = self.snapshot_path(version_number)
        if not root.is_dir():
            raise VersionNotFound(f"Snapshot directory does not exist: {root}")

        report = VerificationReport(version_number=version_number)
        recorded = {f.file_path: f for f in expected}
        on_disk = {p.as_posix() for p in _list_files(root)}

        for rel_path, record in sorted(recorded.items()):
            if rel_path not in on_disk:
                report.missing.append(rel_path)
            elif hash_file(root / rel_path) != record.file_hash:
                report.corrupted.append(rel_path)
        report.unexpected.extend(sorted(on_disk - recorded.keys()))

        if not report.ok:
            self.logger.error(json.dumps({
                "event": "snapshot_corrupted",
                "version": version_number,
                "missing": report.missing,
                "unexpected": report.unexpected,
                "corrupted": report.corrupted,
            }))
        return report

    # ------------------------------------------------------------------
    # Garbage collection helpers
    # ------------------------------------------------------------------
    def find_orphans(self, known_numbers: Sequence[str]) -> List[str]:
        """Snapshot directories with no registry record (left by a crash)."""
        known = set(known_numbers)
        return [n for n in self.list_snapshot_dirs() if n not in known]

    def remove_orphan(self, version_number: str, active_target: Optional[Path] = None) -> None:
        path = self.snapshot_path(version_number)
        if not path.is_dir():
            raise VersionNotFound(f"Snapshot directory does not exist: {path}")
        if active_target is not None and path.resolve() == Path(active_target).resolve():
            raise SnapshotInUse(
                f"Refusing to remove {path}: it is the active snapshot"
            )
        shutil.rmtree(path)
        self.logger.info(json.dumps({
            "event": "orphan_removed",
            "version": version_number,
            "path": str(path),
        }))
