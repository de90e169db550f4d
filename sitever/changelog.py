"""File-level changelog between two versions.

Compares the recorded digests of two versions' files and produces
human-readable entries ("Added 2 files", ...) plus a one-line summary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from .models import Version, VersionedFile


@dataclass
class FileDiff:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)

    @property
    def unchanged(self) -> bool:
        return not (self.added or self.removed or self.modified)


@dataclass
class Changelog:
    from_version: str
    to_version: str
    diff: FileDiff
    entries: List[str]
    summary: str


def compare_files(old: Sequence[VersionedFile], new: Sequence[VersionedFile]) -> FileDiff:
    old_map: Dict[str, str] = {f.file_path: f.file_hash for f in old}
    new_map: Dict[str, str] = {f.file_path: f.file_hash for f in new}

    diff = FileDiff()
    for path in sorted(new_map):
        if path not in old_map:
            diff.added.append(path)
        elif old_map[path] != new_map[path]:
            diff.modified.append(path)
    diff.removed.extend(sorted(p for p in old_map if p not in new_map))
    return diff


def _plural(count: int) -> str:
    return f"{count} file{'s' if count != 1 else ''}"


def build_changelog(
    from_version: Version,
    to_version: Version,
    old_files: Sequence[VersionedFile],
    new_files: Sequence[VersionedFile],
) -> Changelog:
    diff = compare_files(old_files, new_files)
    entries = []
    if diff.added:
        entries.append(f"Added {_plural(len(diff.added))}")
    if diff.removed:
        entries.append(f"Removed {_plural(len(diff.removed))}")
    if diff.modified:
        entries.append(f"Modified {_plural(len(diff.modified))}")

    if not entries:
        summary = "No changes detected"
    else:
        summary = f"File changes in version {to_version.version_number}"

    return Changelog(
        from_version=from_version.version_number,
        to_version=to_version.version_number,
        diff=diff,
        entries=entries,
        summary=summary,
    )
