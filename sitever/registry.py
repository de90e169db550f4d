"""Version registry: the metadata side of version management.

The registry maps version records to snapshots, active flags and parent
links.  :class:`VersionRegistry` is the contract the rest of the package
relies on; :class:`JsonVersionRegistry` keeps everything in one JSON document
on disk, rewritten atomically (temp file + ``os.replace``) after every change.
A SQLite implementation lives in :mod:`sitever.sqlite_registry`.
"""

from __future__ import annotations

import json
import os
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .errors import RegistryError, VersionAlreadyExists, VersionNotFound
from .logger import get_logger
from .models import SnapshotEntry, Version, VersionedFile, VersionInsert, utc_now

__all__ = [
    "VersionRegistry",
    "JsonVersionRegistry",
    "new_version_id",
]


def new_version_id() -> str:
    return f"version-{uuid.uuid4()}"


def _file_row(entry) -> Dict[str, Any]:
    return {
        "file_path": entry.file_path,
        "file_hash": entry.file_hash,
        "file_size": entry.file_size,
    }


def _check_unique_paths(entries, existing=()) -> None:
    seen = set(existing)
    for entry in entries:
        if entry.file_path in seen:
            raise RegistryError(f"Duplicate file row: {entry.file_path}")
        seen.add(entry.file_path)


class VersionRegistry(Protocol):
    """CRUD contract for version metadata.

    Methods
    -------
    get_versions(project_id) -> list[Version]
        All versions of a project, newest first.
    get_version_by_id(version_id) -> Version | None
    create_version(insert, files=()) -> Version
        Persist a new record together with its file rows in one write.
        If ``insert.is_active`` the other versions of the project are
        deactivated in the same write.  Either everything is stored or
        nothing is.
    set_active_version(version_id) -> Version | None
        Activate one version, deactivating all others of the same project.
    get_active_version(project_id) -> Version | None
    create_version_files(entries) -> None
    get_version_files(version_id) -> list[VersionedFile]
    """

    def get_versions(self, project_id: str) -> List[Version]:
        ...

    def get_version_by_id(self, version_id: str) -> Optional[Version]:
        ...

    def create_version(
        self, insert: VersionInsert, files: Sequence[SnapshotEntry] = ()
    ) -> Version:
        ...

    def set_active_version(self, version_id: str) -> Optional[Version]:
        ...

    def get_active_version(self, project_id: str) -> Optional[Version]:
        ...

    def create_version_files(self, entries: Sequence[VersionedFile]) -> None:
        ...

    def get_version_files(self, version_id: str) -> List[VersionedFile]:
        ...


class JsonVersionRegistry:
    """Registry persisted as a single JSON document.

    Layout::

        {
          "versions": [ {...Version...}, ... ],      # insertion order
          "files": { "<version id>": [ {...}, ... ] }
        }
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.logger = get_logger()
        self._data: Dict[str, Any] = {"versions": [], "files": {}}
        self._load()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_versions(self, project_id: str) -> List[Version]:
        indexed = [
            (idx, Version.from_dict(raw))
            for idx, raw in enumerate(self._data["versions"])
            if raw["project_id"] == project_id
        ]
        # Newest first; insertion order breaks timestamp ties
        indexed.sort(key=lambda item: (item[1].created_at, item[0]), reverse=True)
        return [v for _, v in indexed]

    def get_version_by_id(self, version_id: str) -> Optional[Version]:
        raw = self._find(version_id)
        return Version.from_dict(raw) if raw else None

    def get_active_version(self, project_id: str) -> Optional[Version]:
        for raw in self._data["versions"]:
            if raw["project_id"] == project_id and raw.get("is_active"):
                return Version.from_dict(raw)
        return None

    def get_version_files(self, version_id: str) -> List[VersionedFile]:
        return [
            VersionedFile(
                version_id=version_id,
                file_path=f["file_path"],
                file_hash=f["file_hash"],
                file_size=int(f.get("file_size", 0)),
            )
            for f in self._data["files"].get(version_id, [])
        ]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create_version(
        self, insert: VersionInsert, files: Sequence[SnapshotEntry] = ()
    ) -> Version:
        for raw in self._data["versions"]:
            if raw["project_id"] == insert.project_id and raw["version_number"] == insert.version_number:
                raise VersionAlreadyExists(
                    f"Version {insert.version_number} already registered for {insert.project_id}"
                )
        if insert.parent_version_id is not None and self._find(insert.parent_version_id) is None:
            raise VersionNotFound(f"Parent version not found: {insert.parent_version_id}")
        _check_unique_paths(files)

        version = Version(
            id=new_version_id(),
            project_id=insert.project_id,
            version_number=insert.version_number,
            snapshot_path=insert.snapshot_path,
            is_active=insert.is_active,
            parent_version_id=insert.parent_version_id,
            created_at=utc_now(),
            changelog=insert.changelog,
            quality_score=insert.quality_score,
            tokens_json=insert.tokens_json,
        )
        if version.is_active:
            self._deactivate_project(version.project_id)
        self._data["versions"].append(version.to_dict())
        if files:
            self._data["files"][version.id] = [_file_row(entry) for entry in files]
        self._save()
        return version

    def set_active_version(self, version_id: str) -> Optional[Version]:
        raw = self._find(version_id)
        if raw is None:
            return None
        self._deactivate_project(raw["project_id"])
        raw["is_active"] = True
        self._save()
        return Version.from_dict(raw)

    def create_version_files(self, entries: Sequence[VersionedFile]) -> None:
        if not entries:
            return
        # Check everything before touching memory
        for version_id in {entry.version_id for entry in entries}:
            if self._find(version_id) is None:
                raise VersionNotFound(f"Version not found: {version_id}")
            existing = {f["file_path"] for f in self._data["files"].get(version_id, [])}
            _check_unique_paths(
                [e for e in entries if e.version_id == version_id], existing=existing
            )

        for entry in entries:
            self._data["files"].setdefault(entry.version_id, []).append(_file_row(entry))
        self._save()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _find(self, version_id: str) -> Optional[Dict[str, Any]]:
        for raw in self._data["versions"]:
            if raw["id"] == version_id:
                return raw
        return None

    def _deactivate_project(self, project_id: str) -> None:
        for raw in self._data["versions"]:
            if raw["project_id"] == project_id:
                raw["is_active"] = False

    def _load(self):
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise RegistryError(f"Registry file {self.path} is not valid JSON: {e}") from e
        except OSError as e:
            raise RegistryError(f"Could not read registry {self.path}: {e}") from e
        data.setdefault("versions", [])
        data.setdefault("files", {})
        self._data = data

    def _save(self):
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as fp:
                json.dump(self._data, fp, indent=2)
                fp.flush()
                os.fsync(fp.fileno())
            tmp.replace(self.path)
        except OSError as e:
            self.logger.error(json.dumps({
                "event": "registry_write_failed",
                "path": str(self.path),
                "error": str(e),
            }))
            if tmp.exists():
                tmp.unlink()
            # Keep memory in step with disk
            self._data = {"versions": [], "files": {}}
            self._load()
            raise RegistryError(f"Could not write registry {self.path}: {e}") from e
