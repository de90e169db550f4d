"""Version manager: the public API for cutting, activating and rolling back.

Writes always happen in the same order:

1. the snapshot directory is fully written and fsynced,
2. the registry record (and its file rows) is written,
3. the registry active flag is moved, then the ``current`` pointer.

A crash between 1 and 2 leaves an orphan snapshot (see :meth:`orphans`).
A crash between the registry flag and the pointer switch is repaired by
:meth:`reconcile`, which treats the registry as the source of truth.

Callers must serialise mutating calls per project; nothing here locks.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .changelog import Changelog, build_changelog
from .config import Settings, build_registry
from .errors import (
    ConcurrentModification,
    SnapshotInUse,
    VersionError,
    VersionNotFound,
)
from .logger import get_logger
from .models import RollbackPreview, VerificationReport, Version, VersionedFile, VersionInsert
from .numbering import ChangeClass, next_version
from .plugin import PluginManager
from .pointer import ActivePointerManager, PointerStrategy, select_strategy
from .registry import VersionRegistry
from .snapshot import SnapshotStore

_UNSET = object()


class VersionManager:
    """Version history of one project."""

    def __init__(
        self,
        project_root: Path,
        project_id: str,
        registry: VersionRegistry,
        pointer_strategy: Optional[PointerStrategy] = None,
        plugin_manager: Optional[PluginManager] = None,
        show_progress: bool = False,
    ):
        self.project_root = Path(project_root).resolve()
        self.project_id = project_id
        self.registry = registry
        self.store = SnapshotStore(self.project_root, show_progress=show_progress)
        self.pointer = ActivePointerManager(self.project_root, pointer_strategy or select_strategy())
        self.plugin_manager = plugin_manager if plugin_manager is not None else PluginManager()
        self.logger = get_logger()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        project_id: str,
        plugin_manager: Optional[PluginManager] = None,
    ) -> "VersionManager":
        return cls(
            project_root=settings.project_root(project_id),
            project_id=project_id,
            registry=build_registry(settings),
            pointer_strategy=select_strategy(settings.pointer_strategy),
            plugin_manager=plugin_manager,
            show_progress=settings.show_progress,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def cut(
        self,
        source_dir: Union[str, Path],
        change_class: Union[ChangeClass, str],
        parent_version_id: Optional[str] = None,
        changelog: Optional[str] = None,
        quality_score: Optional[float] = None,
        tokens_json: Optional[str] = None,
        set_active: bool = True,
        expected_previous: Union[Optional[str], object] = _UNSET,
    ) -> Version:
        """Snapshot *source_dir* as the next version and (by default) activate it.

        *expected_previous* is an optional compare-and-swap guard: the version
        number the caller believes is currently the newest (``None`` for an
        empty history).  A mismatch raises :class:`ConcurrentModification`
        before anything is written.
        """
        latest = self._latest()
        latest_number = latest.version_number if latest else None
        if expected_previous is not _UNSET and expected_previous != latest_number:
            raise ConcurrentModification(
                f"Expected newest version {expected_previous!r}, found {latest_number!r}"
            )
        if parent_version_id is not None:
            self._require(parent_version_id)
        if set_active:
            self.pointer.resolve()

        number = next_version(latest_number, change_class)
        result = self.store.create_snapshot(Path(source_dir), number)

        try:
            version = self.registry.create_version(VersionInsert(
                project_id=self.project_id,
                version_number=number,
                snapshot_path=str(result.snapshot_path),
                is_active=False,
                parent_version_id=parent_version_id,
                changelog=changelog,
                quality_score=quality_score,
                tokens_json=tokens_json,
            ), files=result.files)
        except Exception:
            # Nothing was registered: remove the snapshot so the number stays available
            self.store.discard(number)
            raise

        self.logger.info(json.dumps({
            "event": "version_cut",
            "project_id": self.project_id,
            "version": number,
            "version_id": version.id,
            "change_class": ChangeClass(change_class).value,
            "parent_version_id": parent_version_id,
            "files": result.file_count,
        }))
        self.plugin_manager.dispatch(
            "on_version_cut", version=version, files_copied=result.file_count
        )

        if set_active:
            version = self._activate(version)
        return version

    def activate(self, version_id: str) -> Version:
        """Make an existing version the live one."""
        return self._activate(self._require(version_id))

    def rollback(self, target_version_id: str, changelog: Optional[str] = None) -> Version:
        """Copy *target*'s snapshot forward as a new, active version.

        Example: rolling back from v1.3 to v1.0 creates v1.4 with v1.0's
        files and ``parent_version_id`` set to v1.0's id.  Nothing is deleted.
        """
        target = self._validate_rollback_target(target_version_id)
        new_version = self.cut(
            self.store.snapshot_path(target.version_number),
            ChangeClass.ROLLBACK,
            parent_version_id=target.id,
            changelog=changelog or f"Rolled back to version {target.version_number}",
            quality_score=target.quality_score,
            tokens_json=target.tokens_json,
            set_active=True,
        )
        self.logger.info(json.dumps({
            "event": "rollback_completed",
            "project_id": self.project_id,
            "target_version": target.version_number,
            "new_version": new_version.version_number,
        }))
        self.plugin_manager.dispatch(
            "on_rollback", new_version=new_version, target_version=target
        )
        return new_version

    def reconcile(self) -> Optional[Path]:
        """Repoint ``current`` at the registry's active version if they disagree.

        Run at startup.  Returns the snapshot path ``current`` resolves to
        afterwards, or None when the project has no active version.
        """
        active = self.registry.get_active_version(self.project_id)
        if active is None:
            return self.pointer.resolve()

        pointed = self.pointer.current_version_number()
        if pointed == active.version_number:
            return self.pointer.resolve()

        target = self.pointer.set_active(active.version_number)
        self.logger.warning(json.dumps({
            "event": "pointer_reconciled",
            "project_id": self.project_id,
            "from": pointed,
            "to": active.version_number,
        }))
        self.plugin_manager.dispatch("on_reconciled", version=active, target=target)
        return target

    def remove_orphan(self, version_number: str) -> None:
        """Delete a snapshot directory that has no registry record."""
        if version_number not in self.orphans():
            raise SnapshotInUse(
                f"v{version_number} is registered or absent; only orphans can be removed"
            )
        self.store.remove_orphan(version_number, active_target=self.pointer.resolve())
        self.plugin_manager.dispatch(
            "on_event", name="orphan_removed", project_id=self.project_id, version_number=version_number
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def list_versions(self) -> List[Version]:
        return self.registry.get_versions(self.project_id)

    def get_version(self, version_id: str) -> Optional[Version]:
        version = self.registry.get_version_by_id(version_id)
        if version is None or version.project_id != self.project_id:
            return None
        return version

    def get_active_version(self) -> Optional[Version]:
        return self.registry.get_active_version(self.project_id)

    def get_files(self, version_id: str) -> List[VersionedFile]:
        self._require(version_id)
        return self.registry.get_version_files(version_id)

    def current_path(self) -> Optional[Path]:
        return self.pointer.resolve()

    def verify(self, version_id: str) -> VerificationReport:
        """Re-hash a version's snapshot and compare it with its file rows."""
        version = self._require(version_id)
        report = self.store.verify_snapshot(
            version.version_number, self.registry.get_version_files(version.id)
        )
        if not report.ok:
            self.plugin_manager.dispatch(
                "on_event", name="snapshot_corrupted", version=version, report=report
            )
        return report

    def lineage(self, version_id: str) -> List[Version]:
        """The version followed by its parents, back to the root."""
        chain: List[Version] = []
        seen = set()
        current: Optional[Version] = self._require(version_id)
        while current is not None:
            if current.id in seen:
                raise VersionError(f"Lineage cycle detected at {current.id}")
            seen.add(current.id)
            chain.append(current)
            parent_id = current.parent_version_id
            current = self.registry.get_version_by_id(parent_id) if parent_id else None
        return chain

    def changelog_between(self, from_version_id: str, to_version_id: str) -> Changelog:
        old = self._require(from_version_id)
        new = self._require(to_version_id)
        return build_changelog(
            old,
            new,
            self.registry.get_version_files(old.id),
            self.registry.get_version_files(new.id),
        )

    def version_changelog(self, version_id: str) -> Optional[Changelog]:
        """File changes of a version against its parent, or None for a root version."""
        version = self._require(version_id)
        if version.parent_version_id is None:
            return None
        return self.changelog_between(version.parent_version_id, version.id)

    def can_rollback(self, target_version_id: str) -> Tuple[bool, Optional[str]]:
        try:
            target = self._validate_rollback_target(target_version_id)
        except VersionError as e:
            return False, str(e)
        active = self.get_active_version()
        if active is not None and active.id == target.id:
            return False, "Target version is already active"
        return True, None

    def rollback_preview(self, target_version_id: str) -> RollbackPreview:
        target = self._validate_rollback_target(target_version_id)
        versions = self.list_versions()
        new_number = next_version(versions[0].version_number, ChangeClass.ROLLBACK)
        index = next(i for i, v in enumerate(versions) if v.id == target.id)
        return RollbackPreview(
            target=target,
            new_version_number=new_number,
            newer_versions=versions[:index],
        )

    def orphans(self) -> List[str]:
        """Snapshot directories with no registry record."""
        return self.store.find_orphans([v.version_number for v in self.list_versions()])

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _latest(self) -> Optional[Version]:
        versions = self.registry.get_versions(self.project_id)
        return versions[0] if versions else None

    def _require(self, version_id: str) -> Version:
        version = self.get_version(version_id)
        if version is None:
            raise VersionNotFound(f"Version not found: {version_id}")
        return version

    def _validate_rollback_target(self, version_id: str) -> Version:
        version = self._require(version_id)
        if not self.store.exists(version.version_number):
            raise VersionNotFound(
                f"Version directory does not exist: {self.store.snapshot_path(version.version_number)}"
            )
        return version

    def _activate(self, version: Version) -> Version:
        if not self.store.exists(version.version_number):
            raise VersionNotFound(
                f"Version directory does not exist: {self.store.snapshot_path(version.version_number)}"
            )
        # Fails closed on a foreign ``current`` before the registry moves
        self.pointer.resolve()

        updated = self.registry.set_active_version(version.id)
        if updated is None:
            raise VersionNotFound(f"Version not found: {version.id}")
        self.pointer.set_active(updated.version_number)

        self.logger.info(json.dumps({
            "event": "version_activated",
            "project_id": self.project_id,
            "version": updated.version_number,
            "version_id": updated.id,
        }))
        self.plugin_manager.dispatch("on_version_activated", version=updated)
        return updated
