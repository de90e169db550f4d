"""Active pointer management.

Each project has exactly one ``current`` entry next to its ``versions``
directory.  It is an indirection (symlink, or a directory junction on
Windows) resolving to the live snapshot.  Other subsystems read the live
output through ``current`` and nothing else.

Switching follows the same rule for both primitives: build the new
indirection under a temporary sibling name, then rename it over ``current``.
Readers see either the old or the new target, never a missing one.

If ``current`` exists but is a real directory or file, we refuse to touch it
and raise :class:`UnexpectedPointerState`.
"""

from __future__ import annotations

import json
import os
import stat
import uuid
from pathlib import Path
from typing import Optional

from .errors import MalformedVersion, UnexpectedPointerState, VersionNotFound
from .logger import get_logger
from .numbering import parse_version
from .snapshot import VERSIONS_DIRNAME, version_dirname

__all__ = [
    "CURRENT_NAME",
    "PointerStrategy",
    "SymlinkPointer",
    "JunctionPointer",
    "select_strategy",
    "ActivePointerManager",
]

CURRENT_NAME = "current"
_TMP_SUFFIX = ".tmp"
_FILE_ATTRIBUTE_REPARSE_POINT = 0x400


def _is_junction(path: Path) -> bool:
    isjunction = getattr(os.path, "isjunction", None)
    if isjunction is not None:
        return isjunction(path)
    try:
        st = os.lstat(path)
    except OSError:
        return False
    attrs = getattr(st, "st_file_attributes", 0)
    return bool(attrs & _FILE_ATTRIBUTE_REPARSE_POINT) and stat.S_ISDIR(st.st_mode)


def _lexists(path: Path) -> bool:
    return os.path.lexists(path)


class PointerStrategy:
    """Platform primitive used to implement ``current``."""

    name = "abstract"

    def replace_pointer(self, link: Path, target: Path) -> None:
        """Atomically make *link* resolve to *target*."""
        raise NotImplementedError

    def is_pointer(self, path: Path) -> bool:
        return path.is_symlink() or _is_junction(path)

    def read_pointer(self, path: Path) -> Path:
        raw = os.readlink(path)
        if raw.startswith("\\\\?\\"):
            raw = raw[4:]
        target = Path(raw)
        if not target.is_absolute():
            target = path.parent / target
        return Path(os.path.normpath(target))

    def _temp_name(self, link: Path) -> Path:
        return link.parent / f".{link.name}.{os.getpid()}.{uuid.uuid4().hex[:8]}{_TMP_SUFFIX}"

    @staticmethod
    def remove_pointer(path: Path) -> None:
        if _is_junction(path):
            os.rmdir(path)
        else:
            os.unlink(path)


class SymlinkPointer(PointerStrategy):
    """Relative symlink created under a temp name, then renamed into place."""

    name = "symlink"

    def replace_pointer(self, link: Path, target: Path) -> None:
        relative = os.path.relpath(target, link.parent)
        tmp = self._temp_name(link)
        os.symlink(relative, tmp, target_is_directory=True)
        try:
            os.replace(tmp, link)
        except OSError:
            self.remove_pointer(tmp)
            raise


class JunctionPointer(PointerStrategy):
    """Directory junction for Windows hosts without symlink privileges.

    Junctions need absolute targets.  ``MoveFileEx`` refuses to replace an
    existing directory entry, so when the rename over ``current`` is rejected
    the old junction is removed and the new one renamed in right after.
    """

    name = "junction"

    def replace_pointer(self, link: Path, target: Path) -> None:
        import _winapi  # Windows only

        tmp = self._temp_name(link)
        _winapi.CreateJunction(str(Path(target).resolve()), str(tmp))
        try:
            try:
                os.replace(tmp, link)
            except (PermissionError, FileExistsError, IsADirectoryError):
                if _lexists(link):
                    self.remove_pointer(link)
                os.rename(tmp, link)
        except OSError:
            if _lexists(tmp):
                self.remove_pointer(tmp)
            raise


def select_strategy(preferred: Optional[str] = None) -> PointerStrategy:
    """Pick the pointer primitive once, at startup.

    *preferred* is ``"symlink"``, ``"junction"`` or ``None`` for the platform
    default (junction on Windows, symlink elsewhere).
    """
    choice = (preferred or "").strip().lower() or ("junction" if os.name == "nt" else "symlink")
    if choice == "symlink":
        return SymlinkPointer()
    if choice == "junction":
        if os.name != "nt":
            raise ValueError("Junction pointers are only available on Windows")
        return JunctionPointer()
    raise ValueError(f"Unknown pointer strategy: {preferred!r}")


class ActivePointerManager:
    """Owns the ``current`` indirection of one project."""

    def __init__(self, project_root: Path, strategy: Optional[PointerStrategy] = None):
        self.project_root = Path(project_root).resolve()
        self.versions_dir = self.project_root / VERSIONS_DIRNAME
        self.current_path = self.project_root / CURRENT_NAME
        self.strategy = strategy or select_strategy()
        self.logger = get_logger()

    def set_active(self, version_number: str) -> Path:
        """Point ``current`` at the snapshot of *version_number*.

        Raises:
            VersionNotFound: there is no snapshot directory for that number.
            UnexpectedPointerState: ``current`` is not an indirection.
        """
        target = self.versions_dir / version_dirname(version_number)
        if not target.is_dir():
            raise VersionNotFound(f"Snapshot directory does not exist: {target}")

        self._check_state()
        self._cleanup_stale()
        previous = self.resolve()
        self.strategy.replace_pointer(self.current_path, target)

        self.logger.info(json.dumps({
            "event": "pointer_switched",
            "project_root": str(self.project_root),
            "from": str(previous) if previous else None,
            "to": str(target),
            "strategy": self.strategy.name,
        }))
        return target

    def resolve(self) -> Optional[Path]:
        """Return the snapshot path ``current`` points at, or None if absent."""
        if not _lexists(self.current_path):
            return None
        self._check_state()
        return self.strategy.read_pointer(self.current_path)

    def current_version_number(self) -> Optional[str]:
        target = self.resolve()
        if target is None or not target.name.startswith("v"):
            return None
        if Path(os.path.normpath(target.parent)) != Path(os.path.normpath(self.versions_dir)):
            return None
        try:
            major, minor = parse_version(target.name[1:])
        except MalformedVersion:
            return None
        return f"{major}.{minor}"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _check_state(self) -> None:
        if _lexists(self.current_path) and not self.strategy.is_pointer(self.current_path):
            self.logger.critical(json.dumps({
                "event": "unexpected_pointer_state",
                "path": str(self.current_path),
            }))
            raise UnexpectedPointerState(
                f"{self.current_path} exists but is not a symlink or junction; "
                "refusing to replace it"
            )

    def _cleanup_stale(self) -> None:
        """Remove temp indirections left behind by an interrupted switch."""
        prefix = f".{CURRENT_NAME}."
        if not self.project_root.is_dir():
            return
        for entry in self.project_root.iterdir():
            if not (entry.name.startswith(prefix) and entry.name.endswith(_TMP_SUFFIX)):
                continue
            if self.strategy.is_pointer(entry):
                self.strategy.remove_pointer(entry)
