"""Plugin system for sitever.

This module defines a very lightweight plugin architecture that lets external
code hook into version lifecycle events inside the VersionManager: a new
version being cut, a version being activated, a rollback, or the pointer
being repaired at startup.  Typical uses are notifying a deploy webhook,
purging a CDN, or mirroring the release log elsewhere.

Usage
-----
1.  Drop a Python file inside the directory named ``plugins`` that sits next to
    the *sitever* package (or pass an explicit path via the
    ``SITEVER_PLUGIN_PATH`` environment variable).
2.  Inside that file declare a subclass of :class:`BasePlugin` and implement
    whichever callbacks you need.
3.  Run sitever as usual; your plugin will be auto-discovered and its
    callbacks executed.

Example::

    from sitever.plugin import BasePlugin
    import requests

    class NotifyDeploy(BasePlugin):
        def on_version_activated(self, version, **kwargs):
            msg = f"{version.project_id} is now live at v{version.version_number}"
            requests.post("https://hooks.example.com/...", json={"text": msg})

All callbacks receive *kwargs* with extra contextual fields so future versions
of sitever can add more data without breaking compatibility.  A failing
plugin is logged and never aborts the version operation that triggered it.
"""

from __future__ import annotations

import importlib.util
import json
import os
import sys
import traceback
from pathlib import Path
from typing import List, Sequence, Type

from .logger import get_logger

__all__ = [
    "BasePlugin",
    "PluginManager",
]


class BasePlugin:
    """Base class for all sitever plugins.

    Sub-classes can override whichever callbacks they are interested in.  All
    callbacks are optional and default to a *no-op*.
    """

    # --- Version lifecycle -----------------------------------------------
    def on_version_cut(self, version, files_copied: int, **kwargs):
        """Called once a new version is snapshotted and registered."""

    def on_version_activated(self, version, **kwargs):
        """Called after the registry flag and ``current`` pointer both moved."""

    def on_rollback(self, new_version, target_version, **kwargs):
        """Called after a rollback created *new_version* from *target_version*."""

    def on_reconciled(self, version, target, **kwargs):
        """Called when startup reconciliation repointed ``current``."""

    # --- Generic hook ----------------------------------------------------
    def on_event(self, name: str, **payload):  # noqa: D401
        """Receive a generic event that is not covered by the above helpers."""


DEFAULT_PLUGIN_DIR = Path(__file__).resolve().parent.parent / "plugins"
PLUGIN_PATH_ENV = "SITEVER_PLUGIN_PATH"


def _resolve_search_paths(search_paths: Sequence[os.PathLike[str] | str] | None) -> List[Path]:
    """Existing plugin directories, de-duplicated, in lookup order."""
    if search_paths is None:
        candidates = [DEFAULT_PLUGIN_DIR]
        extra = os.getenv(PLUGIN_PATH_ENV)
        if extra:
            candidates.append(Path(extra))
    else:
        candidates = [Path(p) for p in search_paths]

    resolved: List[Path] = []
    for candidate in candidates:
        directory = candidate.expanduser().resolve()
        if directory.is_dir() and directory not in resolved:
            resolved.append(directory)
    return resolved


class PluginManager:
    """Discovers plugins on disk and fans version events out to them.

    With no *search_paths* the ``plugins`` directory beside the package and
    ``$SITEVER_PLUGIN_PATH`` are scanned.  Pass an explicit list (possibly
    empty) to bypass both.
    """

    def __init__(self, search_paths: Sequence[os.PathLike[str] | str] | None = None):
        self.logger = get_logger()
        self._paths = _resolve_search_paths(search_paths)
        self._plugins: List[BasePlugin] = []
        for directory in self._paths:
            self._load_directory(directory)

    @property
    def plugins(self) -> List[BasePlugin]:
        return list(self._plugins)

    def register(self, plugin: BasePlugin) -> None:
        """Add an already constructed plugin (embedding callers, tests)."""
        self._plugins.append(plugin)

    def dispatch(self, hook: str, *args, **kwargs) -> None:
        """Call *hook* on every plugin that defines it.

        Exceptions raised by a plugin are logged as ``plugin_error`` and do not
        propagate: the version operation that fired the hook has already
        completed.
        """
        for plugin in self._plugins:
            callback = getattr(plugin, hook, None)
            if not callable(callback):
                continue
            try:
                callback(*args, **kwargs)
            except Exception as e:
                self.logger.error(json.dumps({
                    "event": "plugin_error",
                    "plugin": type(plugin).__name__,
                    "hook": hook,
                    "error": str(e),
                    "traceback": traceback.format_exc(),
                }))

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def _load_directory(self, directory: Path) -> None:
        for path in sorted(directory.glob("*.py")):
            plugin_cls = self._plugin_class_from_file(path)
            if plugin_cls is None:
                continue
            try:
                self._plugins.append(plugin_cls())
            except Exception as e:
                self.logger.warning(json.dumps({
                    "event": "plugin_init_failed",
                    "plugin": plugin_cls.__name__,
                    "file": str(path),
                    "error": str(e),
                }))

    def _plugin_class_from_file(self, path: Path) -> Type[BasePlugin] | None:
        module_name = f"sitever_plugin_{path.stem}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            return None

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(module_name, None)
            self.logger.warning(json.dumps({
                "event": "plugin_load_failed",
                "file": str(path),
                "error": str(e),
            }))
            return None

        # Only classes defined in the file itself count, first one wins
        for obj in vars(module).values():
            if (
                isinstance(obj, type)
                and issubclass(obj, BasePlugin)
                and obj is not BasePlugin
                and obj.__module__ == module_name
            ):
                return obj
        return None
