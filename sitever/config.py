"""Configuration for sitever.

Settings come from environment variables, optionally overlaid with a named
profile from a JSON file (``~/.sitever_profiles.json`` by default):

{
  "staging": {
    "websites_dir": "/srv/sites",
    "registry_backend": "sqlite",
    "pointer_strategy": "symlink"
  }
}

Users select one via ``--profile staging``.  Keys not given in the profile
keep their environment (or built-in) defaults.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from .registry import JsonVersionRegistry, VersionRegistry
from .sqlite_registry import SqliteVersionRegistry

DEFAULT_PROFILE_PATH = Path.home() / ".sitever_profiles.json"
REGISTRY_DIRNAME = ".sitever"

_BACKENDS = ("json", "sqlite")


@dataclass(frozen=True)
class Settings:
    websites_dir: Path
    registry_backend: str = "json"
    registry_path: Optional[Path] = None
    pointer_strategy: Optional[str] = None
    log_file: Optional[str] = None
    show_progress: bool = False

    def project_root(self, project_id: str) -> Path:
        if not project_id or "/" in project_id or "\\" in project_id or project_id in (".", ".."):
            raise ValueError(f"Invalid project id: {project_id!r}")
        return self.websites_dir / project_id

    def resolved_registry_path(self) -> Path:
        if self.registry_path is not None:
            return self.registry_path
        name = "registry.db" if self.registry_backend == "sqlite" else "registry.json"
        return self.websites_dir / REGISTRY_DIRNAME / name


def _env_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def settings_from_env(environ: Optional[Dict[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    registry_path = env.get("SITEVER_REGISTRY_PATH")
    return Settings(
        websites_dir=Path(env.get("WEBSITES_DIR") or Path.cwd() / "Websites").expanduser(),
        registry_backend=(env.get("SITEVER_REGISTRY") or "json").lower(),
        registry_path=Path(registry_path).expanduser() if registry_path else None,
        pointer_strategy=env.get("SITEVER_POINTER") or None,
        log_file=env.get("SITEVER_LOG_FILE") or None,
        show_progress=_env_bool(env.get("SITEVER_PROGRESS")),
    )


def load_settings(
    profile: Optional[str] = None,
    config_path: Optional[Path] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Settings:
    """Build settings from the environment plus an optional named profile."""
    settings = settings_from_env(environ)
    if profile:
        settings = _apply_profile(settings, profile, config_path or DEFAULT_PROFILE_PATH)
    if settings.registry_backend not in _BACKENDS:
        raise ValueError(
            f"Unknown registry backend {settings.registry_backend!r}; expected one of {_BACKENDS}"
        )
    return settings


def _apply_profile(settings: Settings, profile: str, config_path: Path) -> Settings:
    if not config_path.exists():
        raise FileNotFoundError(f"Profile config not found at {config_path}")
    try:
        data: Dict[str, Any] = json.loads(config_path.read_text())
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {config_path}: {e}") from e

    prof = data.get(profile)
    if prof is None:
        raise KeyError(f"Profile '{profile}' not defined in {config_path}")

    known = {f.name for f in fields(Settings)}
    overrides: Dict[str, Any] = {}
    for key, value in prof.items():
        if key not in known:
            raise KeyError(f"Unknown setting '{key}' in profile '{profile}'")
        if key in ("websites_dir", "registry_path") and value is not None:
            value = Path(value).expanduser()
        overrides[key] = value
    return replace(settings, **overrides)


def build_registry(settings: Settings) -> VersionRegistry:
    path = settings.resolved_registry_path()
    if settings.registry_backend == "sqlite":
        return SqliteVersionRegistry(path)
    return JsonVersionRegistry(path)
