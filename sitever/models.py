from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Version:
    """One registry record.  Only ``is_active`` ever changes after creation."""

    id: str
    project_id: str
    version_number: str
    snapshot_path: str
    is_active: bool = False
    parent_version_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    changelog: Optional[str] = None
    quality_score: Optional[float] = None
    tokens_json: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Version":
        created = data.get("created_at")
        if isinstance(created, str):
            created_at = datetime.fromisoformat(created)
        elif isinstance(created, datetime):
            created_at = created
        else:
            created_at = utc_now()
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            version_number=data["version_number"],
            snapshot_path=data["snapshot_path"],
            is_active=bool(data.get("is_active", False)),
            parent_version_id=data.get("parent_version_id"),
            created_at=created_at,
            changelog=data.get("changelog"),
            quality_score=data.get("quality_score"),
            tokens_json=data.get("tokens_json"),
        )


@dataclass(frozen=True)
class VersionInsert:
    """Fields supplied by the caller when registering a new version."""

    project_id: str
    version_number: str
    snapshot_path: str
    is_active: bool = False
    parent_version_id: Optional[str] = None
    changelog: Optional[str] = None
    quality_score: Optional[float] = None
    tokens_json: Optional[str] = None


@dataclass(frozen=True)
class VersionedFile:
    version_id: str
    file_path: str
    file_hash: str
    file_size: int = 0


@dataclass(frozen=True)
class SnapshotEntry:
    """A file copied into a snapshot, before it is tied to a version id."""

    file_path: str
    file_hash: str
    file_size: int

    def bind(self, version_id: str) -> VersionedFile:
        return VersionedFile(
            version_id=version_id,
            file_path=self.file_path,
            file_hash=self.file_hash,
            file_size=self.file_size,
        )


@dataclass
class SnapshotResult:
    snapshot_path: Path
    files: List[SnapshotEntry]

    @property
    def file_count(self) -> int:
        return len(self.files)


@dataclass
class VerificationReport:
    """Differences between recorded file rows and what is on disk."""

    version_number: str
    missing: List[str] = field(default_factory=list)
    unexpected: List[str] = field(default_factory=list)
    corrupted: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.missing or self.unexpected or self.corrupted)


@dataclass
class RollbackPreview:
    target: Version
    new_version_number: str
    newer_versions: List[Version]
