from __future__ import annotations

import hashlib
from pathlib import Path

BLOCK_SIZE = 8192


def hash_file(file_path: Path) -> str:
    """Calculate SHA-256 checksum of a file's bytes."""
    sha256 = hashlib.sha256()
    with Path(file_path).open('rb') as f:
        for chunk in iter(lambda: f.read(BLOCK_SIZE), b''):
            sha256.update(chunk)
    return sha256.hexdigest()


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
