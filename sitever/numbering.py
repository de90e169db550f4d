"""Version numbering policy.

Versions are two-component strings, ``"<major>.<minor>"``.  A *regeneration*
(full re-capture of the reference site) is a breaking change and bumps the
major component; an *edit* or a *rollback* is not and bumps the minor one.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional, Tuple, Union

from .errors import InvalidChangeClass, MalformedVersion

__all__ = [
    "ChangeClass",
    "parse_version",
    "format_version",
    "next_version",
    "INITIAL_VERSION",
]

INITIAL_VERSION = "1.0"

# Non-negative integers without leading zeros ("0" itself is fine)
_COMPONENT = r"(0|[1-9][0-9]*)"
_VERSION_RE = re.compile(rf"^{_COMPONENT}\.{_COMPONENT}$")

VersionLike = Union[str, Tuple[int, int]]


class ChangeClass(str, Enum):
    INITIAL = "initial"
    EDIT = "edit"
    REGENERATION = "regeneration"
    ROLLBACK = "rollback"


def parse_version(version: str) -> Tuple[int, int]:
    if not isinstance(version, str):
        raise MalformedVersion(f"Invalid version format: {version!r}")
    match = _VERSION_RE.match(version)
    if match is None:
        raise MalformedVersion(f"Invalid version format: {version!r}")
    return int(match.group(1)), int(match.group(2))


def format_version(major: int, minor: int) -> str:
    if major < 0 or minor < 0:
        raise MalformedVersion(f"Negative version component: {major}.{minor}")
    return f"{major}.{minor}"


def next_version(previous: Optional[VersionLike], change_class: Union[ChangeClass, str]) -> str:
    """Return the version string following *previous* for *change_class*.

    *previous* is ``None`` for a project without versions; the first version
    is always ``1.0`` whatever the change class.  ``initial`` is rejected once
    a version exists.
    """
    try:
        change = ChangeClass(change_class)
    except ValueError:
        raise InvalidChangeClass(f"Unknown change class: {change_class!r}") from None

    if previous is None:
        return INITIAL_VERSION

    if isinstance(previous, tuple):
        major, minor = previous
        format_version(major, minor)  # validates
    else:
        major, minor = parse_version(previous)

    if change is ChangeClass.INITIAL:
        raise InvalidChangeClass(
            f"'initial' is only valid for the first version (latest is {major}.{minor})"
        )
    if change is ChangeClass.REGENERATION:
        return format_version(major + 1, 0)
    # edit and rollback
    return format_version(major, minor + 1)
