"""Exception taxonomy for sitever.

Every error carries a short ``code`` so that callers (CLI, dashboards) can
show an explicit "version operation failed" state instead of a generic
failure.  Nothing in this package retries on these errors; retry policy
belongs to the caller.
"""

from __future__ import annotations


class VersionError(Exception):
    """Base class for all version management failures."""

    code = "VERSION_ERROR"
    fatal = False


class MalformedVersion(VersionError):
    code = "MALFORMED_VERSION"


class InvalidChangeClass(VersionError):
    code = "INVALID_CHANGE_CLASS"


class SourceNotFound(VersionError):
    code = "SOURCE_NOT_FOUND"


class SourceEmpty(VersionError):
    code = "SOURCE_EMPTY"


class VersionAlreadyExists(VersionError):
    code = "VERSION_ALREADY_EXISTS"


class VersionNotFound(VersionError):
    code = "VERSION_NOT_FOUND"


class UnexpectedPointerState(VersionError):
    """The ``current`` entry exists but is not an indirection we manage.

    Requires operator intervention: something outside sitever replaced it.
    """

    code = "UNEXPECTED_POINTER_STATE"
    fatal = True


class CopyFailed(VersionError):
    code = "COPY_FAILED"


class RegistryError(VersionError):
    code = "REGISTRY_ERROR"


class ConcurrentModification(VersionError):
    code = "CONCURRENT_MODIFICATION"


class SnapshotInUse(VersionError):
    code = "SNAPSHOT_IN_USE"
