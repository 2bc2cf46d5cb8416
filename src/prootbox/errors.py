"""Exception hierarchy for prootbox.

Everything the launcher raises derives from ``LauncherError``. A child that
exits nonzero is not an error here: it is reported through ``ProcessResult``.
"""


class LauncherError(Exception):
    """Base class for internal launcher failures."""


class UsageError(LauncherError):
    """Missing or invalid invocation arguments."""


class ArchiveError(LauncherError):
    """The embedded rootfs archive could not be extracted."""


class CorruptArchiveError(ArchiveError):
    """The gzip or tar stream is unreadable."""


class LayerNotFoundError(ArchiveError):
    """The outer stream has no ``*/layer.tar`` entry."""

    def __init__(self, message: str = "archive malformed - layer not found"):
        super().__init__(message)


class ContainmentError(ArchiveError):
    """An entry tried to reach outside the extraction root.

    Security relevant: never skipped silently.
    """

    def __init__(self, message: str, entry_name: str):
        super().__init__(message)
        self.entry_name = entry_name


class PathEscapeError(ContainmentError):
    """An entry's path resolves outside the extraction root."""


class LinkEscapeError(ContainmentError):
    """A symlink's target resolves outside the extraction root."""


class UnsupportedEntryError(ArchiveError):
    """The nested layer holds an entry type we do not extract."""


class ExtractionAborted(ArchiveError):
    """Extraction was stopped on request before the stream ended."""


class SpawnError(LauncherError):
    """The sandbox tool could not be materialized or started."""


class CleanupError(LauncherError):
    """The ephemeral directory could not be removed."""
