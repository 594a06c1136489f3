"""
Domain exceptions for backupctl.

Every expected failure mode of the backup lifecycle maps to one of these.
All of them except ConfigMissing abort the current invocation.
"""


class BackupError(Exception):
    """Base class for all backup lifecycle failures."""

    exit_code = 1


class ConfigMissing(BackupError):
    """Raised when the config file does not exist. Callers fall back to defaults."""
    pass


class InvalidArguments(BackupError):
    """Raised when the command line or a config value is unusable."""

    exit_code = 2


class ConfigInvalid(InvalidArguments):
    """Raised when a config file value cannot be parsed."""
    pass


class SourceNotFound(BackupError):
    """Raised when the source directory is missing or unreadable."""
    pass


class LockContention(BackupError):
    """Raised when another live process holds the lock."""
    pass


class InsufficientSpace(BackupError):
    """Raised when the destination filesystem is below the configured minimum."""
    pass


class ArchiveCreationFailed(BackupError):
    """Raised when an archive or its digest record cannot be produced."""
    pass


class DigestMismatch(BackupError):
    """Raised when an archive does not match its digest record."""
    pass


class NotFound(BackupError):
    """Raised when a named backup does not exist in the destination."""
    pass


class RestoreTargetUnreachable(BackupError):
    """Raised when the restore target cannot be created or written."""
    pass
