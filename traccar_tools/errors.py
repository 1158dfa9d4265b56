"""Error taxonomy for traccar-tools operations.

Every failure the console reports derives from :class:`TraccarToolsError`.
Command execution itself never raises; callers inspect
:class:`~traccar_tools.runner.CommandResult` and raise one of these.
"""

from __future__ import annotations


class TraccarToolsError(Exception):
    """Base exception for all traccar-tools errors."""

    def __init__(self, message: str, remediation: str | None = None) -> None:
        self.message = message
        self.remediation = remediation
        super().__init__(message)


class ConfigError(TraccarToolsError, ValueError):
    """Raised when the configuration file is malformed or out of range."""


class NetworkError(TraccarToolsError):
    """Release index or archive host could not be reached."""


class ReleaseNotFound(TraccarToolsError):
    """Release index response has no asset matching the platform pattern."""


class UserDeclined(TraccarToolsError):
    """Operator answered no to a confirmation prompt."""


class DownloadError(TraccarToolsError):
    """Archive transfer failed or was truncated."""


class InstallerError(TraccarToolsError):
    """Vendor installer or archive extraction failed."""


class ServiceError(TraccarToolsError):
    """A service-manager command failed."""


class BackupIncomplete(TraccarToolsError):
    """One or more snapshot files expected at restore time are missing."""


class DatabaseError(TraccarToolsError):
    """A MySQL client, dump or package-manager command failed."""


class LockHeld(TraccarToolsError):
    """Another traccar-tools process holds the operation lock."""
