"""Exception types raised across probing, generation, patching, and install steps.

Every ``InstallerError`` is fatal at the CLI boundary: it is reported as a
single ``[ERROR]`` line and the process exits with status 1.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from snowflake_installer.validation import HostnameIssue


class InstallerError(Exception):
    """Base exception for all installer operations."""


class InvalidHostnameError(InstallerError):
    """Raised when a hostname argument fails validation."""

    def __init__(self, issue: HostnameIssue, message: str):
        super().__init__(message)
        self.issue = issue


class DiskNotFoundError(InstallerError):
    """Raised when the target disk is missing or not a block device."""


class InsufficientResourcesError(InstallerError):
    """Raised when memory or target disk space is below the hard minimum."""


class MissingToolError(InstallerError):
    """Raised when a required external command is not on ``PATH``."""


class CommandError(InstallerError):
    """Raised when an external command exits non-zero or times out."""

    def __init__(self, cmd: list[str], message: str, returncode: int | None = None):
        super().__init__(message)
        self.cmd = cmd
        self.returncode = returncode


class ArtifactWriteError(InstallerError):
    """Raised when a generated file cannot be written."""


class FlakeHostsError(InstallerError):
    """Raised when ``hosts/default.nix`` cannot be read, parsed, or patched."""


class FlakeEvaluationError(InstallerError):
    """Raised when the flake still fails to evaluate after recovery attempts."""


class AbortedByUser(InstallerError):
    """Raised when the user declines a confirmation prompt."""


class UserConfigError(InstallerError):
    """Raised when the login user cannot be found or the flake cannot be adapted to it."""
