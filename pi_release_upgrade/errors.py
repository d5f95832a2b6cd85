"""Exception hierarchy for the release upgrade tool.

Errors raised before any repository file is touched (preconditions and
release resolution) abort the run outright.  Once a backup exists the tool
prefers partial progress with clear reporting, so the later error types are
mostly collected into reports instead of being raised.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .pipeline import StageResult


class UpgradeToolError(Exception):
    """Base class for every error raised by :mod:`pi_release_upgrade`."""

    #: Human readable hint describing what the operator can do next.
    recovery: Optional[str] = None

    def __init__(self, message: str, *, recovery: Optional[str] = None) -> None:
        super().__init__(message)
        if recovery is not None:
            self.recovery = recovery

    def describe(self) -> str:
        message = str(self)
        if self.recovery:
            return f"{message}\n{self.recovery}"
        return message


class PreconditionError(UpgradeToolError):
    """The system is not in a state where an upgrade may start."""

    recovery = "Nothing was changed. Fix the problem above and run the tool again."


class PermissionDeniedError(PreconditionError):
    """The tool was not started with root privileges."""

    recovery = "Run the tool again as root, e.g. with sudo."


class AlreadyRunningError(PreconditionError):
    """Another instance holds the run lock."""

    recovery = "Wait for the other upgrade to finish, then try again."


class ResolutionError(UpgradeToolError):
    """No target release could be determined."""

    recovery = "Nothing was changed. Check the network connection and try again later."


class NetworkError(ResolutionError):
    """A catalog endpoint could not be reached or answered with an error."""


class ParseError(ResolutionError):
    """A catalog endpoint answered but no codenames could be extracted."""


class NoCompatibleReleaseError(ResolutionError):
    """The two catalogs do not share any codename."""

    recovery = (
        "Nothing was changed. There is currently no release supported by both "
        "Debian and the Raspberry Pi archive."
    )


class BackupError(UpgradeToolError):
    """The repository configuration could not be backed up."""

    recovery = "Nothing was changed. Check free space and permissions on the backup location."


class RewriteError(UpgradeToolError):
    """A single repository definition file could not be rewritten."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Could not rewrite {path}: {reason}")
        self.path = path
        self.reason = reason


class StageError(UpgradeToolError):
    """A fatal package manager stage failed."""

    def __init__(self, result: "StageResult", *, recovery: Optional[str] = None) -> None:
        super().__init__(
            f"Stage '{result.name}' failed with exit status {result.returncode}",
            recovery=recovery,
        )
        self.result = result


class ExecutionError(UpgradeToolError):
    """The upgrade stages could not be run to the end."""

    recovery = (
        "The apt sources may already point at the new release. Restore them from "
        "the backup or finish the upgrade manually with 'apt-get full-upgrade'."
    )


class RollbackError(UpgradeToolError):
    """Restoring the repository configuration did not fully succeed."""

    recovery = (
        "The system may be inconsistent. Restore the files manually from the "
        "backup directory and run 'apt-get update'."
    )


class InvalidTransitionError(UpgradeToolError):
    """An orchestrator operation was called in the wrong state."""


__all__ = [
    "AlreadyRunningError",
    "BackupError",
    "ExecutionError",
    "InvalidTransitionError",
    "NetworkError",
    "NoCompatibleReleaseError",
    "ParseError",
    "PermissionDeniedError",
    "PreconditionError",
    "ResolutionError",
    "RewriteError",
    "RollbackError",
    "StageError",
    "UpgradeToolError",
]
