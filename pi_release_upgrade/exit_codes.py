"""Process exit codes of the ``pi-release-upgrade`` command."""

from .errors import PermissionDeniedError

SUCCESS = 0              # Completed, or cancelled by the operator
FAILURE = 1              # Precondition, resolution, backup or upgrade failure
PERMISSION_ERROR = 126   # Not started as root
INTERRUPTED = 130        # Terminated by Ctrl+C (SIGINT)


def exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, KeyboardInterrupt):
        return INTERRUPTED
    if isinstance(exc, (PermissionDeniedError, PermissionError)):
        return PERMISSION_ERROR
    return FAILURE
