"""Failure taxonomy for engine operations.

Components below the Engine facade raise these; the facade converts each one
into an :class:`~gitflow.models.OperationOutcome` so callers never have to
catch expected failures.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence


class EngineError(Exception):
    """Base exception for engine operations."""
    pass


class AuthMissingError(EngineError):
    """No usable credential for the repository's account."""

    def __init__(self, account: Optional[str] = None):
        self.account = account
        if account:
            message = f"No credential available for account '{account}'"
        else:
            message = "No account linked to repository"
        super().__init__(message)


class BusyError(EngineError):
    """Another operation holds the repository lease."""

    def __init__(self, path: str, holder: Optional[dict] = None):
        self.path = path
        self.holder = holder
        message = f"Repository is busy: {path}"
        if holder:
            message += f" (held by pid={holder.get('pid', 'unknown')}, since={holder.get('time', 'unknown')})"
        super().__init__(message)


class PreconditionError(EngineError):
    """Repository is not in the state the operation requires."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class ConflictError(EngineError):
    """Rebase or apply produced overlapping changes."""

    def __init__(self, paths: Sequence[str], message: str = "Conflicts detected"):
        self.paths: List[str] = list(paths)
        super().__init__(f"{message}: {', '.join(self.paths)}" if self.paths else message)


class CommandFailedError(EngineError):
    """A git command exited non-zero."""

    def __init__(self, args: Sequence[str], exit_code: int, stderr: str, stdout: str = ""):
        self.command_args = list(args)
        self.exit_code = exit_code
        self.stderr = stderr
        self.stdout = stdout
        summary = (stderr or stdout or "").strip().splitlines()
        detail = summary[-1] if summary else "no output"
        super().__init__(f"git {' '.join(self.command_args[:2])} failed ({exit_code}): {detail}")


class RemoteRejectedError(CommandFailedError):
    """Fetch or push failed against the remote (network, auth, timeout, rejection)."""

    timed_out: bool = False


class PushRejectedError(RemoteRejectedError):
    """Push rejected as non-fast-forward: the remote moved."""
    pass


class StepFailedError(EngineError):
    """A later step failed after earlier steps of the operation took effect.

    ``cause`` is the underlying failure; ``value`` describes what was applied
    (for example a local commit that was not pushed).
    """

    def __init__(self, cause: EngineError, value: Any = None, note: Optional[str] = None):
        self.cause = cause
        self.value = value
        self.note = note
        super().__init__(f"{note}: {cause}" if note else str(cause))
