"""Data model shared by the engine components.

Nothing here is persisted. Every value is derived fresh from the working
directory and git's own metadata on each call.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


class FileState(str, Enum):
    """Per-file status values."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"
    UNTRACKED = "untracked"
    CONFLICT = "conflict"


class OutcomeKind(str, Enum):
    """Tag of an :class:`OperationOutcome`."""

    SUCCESS = "success"
    CONFLICT = "conflict"
    AUTH_MISSING = "auth_missing"
    BUSY = "busy"
    PRECONDITION = "precondition"
    REMOTE_REJECTED = "remote_rejected"
    COMMAND_FAILED = "command_failed"


def normalize_repo_path(path: Union[str, os.PathLike]) -> str:
    """Resolve a repository path to the canonical form used as a lock key."""
    resolved = Path(path).expanduser().resolve()
    return os.path.normcase(str(resolved))


@dataclass
class RepositoryHandle:
    """Caller-owned description of a repository.

    Only ``path`` and ``account_id`` are consulted by the engine; the other
    fields are hints for the caller and are re-derived on every call.
    """

    path: str
    branch: str = ""
    dirty: bool = False
    remote_url: str = ""
    account_id: Optional[str] = None

    @classmethod
    def coerce(
        cls,
        repo: Union["RepositoryHandle", str, os.PathLike],
        account_id: Optional[str] = None,
    ) -> "RepositoryHandle":
        if isinstance(repo, RepositoryHandle):
            if account_id and not repo.account_id:
                return RepositoryHandle(
                    path=repo.path,
                    branch=repo.branch,
                    dirty=repo.dirty,
                    remote_url=repo.remote_url,
                    account_id=account_id,
                )
            return repo
        return cls(path=str(repo), account_id=account_id)

    @property
    def key(self) -> str:
        return normalize_repo_path(self.path)


@dataclass
class FileStatusEntry:
    path: str
    status: FileState
    staged: bool
    old_path: Optional[str] = None


@dataclass
class StatusSnapshot:
    """Result of a status query."""

    branch: Optional[str]
    head_oid: Optional[str]
    upstream: Optional[str] = None
    ahead: int = 0
    behind: int = 0
    files: List[FileStatusEntry] = field(default_factory=list)

    @property
    def dirty(self) -> bool:
        return bool(self.files)

    @property
    def is_detached(self) -> bool:
        return self.branch is None

    @property
    def staged(self) -> List[FileStatusEntry]:
        return [f for f in self.files if f.staged]

    @property
    def conflicts(self) -> List[str]:
        return [f.path for f in self.files if f.status == FileState.CONFLICT]

    @property
    def has_tracked_changes(self) -> bool:
        return any(f.status != FileState.UNTRACKED for f in self.files)


@dataclass
class SyncResult:
    """Outcome of the pull-rebase-push protocol.

    Exactly one of ``success`` or (``conflicts`` / ``error``) holds, and a
    result with conflicts never reports ``pushed``.
    """

    success: bool
    pulled: bool = False
    pushed: bool = False
    conflicts: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if self.conflicts:
            self.pushed = False
            self.success = False


@dataclass
class ReflogEntry:
    selector: str
    commit_hash: str
    short_hash: str
    action: str
    subject: str
    timestamp: Optional[str] = None


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        data = {k: _jsonable(v) for k, v in asdict(value).items()}
        if isinstance(value, StatusSnapshot):
            data["dirty"] = value.dirty
        return data
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    return value


@dataclass
class OperationOutcome:
    """Tagged result returned by every public engine operation."""

    kind: OutcomeKind
    operation: str = ""
    reason: Optional[str] = None
    paths: List[str] = field(default_factory=list)
    stderr: Optional[str] = None
    exit_code: Optional[int] = None
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @classmethod
    def success(cls, operation: str = "", value: Any = None) -> "OperationOutcome":
        return cls(kind=OutcomeKind.SUCCESS, operation=operation, value=value)

    @classmethod
    def conflict(cls, paths: List[str], operation: str = "", value: Any = None) -> "OperationOutcome":
        return cls(
            kind=OutcomeKind.CONFLICT,
            operation=operation,
            reason="conflicts detected",
            paths=list(paths),
            value=value,
        )

    @classmethod
    def auth_missing(cls, reason: str, operation: str = "") -> "OperationOutcome":
        return cls(kind=OutcomeKind.AUTH_MISSING, operation=operation, reason=reason)

    @classmethod
    def busy(cls, reason: str, operation: str = "") -> "OperationOutcome":
        return cls(kind=OutcomeKind.BUSY, operation=operation, reason=reason)

    @classmethod
    def precondition(cls, reason: str, operation: str = "") -> "OperationOutcome":
        return cls(kind=OutcomeKind.PRECONDITION, operation=operation, reason=reason)

    @classmethod
    def remote_rejected(
        cls,
        reason: str,
        stderr: Optional[str] = None,
        exit_code: Optional[int] = None,
        operation: str = "",
        value: Any = None,
    ) -> "OperationOutcome":
        return cls(
            kind=OutcomeKind.REMOTE_REJECTED,
            operation=operation,
            reason=reason,
            stderr=stderr,
            exit_code=exit_code,
            value=value,
        )

    @classmethod
    def command_failed(
        cls,
        stderr: str,
        exit_code: int,
        reason: Optional[str] = None,
        operation: str = "",
        value: Any = None,
    ) -> "OperationOutcome":
        return cls(
            kind=OutcomeKind.COMMAND_FAILED,
            operation=operation,
            reason=reason,
            stderr=stderr,
            exit_code=exit_code,
            value=value,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "ok": self.ok,
            "operation": self.operation,
            "reason": self.reason,
            "paths": list(self.paths),
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "value": _jsonable(self.value),
        }
