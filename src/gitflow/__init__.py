"""gitflow: synchronization and safe-mutation engine for local git repositories."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("gitflow-engine")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .engine import AsyncEngine, Engine  # noqa: F401
from .models import (  # noqa: F401
    FileState,
    FileStatusEntry,
    OperationOutcome,
    OutcomeKind,
    ReflogEntry,
    RepositoryHandle,
    StatusSnapshot,
    SyncResult,
)
from .activity import ActivityRecord, MemoryActivitySink  # noqa: F401
from .credentials import CredentialsTokenProvider, StaticTokenProvider  # noqa: F401

__all__ = [
    "Engine",
    "AsyncEngine",
    "RepositoryHandle",
    "FileState",
    "FileStatusEntry",
    "StatusSnapshot",
    "SyncResult",
    "ReflogEntry",
    "OperationOutcome",
    "OutcomeKind",
    "ActivityRecord",
    "MemoryActivitySink",
    "CredentialsTokenProvider",
    "StaticTokenProvider",
    "__version__",
]
