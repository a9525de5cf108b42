"""Public entry point: one method per user-level operation.

Every method takes a repository (handle or path), runs the operation under
that repository's lease when it mutates anything, and returns an
:class:`~gitflow.models.OperationOutcome`. Expected failures come back as
outcome values; only programming errors propagate.
"""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

from .activity import (
    STATUS_ERROR,
    STATUS_SUCCESS,
    ActivityRecord,
    ActivitySink,
    FanoutActivitySink,
    LoggingActivitySink,
    MemoryActivitySink,
    redact,
)
from .config_loader import get_config
from .config_schema import GitflowConfig
from .credentials import CredentialsTokenProvider, StaticTokenProvider, TokenProvider, detect_account
from .errors import (
    AuthMissingError,
    BusyError,
    CommandFailedError,
    ConflictError,
    EngineError,
    PreconditionError,
    RemoteRejectedError,
    StepFailedError,
)
from .invoker import CommandInvoker
from .lock import RepoMutex
from .models import OperationOutcome, RepositoryHandle, SyncResult
from .mutations import SafeMutationOps
from .observability import configure_logging, log_action, log_error
from .runner import CommandRunner, GitCommandRunner
from .status import StatusTracker
from .sync import SyncOrchestrator
from .time_machine import TimeMachine

RepoLike = Union[RepositoryHandle, str, os.PathLike]


class Engine:
    """Synchronization and safe-mutation engine.

    Collaborators are injected; :meth:`from_config` wires the defaults
    (GitPython runner, credentials-file token provider, logging + memory
    activity sinks).
    """

    def __init__(
        self,
        *,
        config: Optional[GitflowConfig] = None,
        runner: Optional[CommandRunner] = None,
        token_provider: Optional[TokenProvider] = None,
        activity: Optional[ActivitySink] = None,
        mutex: Optional[RepoMutex] = None,
    ):
        self.config = config or GitflowConfig.default()
        engine_cfg = self.config.engine
        git_cfg = self.config.git

        self.token_provider = token_provider or StaticTokenProvider()
        self.activity = activity or LoggingActivitySink()
        self.runner = runner or GitCommandRunner(
            author_name=git_cfg.author_name or None,
            author_email=git_cfg.author_email or None,
        )
        self.mutex = mutex or RepoMutex(
            wait_seconds=engine_cfg.lock_wait_seconds,
            ttl_seconds=engine_cfg.lock_ttl_seconds,
            use_file_lock=engine_cfg.use_file_lock,
        )
        self.invoker = CommandInvoker(
            self.runner,
            activity=self.activity,
            command_timeout=engine_cfg.command_timeout,
            network_timeout=engine_cfg.network_timeout,
            index_lock_retries=engine_cfg.index_lock_retries,
            index_lock_retry_delay=engine_cfg.index_lock_retry_delay,
        )
        self.tracker = StatusTracker(self.invoker)
        self.syncer = SyncOrchestrator(
            self.invoker,
            self.tracker,
            retries=engine_cfg.sync_retries,
            autostash=engine_cfg.autostash,
        )
        self.mutations = SafeMutationOps(
            self.invoker,
            self.tracker,
            default_remote=git_cfg.default_remote,
            stash_include_untracked=engine_cfg.stash_include_untracked,
        )
        self.time_machine = TimeMachine(self.invoker, self.tracker, default_limit=engine_cfg.reflog_limit)

    @classmethod
    def from_config(
        cls,
        config: Optional[GitflowConfig] = None,
        *,
        project_path: Optional[Path] = None,
        token_provider: Optional[TokenProvider] = None,
        activity: Optional[ActivitySink] = None,
    ) -> "Engine":
        config = config or get_config(project_path)
        configure_logging(
            level=config.logging.level,
            log_dir=config.logging.dir or None,
            max_bytes=config.logging.max_bytes,
            backup_count=config.logging.backup_count,
            disable_file=config.logging.disable_file or None,
        )
        if activity is None:
            activity = FanoutActivitySink(
                LoggingActivitySink(),
                MemoryActivitySink(config.engine.activity_buffer),
            )
        return cls(
            config=config,
            token_provider=token_provider or CredentialsTokenProvider(config.credentials_path()),
            activity=activity,
        )

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _resolve_token(self, handle: RepositoryHandle) -> str:
        account = handle.account_id
        if not account and hasattr(self.token_provider, "accounts"):
            remote_url = handle.remote_url or self.tracker.remote_url(handle.key, self.config.git.default_remote)
            if remote_url:
                account = detect_account(remote_url, self.token_provider.accounts())
        account = account or self.config.accounts.default_account or None
        if not account:
            raise AuthMissingError()
        token = self.token_provider.get_token(account)
        if not token:
            raise AuthMissingError(account)
        return token

    def _execute(
        self,
        operation: str,
        repo: RepoLike,
        action: Callable[[str, Optional[str]], Any],
        *,
        account_id: Optional[str] = None,
        mutating: bool = True,
        remote: bool = False,
    ) -> OperationOutcome:
        handle = RepositoryHandle.coerce(repo, account_id)
        path = handle.key
        record = ActivityRecord(command=operation, repo_path=path)
        self.activity.emit(record)
        start = time.perf_counter()
        token: Optional[str] = None
        lease = None
        try:
            try:
                if mutating:
                    lease = self.mutex.acquire(path)
                if remote:
                    token = self._resolve_token(handle)
                outcome = self._as_outcome(operation, action(path, token))
            finally:
                if lease is not None:
                    self.mutex.release(lease)
        except EngineError as exc:
            outcome = self._failure_outcome(operation, exc, token)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start) * 1000.0
            message = redact(f"{type(exc).__name__}: {exc}", [token])
            log_error(f"Unexpected failure in {operation}", repo=path, error=message)
            self.activity.emit(record.finish(STATUS_ERROR, duration_ms, error_message=message))
            raise

        duration_ms = (time.perf_counter() - start) * 1000.0
        self.activity.emit(
            record.finish(
                STATUS_SUCCESS if outcome.ok else STATUS_ERROR,
                duration_ms,
                error_message=None if outcome.ok else (outcome.reason or outcome.kind.value),
                exit_code=outcome.exit_code,
            )
        )
        log_action(
            f"engine.{operation}",
            outcome=outcome.kind.value,
            duration_ms=duration_ms,
            repo=path,
            paths=outcome.paths or None,
        )
        return outcome

    @staticmethod
    def _as_outcome(operation: str, value: Any) -> OperationOutcome:
        if isinstance(value, SyncResult) and value.conflicts:
            return OperationOutcome.conflict(value.conflicts, operation=operation, value=value)
        return OperationOutcome.success(operation, value)

    @staticmethod
    def _failure_outcome(operation: str, exc: EngineError, token: Optional[str]) -> OperationOutcome:
        secrets = [token]
        value = None
        reason_prefix = ""
        if isinstance(exc, StepFailedError):
            value = exc.value
            reason_prefix = f"{exc.note}: " if exc.note else ""
            exc = exc.cause

        if isinstance(exc, AuthMissingError):
            return OperationOutcome.auth_missing(str(exc), operation=operation)
        if isinstance(exc, BusyError):
            return OperationOutcome.busy(str(exc), operation=operation)
        if isinstance(exc, PreconditionError):
            return OperationOutcome.precondition(exc.reason, operation=operation)
        if isinstance(exc, ConflictError):
            return OperationOutcome.conflict(exc.paths, operation=operation, value=value)
        if isinstance(exc, RemoteRejectedError):
            return OperationOutcome.remote_rejected(
                reason_prefix + redact(str(exc), secrets),
                stderr=redact(exc.stderr, secrets),
                exit_code=exc.exit_code,
                operation=operation,
                value=value,
            )
        if isinstance(exc, CommandFailedError):
            return OperationOutcome.command_failed(
                redact(exc.stderr, secrets),
                exc.exit_code,
                reason=reason_prefix + redact(str(exc), secrets),
                operation=operation,
                value=value,
            )
        return OperationOutcome.command_failed(
            "", -1, reason=reason_prefix + redact(str(exc), secrets), operation=operation, value=value
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def refresh_status(self, repo: RepoLike) -> OperationOutcome:
        return self._execute("refresh_status", repo, lambda path, _: self.tracker.refresh(path), mutating=False)

    def sync(self, repo: RepoLike, account_id: Optional[str] = None) -> OperationOutcome:
        return self._execute("sync", repo, self.syncer.sync, account_id=account_id, remote=True)

    def stash(self, repo: RepoLike) -> OperationOutcome:
        return self._execute("stash", repo, lambda path, _: self.mutations.stash(path))

    def pop_stash(self, repo: RepoLike) -> OperationOutcome:
        return self._execute("pop_stash", repo, lambda path, _: self.mutations.pop_stash(path))

    def commit_and_push(self, repo: RepoLike, message: str, account_id: Optional[str] = None) -> OperationOutcome:
        return self._execute(
            "commit_and_push",
            repo,
            lambda path, token: self.mutations.commit_and_push(path, message, token),
            account_id=account_id,
            remote=True,
        )

    def push_only(self, repo: RepoLike, account_id: Optional[str] = None) -> OperationOutcome:
        return self._execute("push_only", repo, self.mutations.push_only, account_id=account_id, remote=True)

    def undo_last_commit(self, repo: RepoLike) -> OperationOutcome:
        return self._execute("undo_last_commit", repo, lambda path, _: self.mutations.undo_last_commit(path))

    def revert_last_commit(self, repo: RepoLike) -> OperationOutcome:
        return self._execute("revert_last_commit", repo, lambda path, _: self.mutations.revert_last_commit(path))

    def delete_last_commit(
        self,
        repo: RepoLike,
        confirm: bool = False,
        account_id: Optional[str] = None,
    ) -> OperationOutcome:
        return self._execute(
            "delete_last_commit",
            repo,
            lambda path, token: self.mutations.delete_last_commit(path, token, confirm=confirm),
            account_id=account_id,
            remote=True,
        )

    def list_history(self, repo: RepoLike, limit: Optional[int] = None) -> OperationOutcome:
        return self._execute(
            "list_history",
            repo,
            lambda path, _: self.time_machine.list_history(path, limit),
            mutating=False,
        )

    def restore(self, repo: RepoLike, selector: str, expected_hash: Optional[str] = None) -> OperationOutcome:
        return self._execute(
            "restore",
            repo,
            lambda path, _: self.time_machine.restore(path, selector, expected_hash),
        )


class AsyncEngine:
    """Coroutine front for :class:`Engine`; each call runs in a worker thread."""

    def __init__(self, engine: Engine):
        self.engine = engine

    async def refresh_status(self, repo: RepoLike) -> OperationOutcome:
        return await asyncio.to_thread(self.engine.refresh_status, repo)

    async def sync(self, repo: RepoLike, account_id: Optional[str] = None) -> OperationOutcome:
        return await asyncio.to_thread(self.engine.sync, repo, account_id)

    async def stash(self, repo: RepoLike) -> OperationOutcome:
        return await asyncio.to_thread(self.engine.stash, repo)

    async def pop_stash(self, repo: RepoLike) -> OperationOutcome:
        return await asyncio.to_thread(self.engine.pop_stash, repo)

    async def commit_and_push(self, repo: RepoLike, message: str, account_id: Optional[str] = None) -> OperationOutcome:
        return await asyncio.to_thread(self.engine.commit_and_push, repo, message, account_id)

    async def push_only(self, repo: RepoLike, account_id: Optional[str] = None) -> OperationOutcome:
        return await asyncio.to_thread(self.engine.push_only, repo, account_id)

    async def undo_last_commit(self, repo: RepoLike) -> OperationOutcome:
        return await asyncio.to_thread(self.engine.undo_last_commit, repo)

    async def revert_last_commit(self, repo: RepoLike) -> OperationOutcome:
        return await asyncio.to_thread(self.engine.revert_last_commit, repo)

    async def delete_last_commit(
        self, repo: RepoLike, confirm: bool = False, account_id: Optional[str] = None
    ) -> OperationOutcome:
        return await asyncio.to_thread(self.engine.delete_last_commit, repo, confirm, account_id)

    async def list_history(self, repo: RepoLike, limit: Optional[int] = None) -> OperationOutcome:
        return await asyncio.to_thread(self.engine.list_history, repo, limit)

    async def restore(self, repo: RepoLike, selector: str, expected_hash: Optional[str] = None) -> OperationOutcome:
        return await asyncio.to_thread(self.engine.restore, repo, selector, expected_hash)
