"""Primitive git invocation with result classification.

Every engine component goes through :class:`CommandInvoker`. It applies the
timeouts, retries ``index.lock`` contention, records one activity entry per
command and turns non-zero exits into typed exceptions.
"""

from __future__ import annotations

import re
import time
from typing import List, Optional, Sequence

from .activity import (
    STATUS_ERROR,
    STATUS_SUCCESS,
    ActivityRecord,
    ActivitySink,
    NullActivitySink,
    redact,
    summarize_command,
)
from .errors import (
    CommandFailedError,
    PreconditionError,
    PushRejectedError,
    RemoteRejectedError,
)
from .observability import log_debug
from .runner import CommandResult, CommandRunner

NETWORK_COMMANDS = frozenset({"fetch", "push", "pull", "ls-remote", "clone"})

# Lower-cased stderr fragments that mean the remote could not be reached or
# refused our credentials.
_REMOTE_FAILURE_TOKENS = (
    "could not read from remote repository",
    "could not resolve hostname",
    "could not resolve host",
    "permission denied",
    "network is unreachable",
    "failed to connect to",
    "connection timed out",
    "connection refused",
    "authentication failed",
    "terminal prompts disabled",
    "repository not found",
    "does not appear to be a git repository",
    "the requested url returned error",
    "[remote rejected]",
    "permission to",
)

_PUSH_REJECTED_TOKENS = (
    "[rejected]",
    "non-fast-forward",
    "fetch first",
    "updates were rejected",
    "stale info",
)

_INDEX_LOCK_PATTERN = re.compile(r"index\.lock['\"]?: File exists|Unable to create '.*index\.lock'", re.IGNORECASE)

_BRANCH_VALIDATION_RULES = [
    (re.compile(r"\.\.+"), "contains consecutive dots (..)"),
    (re.compile(r"^-"), "starts with hyphen (potential flag injection)"),
    (re.compile(r"^\.|\.$"), "starts or ends with dot"),
    (re.compile(r"\.lock$"), "ends with .lock (reserved suffix)"),
    (re.compile(r"@\{"), "contains reflog syntax (@{)"),
    (re.compile(r"[\x00-\x1f\x7f]"), "contains control characters"),
    (re.compile(r"[~^:?*\[\]\\]"), "contains invalid git characters (~^:?*[]\\)"),
    (re.compile(r"\s"), "contains whitespace"),
]


def validate_ref_name(name: str) -> None:
    """Reject branch/remote names that git would refuse or read as a flag.

    Raises:
        PreconditionError: if the name is unsafe to pass as an argument
    """
    if not name:
        raise PreconditionError("empty ref name")
    for pattern, message in _BRANCH_VALIDATION_RULES:
        if pattern.search(name):
            raise PreconditionError(f"ref name '{name}' {message}")
    if "//" in name or name.endswith("/"):
        raise PreconditionError(f"ref name '{name}' has an empty path component")


def is_index_lock_error(stderr: str) -> bool:
    return bool(_INDEX_LOCK_PATTERN.search(stderr or ""))


def _subcommand(args: Sequence[str]) -> str:
    for arg in args:
        if not arg.startswith("-"):
            return arg
    return ""


class CommandInvoker:
    """Runs git through a :class:`CommandRunner` and classifies the result."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        activity: Optional[ActivitySink] = None,
        command_timeout: float = 60,
        network_timeout: float = 120,
        index_lock_retries: int = 3,
        index_lock_retry_delay: float = 0.5,
    ):
        self.runner = runner
        self.activity = activity or NullActivitySink()
        self.command_timeout = command_timeout
        self.network_timeout = network_timeout
        self.index_lock_retries = index_lock_retries
        self.index_lock_retry_delay = index_lock_retry_delay

    def run(
        self,
        repo_path: str,
        args: Sequence[str],
        *,
        token: Optional[str] = None,
        check: bool = True,
        retry_index_lock: bool = False,
    ) -> CommandResult:
        """Run ``git <args>`` in ``repo_path``.

        Args:
            repo_path: Working tree to run in
            args: Discrete argument list (no shell parsing)
            token: Credential for network commands; exposed via the environment
            check: Raise a typed failure on non-zero exit
            retry_index_lock: Retry while another process holds ``index.lock``

        Returns:
            The runner's result (also returned on failure when ``check`` is False)

        Raises:
            PushRejectedError: push refused as non-fast-forward
            RemoteRejectedError: network, auth or timeout failure of a remote command
            CommandFailedError: any other non-zero exit
        """
        args = list(args)
        network = _subcommand(args) in NETWORK_COMMANDS
        timeout = self.network_timeout if network else self.command_timeout
        attempts = 1 + (self.index_lock_retries if retry_index_lock else 0)

        result = CommandResult(exit_code=0)
        for attempt in range(attempts):
            result = self._run_once(repo_path, args, token=token, timeout=timeout)
            if result.ok or not (retry_index_lock and is_index_lock_error(result.stderr)):
                break
            if attempt + 1 < attempts:
                log_debug(f"GIT_OP_RETRY: {_subcommand(args)} (index.lock held)", repo=repo_path)
                time.sleep(self.index_lock_retry_delay)

        if check and not result.ok:
            raise self.classify(args, result, token=token)
        return result

    def _run_once(
        self,
        repo_path: str,
        args: List[str],
        *,
        token: Optional[str],
        timeout: float,
    ) -> CommandResult:
        secrets = [token]
        record = ActivityRecord(command=summarize_command(args, secrets), repo_path=repo_path)
        self.activity.emit(record)
        log_debug(f"GIT_OP_START: {record.command}", repo=repo_path)
        start = time.perf_counter()
        try:
            result = self.runner.run(repo_path, args, token=token, timeout=timeout)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start) * 1000.0
            self.activity.emit(
                record.finish(STATUS_ERROR, duration_ms, error_message=redact(str(exc), secrets))
            )
            raise
        duration_ms = (time.perf_counter() - start) * 1000.0
        # Scrub output before anyone else sees it
        result = CommandResult(
            exit_code=result.exit_code,
            stdout=redact(result.stdout, secrets) if token else result.stdout,
            stderr=redact(result.stderr, secrets),
            timed_out=result.timed_out,
        )
        log_debug(
            f"GIT_OP_END: {record.command}",
            repo=repo_path,
            exit_code=result.exit_code,
            duration_ms=round(duration_ms, 2),
        )
        if result.ok:
            self.activity.emit(record.finish(STATUS_SUCCESS, duration_ms, exit_code=0))
        else:
            lines = result.stderr.strip().splitlines()
            self.activity.emit(
                record.finish(
                    STATUS_ERROR,
                    duration_ms,
                    error_message=lines[-1] if lines else f"exit code {result.exit_code}",
                    exit_code=result.exit_code,
                )
            )
        return result

    @staticmethod
    def classify(
        args: Sequence[str],
        result: CommandResult,
        *,
        token: Optional[str] = None,
    ) -> CommandFailedError:
        """Map a failed result to the matching exception (not raised)."""
        stderr = redact(result.stderr, [token])
        stdout = redact(result.stdout, [token])
        subcommand = _subcommand(args)
        lowered = stderr.lower()

        if subcommand in NETWORK_COMMANDS:
            if result.timed_out:
                error = RemoteRejectedError(args, result.exit_code, stderr or "timed out", stdout)
                error.timed_out = True
                return error
            if subcommand == "push" and any(t in lowered for t in _PUSH_REJECTED_TOKENS):
                return PushRejectedError(args, result.exit_code, stderr, stdout)
            if any(t in lowered for t in _REMOTE_FAILURE_TOKENS):
                return RemoteRejectedError(args, result.exit_code, stderr, stdout)
        return CommandFailedError(args, result.exit_code, stderr, stdout)
