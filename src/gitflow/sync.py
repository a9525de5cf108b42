"""Pull-rebase-push protocol.

A sync either integrates the upstream and publishes local commits, or it
leaves HEAD, the index and the working tree exactly as it found them.
Uncommitted tracked changes are carried across the rebase in an
engine-managed stash; if they collide with the incoming commits the whole
attempt is rolled back and the colliding paths are reported.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Tuple

from .errors import (
    AuthMissingError,
    CommandFailedError,
    ConflictError,
    PreconditionError,
    PushRejectedError,
    StepFailedError,
)
from .invoker import CommandInvoker, validate_ref_name
from .models import SyncResult
from .observability import log_debug, log_warning
from .runner import CommandResult
from .status import StatusTracker

_DIRTY_REFUSALS = (
    "unstaged changes",
    "uncommitted changes",
    "your local changes",
    "please commit or stash",
)


def _iso_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def ahead_behind(invoker: CommandInvoker, path: str, tracking_ref: str) -> Tuple[int, int]:
    """Commits HEAD is ahead of / behind ``tracking_ref``."""
    result = invoker.run(path, ["rev-list", "--left-right", "--count", f"HEAD...{tracking_ref}"])
    ahead, _, behind = result.stdout.strip().partition("\t")
    return int(ahead or 0), int(behind or 0)


def ref_exists(invoker: CommandInvoker, path: str, ref: str) -> bool:
    result = invoker.run(path, ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False)
    return result.ok


def push_current_branch(
    invoker: CommandInvoker,
    tracker: StatusTracker,
    path: str,
    token: Optional[str],
    *,
    branch: str,
    default_remote: str = "origin",
    force_with_lease: bool = False,
) -> dict:
    """Push ``branch`` to its upstream, creating one on ``default_remote`` if absent.

    Returns a dict naming the remote, remote branch and whether the
    upstream was newly set.
    """
    upstream = tracker.upstream_of(path, branch)
    if upstream is None:
        validate_ref_name(default_remote)
        validate_ref_name(branch)
        invoker.run(path, ["push", "-u", default_remote, branch], token=token)
        return {"remote": default_remote, "branch": branch, "set_upstream": True}

    remote, remote_branch = upstream
    validate_ref_name(remote)
    validate_ref_name(remote_branch)
    args = ["push"]
    if force_with_lease:
        args.append("--force-with-lease")
    args += [remote, f"HEAD:refs/heads/{remote_branch}"]
    invoker.run(path, args, token=token)
    return {"remote": remote, "branch": remote_branch, "set_upstream": False}


class SyncOrchestrator:
    """Runs :meth:`sync` for one repository at a time (the caller holds the lease)."""

    def __init__(
        self,
        invoker: CommandInvoker,
        tracker: StatusTracker,
        *,
        retries: int = 1,
        autostash: bool = True,
    ):
        self.invoker = invoker
        self.tracker = tracker
        self.retries = retries
        self.autostash = autostash

    def sync(self, path: str, token: Optional[str]) -> SyncResult:
        """Fetch, rebase onto the upstream, then push local commits.

        Returns a :class:`SyncResult`; conflicts are reported in it after the
        repository has been restored.

        Raises:
            AuthMissingError: no token was supplied
            PreconditionError: detached HEAD, no upstream, interrupted operation
            StepFailedError: fetch, rebase or push failed (``cause`` holds the
                typed failure, ``value`` the partial SyncResult)
        """
        if not token:
            raise AuthMissingError()

        pre_sync_head = self.tracker.head_oid(path)
        pulled = False
        for attempt in range(self.retries + 1):
            branch, remote, remote_branch = self._preconditions(path)
            tracking_ref = f"refs/remotes/{remote}/{remote_branch}"
            try:
                pulled = self._pull(path, token, remote, tracking_ref) or pulled
            except ConflictError as exc:
                # a retry may have rebased already; undo that too
                self._rollback_to(path, pre_sync_head)
                return SyncResult(success=False, pulled=False, conflicts=exc.paths)
            except CommandFailedError as exc:
                raise StepFailedError(exc, SyncResult(success=False, pulled=pulled, error=str(exc)))

            try:
                pushed = self._push_if_ahead(path, token, branch, tracking_ref)
            except PushRejectedError as exc:
                if attempt < self.retries:
                    log_warning("Push rejected as non-fast-forward; retrying sync", repo=path, attempt=attempt + 1)
                    continue
                raise StepFailedError(exc, SyncResult(success=False, pulled=pulled, error=str(exc)))
            except CommandFailedError as exc:
                raise StepFailedError(exc, SyncResult(success=False, pulled=pulled, error=str(exc)))
            return SyncResult(success=True, pulled=pulled, pushed=pushed)

        # unreachable: the final attempt either returns or raises
        raise AssertionError("sync retry loop exited without a result")

    def _rollback_to(self, path: str, head: Optional[str]) -> None:
        if head is None or self.tracker.head_oid(path) == head:
            return
        log_warning("Sync retry hit conflicts; restoring pre-sync HEAD", repo=path, head=head)
        stash_oid = None
        if self.tracker.refresh(path).has_tracked_changes:
            stash_oid = self._autostash(path)
        self.invoker.run(path, ["reset", "--hard", head], retry_index_lock=True)
        if stash_oid:
            self._restore_stash(path, stash_oid)

    def _preconditions(self, path: str) -> Tuple[str, str, str]:
        snapshot = self.tracker.refresh(path)
        if snapshot.is_detached:
            raise PreconditionError("detached HEAD")
        upstream = self.tracker.upstream_of(path, snapshot.branch)
        if upstream is None:
            raise PreconditionError("no upstream configured")
        operation = self.tracker.operation_in_progress(path)
        if operation:
            raise PreconditionError(f"{operation} in progress")
        if snapshot.head_oid is None:
            raise PreconditionError("branch has no commits")
        if snapshot.conflicts:
            raise PreconditionError("unresolved conflicts in working tree")
        remote, remote_branch = upstream
        validate_ref_name(remote)
        return snapshot.branch, remote, remote_branch

    def _pull(self, path: str, token: str, remote: str, tracking_ref: str) -> bool:
        self.invoker.run(path, ["fetch", remote], token=token)
        if not ref_exists(self.invoker, path, tracking_ref):
            # upstream branch not published yet
            return False
        _, behind = ahead_behind(self.invoker, path, tracking_ref)
        if behind == 0:
            return False

        pre_head = self.tracker.head_oid(path)
        stash_oid = None
        if self.tracker.refresh(path).has_tracked_changes:
            if not self.autostash:
                raise PreconditionError("uncommitted changes block rebase")
            stash_oid = self._autostash(path)

        rebase = self.invoker.run(path, ["rebase", tracking_ref], check=False)
        if not rebase.ok:
            self._recover_failed_rebase(path, stash_oid, rebase)

        if stash_oid:
            self._reapply_autostash(path, pre_head, stash_oid)
        log_debug("SYNC_PULLED", repo=path, behind=behind)
        return True

    def _autostash(self, path: str) -> Optional[str]:
        before = self._top_stash(path)
        self.invoker.run(
            path,
            ["stash", "push", "-m", f"gitflow sync autostash {_iso_now()}"],
            retry_index_lock=True,
        )
        after = self._top_stash(path)
        return after if after and after != before else None

    def _top_stash(self, path: str) -> Optional[str]:
        result = self.invoker.run(path, ["rev-parse", "--verify", "--quiet", "refs/stash"], check=False)
        return result.stdout.strip() if result.ok else None

    def _stash_ref(self, path: str, oid: str) -> Optional[str]:
        result = self.invoker.run(path, ["stash", "list", "--format=%gd %H"])
        for line in result.stdout.splitlines():
            ref, _, commit = line.strip().partition(" ")
            if commit == oid:
                return ref
        return None

    def _restore_stash(self, path: str, oid: str) -> None:
        self.invoker.run(path, ["stash", "apply", "--index", oid], retry_index_lock=True)
        self._drop_stash(path, oid)

    def _drop_stash(self, path: str, oid: str) -> None:
        ref = self._stash_ref(path, oid)
        if ref:
            self.invoker.run(path, ["stash", "drop", ref])

    def _recover_failed_rebase(self, path: str, stash_oid: Optional[str], rebase: CommandResult) -> None:
        conflicts: List[str] = []
        if self.tracker.operation_in_progress(path) == "rebase":
            conflicts = self.tracker.conflicted_paths(path)
            self.invoker.run(path, ["rebase", "--abort"])
        if stash_oid:
            self._restore_stash(path, stash_oid)

        if conflicts:
            raise ConflictError(conflicts, "Rebase conflicts")
        lowered = rebase.stderr.lower()
        if any(token in lowered for token in _DIRTY_REFUSALS):
            raise PreconditionError("uncommitted changes block rebase")
        if "would be overwritten" in lowered:
            raise PreconditionError("untracked files would be overwritten by rebase")
        raise self.invoker.classify(["rebase"], rebase)

    def _reapply_autostash(self, path: str, pre_head: str, stash_oid: str) -> None:
        applied = self.invoker.run(path, ["stash", "apply", "--index", stash_oid], check=False)
        if applied.ok:
            self._drop_stash(path, stash_oid)
            return

        conflicts = self.tracker.conflicted_paths(path)
        if not conflicts:
            ours = self.invoker.run(path, ["diff", "--name-only", pre_head, stash_oid])
            theirs = self.invoker.run(path, ["diff", "--name-only", pre_head, "HEAD"])
            incoming = set(theirs.stdout.split("\n"))
            conflicts = [p for p in ours.stdout.split("\n") if p and p in incoming]

        # roll back to the pre-sync state; the stash's base is pre_head so this applies cleanly
        log_warning("Uncommitted changes collide with upstream; rolling back sync", repo=path, paths=conflicts)
        self.invoker.run(path, ["reset", "--hard", pre_head], retry_index_lock=True)
        self._restore_stash(path, stash_oid)
        if conflicts:
            raise ConflictError(conflicts, "Uncommitted changes conflict with upstream")
        raise self.invoker.classify(["stash", "apply"], applied)

    def _push_if_ahead(self, path: str, token: str, branch: str, tracking_ref: str) -> bool:
        if ref_exists(self.invoker, path, tracking_ref):
            ahead, _ = ahead_behind(self.invoker, path, tracking_ref)
            if ahead == 0:
                return False
        push_current_branch(self.invoker, self.tracker, path, token, branch=branch)
        return True
