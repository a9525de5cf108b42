"""Local history edits with recoverability guarantees.

Each operation re-reads repository state, checks its preconditions, then
issues the minimal git sequence. The caller holds the repository lease for
the whole call.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from .errors import CommandFailedError, ConflictError, PreconditionError, StepFailedError
from .invoker import CommandInvoker
from .models import StatusSnapshot
from .observability import log_warning
from .status import StatusTracker
from .sync import push_current_branch

STASH_MESSAGE_PREFIX = "gitflow auto-stash"
DELETED_COMMIT_SELECTOR = "HEAD@{1}"


class SafeMutationOps:
    def __init__(
        self,
        invoker: CommandInvoker,
        tracker: StatusTracker,
        *,
        default_remote: str = "origin",
        stash_include_untracked: bool = False,
    ):
        self.invoker = invoker
        self.tracker = tracker
        self.default_remote = default_remote
        self.stash_include_untracked = stash_include_untracked

    # ------------------------------------------------------------------
    # Shared checks
    # ------------------------------------------------------------------

    def _snapshot(self, path: str) -> StatusSnapshot:
        """Fresh status, refusing to act in the middle of a rebase/merge/etc."""
        operation = self.tracker.operation_in_progress(path)
        if operation:
            raise PreconditionError(f"{operation} in progress")
        return self.tracker.refresh(path)

    def _require_branch(self, snapshot: StatusSnapshot) -> str:
        if snapshot.is_detached:
            raise PreconditionError("detached HEAD")
        if snapshot.head_oid is None:
            raise PreconditionError("branch has no commits")
        return snapshot.branch

    def _require_parent(self, path: str) -> None:
        parent = self.invoker.run(path, ["rev-parse", "--verify", "--quiet", "HEAD~1^{commit}"], check=False)
        if not parent.ok:
            raise PreconditionError("last commit has no parent")

    # ------------------------------------------------------------------
    # Stash
    # ------------------------------------------------------------------

    def stash(self, path: str) -> dict:
        snapshot = self._snapshot(path)
        if snapshot.conflicts:
            raise PreconditionError("unresolved conflicts in working tree")
        has_changes = snapshot.dirty if self.stash_include_untracked else snapshot.has_tracked_changes
        if not has_changes:
            raise PreconditionError("nothing to stash")

        message = f"{STASH_MESSAGE_PREFIX} {datetime.now(timezone.utc).isoformat()}"
        args = ["stash", "push", "-m", message]
        if self.stash_include_untracked:
            args.append("--include-untracked")
        result = self.invoker.run(path, args, retry_index_lock=True)
        if "No local changes to save" in result.stdout:
            raise PreconditionError("nothing to stash")
        return {"ref": "stash@{0}", "message": message}

    def pop_stash(self, path: str) -> dict:
        """Apply the newest stash (index included) and drop it.

        On conflicts the stash entry is kept so nothing is lost.
        """
        self._snapshot(path)
        if not self.tracker.stash_list(path):
            raise PreconditionError("no stash entries")
        ref = "stash@{0}"

        restored_index = True
        applied = self.invoker.run(path, ["stash", "apply", "--index", ref], check=False, retry_index_lock=True)
        if not applied.ok:
            self._raise_if_conflicted(path, ref)
            stderr = applied.stderr.lower()
            if "would be overwritten" in stderr or "already exists" in stderr:
                raise PreconditionError("local changes would be overwritten by stash")
            if "conflicts in index" not in stderr and "--index" not in stderr:
                raise self.invoker.classify(["stash", "apply"], applied)
            # index state cannot be restored; apply the worktree changes only
            restored_index = False
            applied = self.invoker.run(path, ["stash", "apply", ref], check=False, retry_index_lock=True)
            if not applied.ok:
                self._raise_if_conflicted(path, ref)
                raise self.invoker.classify(["stash", "apply"], applied)

        self.invoker.run(path, ["stash", "drop", ref])
        return {"ref": ref, "restored_index": restored_index}

    def _raise_if_conflicted(self, path: str, ref: str) -> None:
        conflicts = self.tracker.conflicted_paths(path)
        if conflicts:
            log_warning("Stash apply conflicted; stash retained", repo=path, ref=ref, paths=conflicts)
            raise ConflictError(conflicts, f"Applying {ref} conflicted (stash retained)")

    # ------------------------------------------------------------------
    # Commit / push
    # ------------------------------------------------------------------

    def commit_and_push(self, path: str, message: str, token: Optional[str]) -> dict:
        if not message or not message.strip():
            raise PreconditionError("commit message is empty")
        snapshot = self._snapshot(path)
        if snapshot.is_detached:
            raise PreconditionError("detached HEAD")
        if snapshot.conflicts:
            raise PreconditionError("unresolved conflicts in working tree")
        if not snapshot.staged:
            raise PreconditionError("nothing staged to commit")

        self.invoker.run(path, ["commit", "-m", message], retry_index_lock=True)
        commit = self.tracker.head_oid(path)
        value = {"commit": commit, "committed": True, "pushed": False}
        try:
            value.update(self._push(path, token, snapshot.branch))
        except CommandFailedError as exc:
            raise StepFailedError(exc, value, "commit created locally but push failed")
        value["pushed"] = True
        return value

    def push_only(self, path: str, token: Optional[str]) -> dict:
        branch = self._require_branch(self._snapshot(path))
        value = self._push(path, token, branch)
        value["pushed"] = True
        return value

    def _push(self, path: str, token: Optional[str], branch: str, *, force_with_lease: bool = False) -> dict:
        return push_current_branch(
            self.invoker,
            self.tracker,
            path,
            token,
            branch=branch,
            default_remote=self.default_remote,
            force_with_lease=force_with_lease,
        )

    # ------------------------------------------------------------------
    # History edits
    # ------------------------------------------------------------------

    def undo_last_commit(self, path: str) -> dict:
        snapshot = self._snapshot(path)
        if snapshot.head_oid is None:
            raise PreconditionError("no commits to undo")
        self._require_parent(path)
        self.invoker.run(path, ["reset", "--soft", "HEAD~1"], retry_index_lock=True)
        return {"undone_commit": snapshot.head_oid, "head": self.tracker.head_oid(path)}

    def revert_last_commit(self, path: str) -> dict:
        snapshot = self._snapshot(path)
        if snapshot.head_oid is None:
            raise PreconditionError("no commits to revert")
        parents = self.invoker.run(path, ["rev-list", "--parents", "-n", "1", "HEAD"]).stdout.split()
        if len(parents) > 2:
            raise PreconditionError("cannot revert a merge commit")

        reverted = self.invoker.run(path, ["revert", "--no-edit", "HEAD"], check=False, retry_index_lock=True)
        if not reverted.ok:
            conflicts = []
            if self.tracker.operation_in_progress(path) == "revert":
                conflicts = self.tracker.conflicted_paths(path)
                self.invoker.run(path, ["revert", "--abort"])
            if conflicts:
                raise ConflictError(conflicts, "Revert conflicted and was aborted")
            if "would be overwritten" in reverted.stderr.lower():
                raise PreconditionError("uncommitted changes block revert")
            raise self.invoker.classify(["revert"], reverted)
        return {"reverted_commit": snapshot.head_oid, "commit": self.tracker.head_oid(path)}

    def delete_last_commit(self, path: str, token: Optional[str], confirm: bool = False) -> dict:
        """Discard the last commit locally and on the upstream.

        The discarded commit stays reachable as ``HEAD@{1}`` until the reflog
        expires.
        """
        if not confirm:
            raise PreconditionError("deleting the last commit requires confirmation")
        snapshot = self._snapshot(path)
        branch = self._require_branch(snapshot)
        self._require_parent(path)
        upstream = self.tracker.upstream_of(path, branch)

        discarded = snapshot.head_oid
        self.invoker.run(path, ["reset", "--hard", "HEAD~1"], retry_index_lock=True)
        value = {
            "discarded_commit": discarded,
            "selector": DELETED_COMMIT_SELECTOR,
            "head": self.tracker.head_oid(path),
            "pushed": False,
        }
        if upstream is None:
            return value

        try:
            value.update(self._push(path, token, branch, force_with_lease=True))
        except CommandFailedError as exc:
            log_warning("Force-push after delete failed; local reset kept", repo=path, discarded=discarded)
            raise StepFailedError(exc, value, "local reset was applied but the force-push failed")
        value["pushed"] = True
        return value
