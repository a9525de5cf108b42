"""Repository state queries.

All of these are read-only and run without the repository lease. Callers
that mutate re-query immediately before acting, never trusting an earlier
snapshot.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .invoker import CommandInvoker
from .models import FileState, FileStatusEntry, StatusSnapshot

STATUS_ARGS = ["status", "--porcelain=v2", "--branch", "-z"]

_CODE_STATES: Dict[str, FileState] = {
    "A": FileState.ADDED,
    "M": FileState.MODIFIED,
    "D": FileState.DELETED,
    "R": FileState.RENAMED,
    "C": FileState.ADDED,
    "T": FileState.MODIFIED,
}

# Marker inside the git dir -> operation name
_IN_PROGRESS_MARKERS = (
    ("rebase-merge", "rebase"),
    ("rebase-apply", "rebase"),
    ("MERGE_HEAD", "merge"),
    ("CHERRY_PICK_HEAD", "cherry-pick"),
    ("REVERT_HEAD", "revert"),
)


def _entries_for(path: str, xy: str, old_path: Optional[str] = None) -> List[FileStatusEntry]:
    index_code, worktree_code = xy[0], xy[1]
    entries = []
    if index_code in _CODE_STATES:
        state = _CODE_STATES[index_code]
        entries.append(
            FileStatusEntry(
                path=path,
                status=state,
                staged=True,
                old_path=old_path if index_code in ("R", "C") else None,
            )
        )
    if worktree_code in _CODE_STATES:
        entries.append(FileStatusEntry(path=path, status=_CODE_STATES[worktree_code], staged=False))
    return entries


def parse_porcelain_v2(output: str) -> StatusSnapshot:
    """Parse ``git status --porcelain=v2 --branch -z`` output."""
    snapshot = StatusSnapshot(branch=None, head_oid=None)
    records = output.split("\0")
    i = 0
    while i < len(records):
        record = records[i]
        i += 1
        if not record:
            continue
        if record.startswith("# "):
            key, _, value = record[2:].partition(" ")
            if key == "branch.oid":
                snapshot.head_oid = None if value == "(initial)" else value
            elif key == "branch.head":
                snapshot.branch = None if value == "(detached)" else value
            elif key == "branch.upstream":
                snapshot.upstream = value
            elif key == "branch.ab":
                ahead, _, behind = value.partition(" ")
                snapshot.ahead = abs(int(ahead))
                snapshot.behind = abs(int(behind))
            continue

        kind = record[0]
        if kind == "1":
            parts = record.split(" ", 8)
            snapshot.files.extend(_entries_for(parts[8], parts[1]))
        elif kind == "2":
            parts = record.split(" ", 9)
            # the original path follows as its own NUL-terminated record
            old_path = records[i] if i < len(records) else None
            i += 1
            snapshot.files.extend(_entries_for(parts[9], parts[1], old_path))
        elif kind == "u":
            parts = record.split(" ", 10)
            snapshot.files.append(
                FileStatusEntry(path=parts[10], status=FileState.CONFLICT, staged=False)
            )
        elif kind == "?":
            snapshot.files.append(
                FileStatusEntry(path=record[2:], status=FileState.UNTRACKED, staged=False)
            )
        # "!" (ignored) entries are never reported
    return snapshot


class StatusTracker:
    def __init__(self, invoker: CommandInvoker):
        self.invoker = invoker

    def refresh(self, path: str) -> StatusSnapshot:
        result = self.invoker.run(path, STATUS_ARGS)
        return parse_porcelain_v2(result.stdout)

    def git_dir(self, path: str) -> Path:
        result = self.invoker.run(path, ["rev-parse", "--absolute-git-dir"])
        return Path(result.stdout.strip())

    def operation_in_progress(self, path: str) -> Optional[str]:
        """Name of the interrupted git operation (rebase, merge, ...) or None."""
        git_dir = self.git_dir(path)
        for marker, name in _IN_PROGRESS_MARKERS:
            if (git_dir / marker).exists():
                return name
        return None

    def head_oid(self, path: str) -> Optional[str]:
        result = self.invoker.run(path, ["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        return result.stdout.strip() if result.ok and result.stdout.strip() else None

    def upstream_of(self, path: str, branch: str) -> Optional[Tuple[str, str]]:
        """Return ``(remote, remote_branch)`` tracked by ``branch``, if any."""
        remote = self.invoker.run(path, ["config", "--get", f"branch.{branch}.remote"], check=False)
        merge = self.invoker.run(path, ["config", "--get", f"branch.{branch}.merge"], check=False)
        if not (remote.ok and merge.ok):
            return None
        remote_name = remote.stdout.strip()
        merge_ref = merge.stdout.strip()
        if not remote_name or not merge_ref:
            return None
        prefix = "refs/heads/"
        remote_branch = merge_ref[len(prefix):] if merge_ref.startswith(prefix) else merge_ref
        return remote_name, remote_branch

    def remote_url(self, path: str, remote: str) -> Optional[str]:
        result = self.invoker.run(path, ["remote", "get-url", remote], check=False)
        return result.stdout.strip() if result.ok else None

    def conflicted_paths(self, path: str) -> List[str]:
        seen: List[str] = []
        for name in self.refresh(path).conflicts:
            if name not in seen:
                seen.append(name)
        return seen

    def stash_list(self, path: str) -> List[str]:
        result = self.invoker.run(path, ["stash", "list", "--format=%gd"])
        return [line for line in result.stdout.splitlines() if line.strip()]
