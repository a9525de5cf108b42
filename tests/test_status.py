from __future__ import annotations

from pathlib import Path

from gitflow.invoker import CommandInvoker
from gitflow.models import FileState
from gitflow.runner import GitCommandRunner
from gitflow.status import StatusTracker, parse_porcelain_v2


def _tracker() -> StatusTracker:
    return StatusTracker(CommandInvoker(GitCommandRunner()))


def test_parse_branch_headers():
    output = (
        "# branch.oid 1234567890abcdef1234567890abcdef12345678\0"
        "# branch.head main\0"
        "# branch.upstream origin/main\0"
        "# branch.ab +2 -3\0"
    )
    snap = parse_porcelain_v2(output)
    assert snap.branch == "main"
    assert snap.head_oid.startswith("1234567")
    assert snap.upstream == "origin/main"
    assert (snap.ahead, snap.behind) == (2, 3)
    assert snap.dirty is False


def test_parse_initial_and_detached():
    snap = parse_porcelain_v2("# branch.oid (initial)\0# branch.head (detached)\0")
    assert snap.head_oid is None
    assert snap.branch is None
    assert snap.is_detached


def test_parse_partially_staged_file_yields_two_entries():
    output = (
        "# branch.oid abc\0# branch.head main\0"
        "1 MM N... 100644 100644 100644 aaa bbb file with spaces.txt\0"
    )
    snap = parse_porcelain_v2(output)
    assert [(f.path, f.status, f.staged) for f in snap.files] == [
        ("file with spaces.txt", FileState.MODIFIED, True),
        ("file with spaces.txt", FileState.MODIFIED, False),
    ]


def test_parse_rename_copy_conflict_untracked():
    output = (
        "# branch.oid abc\0# branch.head main\0"
        "2 R. N... 100644 100644 100644 aaa aaa R100 new.txt\0old.txt\0"
        "2 C. N... 100644 100644 100644 aaa aaa C75 copy.txt\0src.txt\0"
        "1 .T N... 100644 100644 120000 aaa aaa link\0"
        "u UU N... 100644 100644 100644 100644 a b c both.txt\0"
        "? notes.md\0"
        "! build/\0"
    )
    snap = parse_porcelain_v2(output)
    by_path = {f.path: f for f in snap.files}
    assert by_path["new.txt"].status == FileState.RENAMED
    assert by_path["new.txt"].old_path == "old.txt"
    assert by_path["copy.txt"].status == FileState.ADDED
    assert by_path["link"].status == FileState.MODIFIED and not by_path["link"].staged
    assert by_path["both.txt"].status == FileState.CONFLICT
    assert by_path["notes.md"].status == FileState.UNTRACKED
    assert "build/" not in by_path
    assert snap.conflicts == ["both.txt"]
    assert [f.path for f in snap.staged] == ["new.txt", "copy.txt"]


def test_refresh_real_repository(clone):
    repo = clone()
    root = Path(repo.working_tree_dir)
    (root / "a.txt").write_text("changed\n")
    (root / "new.txt").write_text("new\n")
    repo.git.add("new.txt")
    (root / "untracked.txt").write_text("u\n")

    snap = _tracker().refresh(str(root))
    assert snap.branch == "main"
    assert snap.upstream == "origin/main"
    assert (snap.ahead, snap.behind) == (0, 0)
    states = {(f.path, f.status, f.staged) for f in snap.files}
    assert ("a.txt", FileState.MODIFIED, False) in states
    assert ("new.txt", FileState.ADDED, True) in states
    assert ("untracked.txt", FileState.UNTRACKED, False) in states
    assert snap.dirty and snap.has_tracked_changes


def test_clean_repo_is_not_dirty(clone):
    repo = clone()
    snap = _tracker().refresh(repo.working_tree_dir)
    assert snap.files == []
    assert snap.dirty is False
    assert snap.head_oid == repo.head.commit.hexsha


def test_upstream_of_and_operation_in_progress(clone):
    repo = clone()
    tracker = _tracker()
    assert tracker.upstream_of(repo.working_tree_dir, "main") == ("origin", "main")
    assert tracker.upstream_of(repo.working_tree_dir, "nope") is None
    assert tracker.operation_in_progress(repo.working_tree_dir) is None

    (Path(repo.git_dir) / "MERGE_HEAD").write_text(repo.head.commit.hexsha + "\n")
    assert tracker.operation_in_progress(repo.working_tree_dir) == "merge"


def test_stash_list(clone):
    repo = clone()
    tracker = _tracker()
    assert tracker.stash_list(repo.working_tree_dir) == []
    (Path(repo.working_tree_dir) / "a.txt").write_text("dirty\n")
    repo.git.stash("push")
    assert tracker.stash_list(repo.working_tree_dir) == ["stash@{0}"]
