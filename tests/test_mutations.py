from __future__ import annotations

from pathlib import Path

from git import Repo

from gitflow.activity import MemoryActivitySink
from gitflow.config_schema import GitflowConfig
from gitflow.credentials import StaticTokenProvider
from gitflow.engine import Engine
from gitflow.models import OutcomeKind
from gitflow.runner import GitCommandRunner


def _write(repo: Repo, name: str, content: str) -> Path:
    path = Path(repo.working_tree_dir) / name
    path.write_text(content)
    return path


def _remote_head(remote: Path) -> str:
    return Repo(remote).commit("main").hexsha


class RetargetingRunner(GitCommandRunner):
    """Reverts ``target`` whenever the engine asks git to revert HEAD."""

    def __init__(self, target: str):
        super().__init__()
        self.target = target

    def run(self, repo_path, args, *, token=None, timeout=None):
        if args and args[0] == "revert" and args[-1] == "HEAD":
            args = [*args[:-1], self.target]
        return super().run(repo_path, args, token=token, timeout=timeout)


class TestStash:
    def test_stash_then_pop_restores_tree_and_index(self, engine, clone):
        repo = clone()
        _write(repo, "a.txt", "staged\n")
        repo.git.add("a.txt")
        _write(repo, "README.md", "unstaged\n")
        before = repo.git.status("--porcelain")

        stashed = engine.stash(repo.working_tree_dir)
        assert stashed.ok
        assert stashed.value["ref"] == "stash@{0}"
        assert not repo.is_dirty()

        popped = engine.pop_stash(repo.working_tree_dir)
        assert popped.ok
        assert popped.value["restored_index"] is True
        assert repo.git.status("--porcelain") == before
        assert repo.git.stash("list") == ""

    def test_stash_on_clean_tree_is_refused(self, engine, clone):
        repo = clone()
        outcome = engine.stash(repo.working_tree_dir)
        assert outcome.kind == OutcomeKind.PRECONDITION
        assert outcome.reason == "nothing to stash"

    def test_pop_without_entries_is_refused(self, engine, clone):
        repo = clone()
        _write(repo, "a.txt", "x\n")
        assert engine.stash(repo.working_tree_dir).ok
        assert engine.pop_stash(repo.working_tree_dir).ok
        outcome = engine.pop_stash(repo.working_tree_dir)
        assert outcome.kind == OutcomeKind.PRECONDITION
        assert outcome.reason == "no stash entries"

    def test_conflicting_pop_keeps_the_stash(self, engine, clone, commit_file):
        repo = clone()
        _write(repo, "a.txt", "line1\nstashed\nline3\n")
        assert engine.stash(repo.working_tree_dir).ok
        commit_file(repo, "a.txt", "line1\ncommitted\nline3\n")

        outcome = engine.pop_stash(repo.working_tree_dir)
        assert outcome.kind == OutcomeKind.CONFLICT
        assert outcome.paths == ["a.txt"]
        assert len(repo.git.stash("list").splitlines()) == 1

    def test_pop_falls_back_when_index_cannot_be_restored(self, engine, clone, commit_file):
        repo = clone()
        commit_file(repo, "a.txt", "1\n2\n3\n4\n5\n6\n")
        _write(repo, "a.txt", "1\nstaged\n3\n4\n5\n6\n")
        repo.git.add("a.txt")
        assert engine.stash(repo.working_tree_dir).ok
        # the staged hunk no longer applies to the index, but merges into the tree
        commit_file(repo, "a.txt", "1\n2\n3\ncommitted\n5\n6\n")

        outcome = engine.pop_stash(repo.working_tree_dir)
        assert outcome.ok
        assert outcome.value["restored_index"] is False
        assert (Path(repo.working_tree_dir) / "a.txt").read_text() == "1\nstaged\n3\ncommitted\n5\n6\n"
        assert repo.git.diff("--cached") == ""
        assert repo.git.stash("list") == ""


class TestCommitAndPush:
    def test_commits_staged_changes_and_pushes(self, engine, clone, remote):
        repo = clone()
        parent = repo.head.commit.hexsha
        _write(repo, "a.txt", "changed\n")
        repo.git.add("a.txt")
        _write(repo, "README.md", "left unstaged\n")

        outcome = engine.commit_and_push(repo.working_tree_dir, "Change a")
        assert outcome.ok
        value = outcome.value
        assert value["committed"] and value["pushed"]
        assert value["commit"] == repo.head.commit.hexsha
        assert repo.head.commit.parents[0].hexsha == parent
        assert repo.head.commit.message.strip() == "Change a"
        assert _remote_head(remote) == value["commit"]
        # unstaged work is not swept into the commit
        assert repo.git.diff("--cached", "--name-only") == ""
        assert repo.is_dirty()

    def test_empty_message_is_refused(self, engine, clone):
        repo = clone()
        _write(repo, "a.txt", "changed\n")
        repo.git.add("a.txt")
        outcome = engine.commit_and_push(repo.working_tree_dir, "   ")
        assert outcome.kind == OutcomeKind.PRECONDITION
        assert outcome.reason == "commit message is empty"

    def test_nothing_staged_is_refused(self, engine, clone):
        repo = clone()
        _write(repo, "a.txt", "unstaged only\n")
        before = repo.head.commit.hexsha
        outcome = engine.commit_and_push(repo.working_tree_dir, "msg")
        assert outcome.kind == OutcomeKind.PRECONDITION
        assert outcome.reason == "nothing staged to commit"
        assert repo.head.commit.hexsha == before

    def test_rejected_push_keeps_local_commit(self, engine, clone, commit_file):
        mine, theirs = clone("mine"), clone("theirs")
        commit_file(theirs, "b.txt", "theirs\n")
        theirs.git.push("origin", "main")
        _write(mine, "c.txt", "mine\n")
        mine.git.add("c.txt")

        outcome = engine.commit_and_push(mine.working_tree_dir, "Add c")
        assert outcome.kind == OutcomeKind.REMOTE_REJECTED
        assert outcome.value["committed"] is True
        assert outcome.value["pushed"] is False
        assert outcome.value["commit"] == mine.head.commit.hexsha
        assert outcome.reason.startswith("commit created locally but push failed")

    def test_push_only_sets_upstream_for_new_branch(self, engine, clone, remote):
        repo = clone()
        repo.git.checkout("-b", "feature")
        _write(repo, "f.txt", "feature\n")
        repo.git.add("f.txt")
        repo.git.commit("-m", "feature work")

        outcome = engine.push_only(repo.working_tree_dir)
        assert outcome.ok
        assert outcome.value == {"remote": "origin", "branch": "feature", "set_upstream": True, "pushed": True}
        assert Repo(remote).commit("feature").hexsha == repo.head.commit.hexsha
        assert repo.git.config("--get", "branch.feature.merge") == "refs/heads/feature"


class TestHistoryEdits:
    def test_undo_keeps_changes_staged(self, engine, clone, commit_file, remote):
        repo = clone()
        parent = repo.head.commit.hexsha
        remote_before = _remote_head(remote)
        undone = commit_file(repo, "a.txt", "changed\n")

        outcome = engine.undo_last_commit(repo.working_tree_dir)
        assert outcome.ok
        assert outcome.value == {"undone_commit": undone, "head": parent}
        assert repo.head.commit.hexsha == parent
        assert repo.git.diff("--cached", "--name-only") == "a.txt"
        assert (Path(repo.working_tree_dir) / "a.txt").read_text() == "changed\n"
        assert _remote_head(remote) == remote_before

    def test_undo_root_commit_is_refused(self, engine, tmp_path):
        repo = Repo.init(tmp_path / "fresh")
        _write(repo, "x.txt", "x\n")
        repo.git.add("x.txt")
        repo.git.commit("-m", "root")
        outcome = engine.undo_last_commit(repo.working_tree_dir)
        assert outcome.kind == OutcomeKind.PRECONDITION
        assert outcome.reason == "last commit has no parent"

    def test_revert_adds_inverse_commit(self, engine, clone, commit_file):
        repo = clone()
        original = (Path(repo.working_tree_dir) / "a.txt").read_text()
        target = commit_file(repo, "a.txt", "changed\n")

        outcome = engine.revert_last_commit(repo.working_tree_dir)
        assert outcome.ok
        assert outcome.value["reverted_commit"] == target
        assert repo.head.commit.parents[0].hexsha == target
        assert (Path(repo.working_tree_dir) / "a.txt").read_text() == original

    def test_conflicting_revert_is_aborted(self, clone, commit_file):
        repo = clone()
        older = commit_file(repo, "a.txt", "line1\none\nline3\n")
        head = commit_file(repo, "a.txt", "line1\ntwo\nline3\n")
        engine = Engine(
            config=GitflowConfig.model_validate({"accounts": {"default_account": "me"}}),
            runner=RetargetingRunner(older),
            token_provider=StaticTokenProvider({"me": "tok"}),
            activity=MemoryActivitySink(),
        )

        outcome = engine.revert_last_commit(repo.working_tree_dir)
        assert outcome.kind == OutcomeKind.CONFLICT
        assert outcome.paths == ["a.txt"]
        assert repo.head.commit.hexsha == head
        assert not (Path(repo.git_dir) / "REVERT_HEAD").exists()
        assert not repo.is_dirty(untracked_files=True)
        assert (Path(repo.working_tree_dir) / "a.txt").read_text() == "line1\ntwo\nline3\n"

    def test_revert_merge_commit_is_refused(self, engine, clone, commit_file):
        repo = clone()
        repo.git.checkout("-b", "side")
        commit_file(repo, "side.txt", "side\n")
        repo.git.checkout("main")
        commit_file(repo, "main.txt", "main\n")
        repo.git.merge("--no-ff", "-m", "merge side", "side")
        head = repo.head.commit.hexsha

        outcome = engine.revert_last_commit(repo.working_tree_dir)
        assert outcome.kind == OutcomeKind.PRECONDITION
        assert "merge commit" in outcome.reason
        assert repo.head.commit.hexsha == head

    def test_delete_requires_confirmation(self, engine, clone, commit_file):
        repo = clone()
        head = commit_file(repo, "a.txt", "changed\n")
        outcome = engine.delete_last_commit(repo.working_tree_dir)
        assert outcome.kind == OutcomeKind.PRECONDITION
        assert repo.head.commit.hexsha == head

    def test_delete_force_pushes_and_is_recoverable(self, engine, clone, commit_file, remote):
        repo = clone()
        parent = repo.head.commit.hexsha
        discarded = commit_file(repo, "a.txt", "oops\n")
        repo.git.push("origin", "main")

        outcome = engine.delete_last_commit(repo.working_tree_dir, confirm=True)
        assert outcome.ok
        assert outcome.value["discarded_commit"] == discarded
        assert outcome.value["selector"] == "HEAD@{1}"
        assert outcome.value["pushed"] is True
        assert repo.head.commit.hexsha == parent
        assert _remote_head(remote) == parent

        restored = engine.restore(repo.working_tree_dir, "HEAD@{1}", expected_hash=discarded)
        assert restored.ok
        assert repo.head.commit.hexsha == discarded

    def test_delete_on_local_branch_only_resets(self, engine, clone, commit_file):
        repo = clone()
        repo.git.checkout("-b", "local-only")
        parent = repo.head.commit.hexsha
        commit_file(repo, "x.txt", "x\n")

        outcome = engine.delete_last_commit(repo.working_tree_dir, confirm=True)
        assert outcome.ok
        assert outcome.value["pushed"] is False
        assert repo.head.commit.hexsha == parent
