from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path

import pytest
from git import Repo


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    os.environ.setdefault("PYTHONPATH", str(src))


@pytest.fixture(scope="session")
def anyio_backend():
    """AsyncEngine relies on asyncio.to_thread, so only run on asyncio."""
    return "asyncio"


@pytest.fixture(autouse=True)
def isolated_git_env(tmp_path_factory, monkeypatch):
    """Give every test its own HOME and a predictable git identity."""
    home = tmp_path_factory.mktemp("home")
    gitconfig = home / ".gitconfig"
    gitconfig.write_text(
        "[user]\n"
        "\tname = Test User\n"
        "\temail = test@example.com\n"
        "[init]\n"
        "\tdefaultBranch = main\n"
        "[advice]\n"
        "\tdetachedHead = false\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(gitconfig))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GITFLOW_LOG_DISABLE_FILE", "1")
    for name in list(os.environ):
        if name.startswith("GITFLOW_TOKEN_") or name in ("GITFLOW_ACCOUNT", "GITFLOW_LOCK_WAIT"):
            monkeypatch.delenv(name, raising=False)
    yield home


def seed_remote(remote_path: Path, files: dict[str, str] | None = None) -> Path:
    """Create a bare remote whose main branch holds ``files``."""
    remote_path.mkdir(parents=True, exist_ok=True)
    bare = Repo.init(remote_path, bare=True)
    workdir = remote_path.parent / f"{remote_path.name}-seed"
    repo = Repo.init(workdir)
    for name, content in (files or {"README.md": "seed\n"}).items():
        (workdir / name).write_text(content)
        repo.git.add(name)
    repo.git.commit("-m", "seed")
    repo.git.branch("-M", "main")
    repo.create_remote("origin", remote_path.as_posix())
    repo.git.push("origin", "main:main")
    bare.git.symbolic_ref("HEAD", "refs/heads/main")
    shutil.rmtree(workdir)
    return remote_path


def _commit_file(repo: Repo, name: str, content: str, message: str | None = None) -> str:
    path = Path(repo.working_tree_dir) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    repo.git.add(name)
    repo.git.commit("-m", message or f"update {name}")
    return repo.head.commit.hexsha


@pytest.fixture
def commit_file():
    """Write, stage and commit one file; returns the new HEAD sha."""
    return _commit_file


@pytest.fixture
def remote(tmp_path) -> Path:
    return seed_remote(
        tmp_path / "remote.git",
        {"README.md": "seed\n", "a.txt": "line1\nline2\nline3\n"},
    )


@pytest.fixture
def clone(tmp_path, remote):
    """Factory: ``clone("name")`` returns a Repo cloned from the shared remote."""

    def _clone(name: str = "work") -> Repo:
        return Repo.clone_from(remote.as_posix(), tmp_path / name)

    return _clone


@pytest.fixture
def engine():
    from gitflow.activity import MemoryActivitySink
    from gitflow.config_schema import GitflowConfig
    from gitflow.credentials import StaticTokenProvider
    from gitflow.engine import Engine

    config = GitflowConfig.model_validate(
        {
            "accounts": {"default_account": "me"},
            "engine": {"index_lock_retry_delay": 0.01},
        }
    )
    return Engine(
        config=config,
        token_provider=StaticTokenProvider({"me": "tok-secret-123"}),
        activity=MemoryActivitySink(),
    )
