from __future__ import annotations

import getpass
import os
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, Dict, Iterator, Optional

from .errors import BusyError
from .models import normalize_repo_path
from .observability import log_debug, log_warning

LOCK_FILE_NAME = "gitflow-engine.lock"


class AdvisoryLock:
    """File-based advisory lock with TTL and timeout.

    Guards a repository against a second engine process. The lock file holds
    ``pid=... time=... user=... cwd=...`` so a stuck holder can be identified.

    Environment variables (optional):
    - GITFLOW_LOCK_POLL: polling interval in seconds while waiting
    """

    def __init__(self, path: Path, *, ttl: float = 600, timeout: float | None = None):
        self.path = Path(path)
        self.ttl = ttl
        self.poll = float(os.getenv("GITFLOW_LOCK_POLL", "0.05"))
        self.timeout = timeout
        self.acquired = False

    def _is_stale(self) -> bool:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return False
        return (time.time() - mtime) > self.ttl

    def _write_metadata(self) -> None:
        try:
            user = getpass.getuser()
        except Exception:
            user = "unknown"
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        self.path.write_text(
            f"pid={os.getpid()} time={timestamp} user={user} cwd={os.getcwd()}\n",
            encoding="utf-8",
        )

    def get_lock_info(self) -> dict | None:
        """Return the holder's metadata (pid, time, user, cwd) or None."""
        try:
            content = self.path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        info: dict = {}
        for part in content.split():
            if "=" in part:
                key, value = part.split("=", 1)
                info[key] = value
        if "pid" in info:
            try:
                info["pid"] = int(info["pid"])
            except ValueError:
                pass
        return info or None

    def acquire(self) -> bool:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
                os.close(fd)
                self._write_metadata()
                self.acquired = True
                return True
            except FileExistsError:
                # ttl <= 0 means never stale
                if self.ttl > 0 and self._is_stale():
                    log_warning("Breaking stale engine lock", path=str(self.path), holder=self.get_lock_info())
                    try:
                        self.path.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                if self.timeout is not None and (time.monotonic() - start) >= self.timeout:
                    return False
                time.sleep(self.poll)

    def release(self) -> None:
        if self.acquired:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise TimeoutError("Failed to acquire lock within timeout")
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


def resolve_git_dir(repo_path: str | os.PathLike) -> Optional[Path]:
    """Locate the git directory of a working tree.

    Handles linked worktrees and submodules, where ``.git`` is a file
    containing ``gitdir: <path>``.
    """
    dot_git = Path(repo_path) / ".git"
    if dot_git.is_dir():
        return dot_git
    if dot_git.is_file():
        try:
            content = dot_git.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        if content.startswith("gitdir:"):
            target = Path(content[len("gitdir:"):].strip())
            if not target.is_absolute():
                target = (Path(repo_path) / target).resolve()
            return target if target.is_dir() else None
    return None


@dataclass
class RepoLease:
    """A held per-repository slot. Release it exactly once."""

    key: str
    acquired_at: float = field(default_factory=time.monotonic)
    file_lock: Optional[AdvisoryLock] = None
    released: bool = False


class _Slot:
    def __init__(self) -> None:
        self.cond = threading.Condition()
        self.waiters: Deque[object] = deque()
        self.held = False


class RepoMutex:
    """Exclusive lease per normalized repository path.

    Waiters on the same path are served in request order. A request that
    cannot be served within ``wait_seconds`` raises :class:`BusyError`; the
    default of 0 fails fast. Distinct paths never contend.
    """

    def __init__(
        self,
        *,
        wait_seconds: float = 0.0,
        ttl_seconds: float = 600,
        use_file_lock: bool = True,
    ):
        self.wait_seconds = wait_seconds
        self.ttl_seconds = ttl_seconds
        self.use_file_lock = use_file_lock
        self._slots: Dict[str, _Slot] = {}
        self._registry_lock = threading.Lock()

    def _enqueue(self, key: str, ticket: object) -> _Slot:
        with self._registry_lock:
            slot = self._slots.get(key)
            if slot is None:
                slot = self._slots[key] = _Slot()
            with slot.cond:
                slot.waiters.append(ticket)
            return slot

    def is_held(self, path: str | os.PathLike) -> bool:
        slot = self._slots.get(normalize_repo_path(path))
        return bool(slot and slot.held)

    def acquire(self, path: str | os.PathLike, *, wait: Optional[float] = None) -> RepoLease:
        key = normalize_repo_path(path)
        wait = max(self.wait_seconds if wait is None else wait, 0.0)
        deadline = time.monotonic() + wait
        ticket = object()
        slot = self._enqueue(key, ticket)

        with slot.cond:
            granted = slot.cond.wait_for(
                lambda: not slot.held and slot.waiters[0] is ticket,
                timeout=wait,
            )
            slot.waiters.remove(ticket)
            if granted:
                slot.held = True
            else:
                # the next waiter may now be at the head of the queue
                slot.cond.notify_all()
        if not granted:
            self._discard_if_idle(key, slot)
            raise BusyError(key)

        lease = RepoLease(key=key)
        try:
            if self.use_file_lock:
                git_dir = resolve_git_dir(key)
                if git_dir is not None:
                    file_lock = AdvisoryLock(
                        git_dir / LOCK_FILE_NAME,
                        ttl=self.ttl_seconds,
                        timeout=max(deadline - time.monotonic(), 0.0),
                    )
                    if not file_lock.acquire():
                        raise BusyError(key, file_lock.get_lock_info())
                    lease.file_lock = file_lock
        except BaseException:
            self._free(key, slot)
            raise

        log_debug("LEASE_ACQUIRED", repo=key)
        return lease

    def release(self, lease: RepoLease) -> None:
        if lease.released:
            return
        lease.released = True
        if lease.file_lock is not None:
            lease.file_lock.release()
        slot = self._slots.get(lease.key)
        if slot is not None:
            self._free(lease.key, slot)
        log_debug(
            "LEASE_RELEASED",
            repo=lease.key,
            held_ms=round((time.monotonic() - lease.acquired_at) * 1000.0, 2),
        )

    def _free(self, key: str, slot: _Slot) -> None:
        with slot.cond:
            slot.held = False
            slot.cond.notify_all()
        self._discard_if_idle(key, slot)

    def _discard_if_idle(self, key: str, slot: _Slot) -> None:
        # registry before slot, same order as _enqueue
        with self._registry_lock:
            with slot.cond:
                if not slot.held and not slot.waiters and self._slots.get(key) is slot:
                    del self._slots[key]

    @contextmanager
    def hold(self, path: str | os.PathLike, *, wait: Optional[float] = None) -> Iterator[RepoLease]:
        lease = self.acquire(path, wait=wait)
        try:
            yield lease
        finally:
            self.release(lease)
