"""Command Runner: executes one git invocation and reports its result.

The default implementation drives the installed ``git`` through GitPython.
Credentials travel only through the child environment; argument lists never
contain a token.
"""

from __future__ import annotations

import os
import stat
import sys
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol, Sequence

from git import Git
from git.exc import GitCommandError, GitCommandNotFound

TOKEN_ENV = "GITFLOW_ASKPASS_TOKEN"
TIMEOUT_EXIT_CODE = -9

_ASKPASS_POSIX = """#!/bin/sh
case "$1" in
  Username*) echo x-access-token ;;
  *) printf '%s\\n' "$GITFLOW_ASKPASS_TOKEN" ;;
esac
"""

_ASKPASS_WINDOWS = """@echo off
echo %~1 | findstr /B /C:"Username" >nul
if %errorlevel%==0 (echo x-access-token) else (echo %GITFLOW_ASKPASS_TOKEN%)
"""

_askpass_lock = threading.Lock()
_askpass_path: Optional[Path] = None


@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner(Protocol):
    """Anything that can run ``git <args>`` inside a repository."""

    def run(
        self,
        repo_path: str,
        args: Sequence[str],
        *,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        ...


def askpass_helper() -> Path:
    """Return the path of the shared askpass helper, creating it once.

    The helper answers git's username prompt with ``x-access-token`` and its
    password prompt with ``$GITFLOW_ASKPASS_TOKEN``. It never contains a
    credential itself.
    """
    global _askpass_path
    with _askpass_lock:
        if _askpass_path is not None and _askpass_path.exists():
            return _askpass_path
        directory = Path(tempfile.mkdtemp(prefix="gitflow-askpass-"))
        if sys.platform == "win32":
            helper = directory / "askpass.cmd"
            helper.write_text(_ASKPASS_WINDOWS, encoding="utf-8")
        else:
            helper = directory / "askpass.sh"
            helper.write_text(_ASKPASS_POSIX, encoding="utf-8")
            helper.chmod(stat.S_IRWXU)
        _askpass_path = helper
        return helper


class GitCommandRunner:
    """GitPython-backed runner.

    Every call runs non-interactively (``GIT_TERMINAL_PROMPT=0``). When a token
    is supplied it is exposed to git through ``GIT_ASKPASS`` and stored
    credential helpers are switched off for that call, so the token is the only
    credential git can use.
    """

    def __init__(
        self,
        *,
        author_name: Optional[str] = None,
        author_email: Optional[str] = None,
        extra_env: Optional[Mapping[str, str]] = None,
    ):
        self.author_name = author_name
        self.author_email = author_email
        self.extra_env = dict(extra_env or {})

    def _env(self, token: Optional[str]) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.extra_env)
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GCM_INTERACTIVE", "never")
        env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
        if self.author_name:
            env["GIT_AUTHOR_NAME"] = env["GIT_COMMITTER_NAME"] = self.author_name
        if self.author_email:
            env["GIT_AUTHOR_EMAIL"] = env["GIT_COMMITTER_EMAIL"] = self.author_email
        env.pop(TOKEN_ENV, None)
        if token:
            env[TOKEN_ENV] = token
            env["GIT_ASKPASS"] = str(askpass_helper())
            # An empty credential.helper value resets the helper list
            env["GIT_CONFIG_COUNT"] = "1"
            env["GIT_CONFIG_KEY_0"] = "credential.helper"
            env["GIT_CONFIG_VALUE_0"] = ""
        return env

    def run(
        self,
        repo_path: str,
        args: Sequence[str],
        *,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        command = ["git", *args]
        try:
            status, stdout, stderr = Git(str(repo_path)).execute(
                command,
                with_extended_output=True,
                with_exceptions=False,
                kill_after_timeout=timeout,
                env=self._env(token),
            )
        except GitCommandNotFound as exc:
            return CommandResult(exit_code=127, stderr=str(exc))
        except GitCommandError as exc:
            # Raised by GitPython itself (e.g. when a timeout kill fires)
            message = str(exc.stderr or exc)
            timed_out = "timeout" in message.lower()
            code = TIMEOUT_EXIT_CODE if timed_out else (exc.status if isinstance(exc.status, int) else 1)
            return CommandResult(exit_code=code, stderr=message, timed_out=timed_out)

        stdout = stdout if isinstance(stdout, str) else stdout.decode("utf-8", "replace")
        stderr = stderr if isinstance(stderr, str) else stderr.decode("utf-8", "replace")
        timed_out = timeout is not None and stderr.startswith("Timeout:")
        if timed_out and status == 0:
            status = TIMEOUT_EXIT_CODE
        return CommandResult(exit_code=status, stdout=stdout, stderr=stderr, timed_out=timed_out)
