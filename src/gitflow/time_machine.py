"""Reflog-backed history browsing and point-in-time restore."""

from __future__ import annotations

import re
from typing import List, Optional

from .errors import PreconditionError
from .invoker import CommandInvoker
from .models import ReflogEntry
from .status import StatusTracker

FIELD_SEP = "\x1f"
RECORD_SEP = "\x1e"
REFLOG_FORMAT = "%H%x1f%h%x1f%gd%x1f%gs%x1e"

_SELECTOR_PATTERN = re.compile(r"^[A-Za-z0-9_./-]*@\{\d+\}$")
_HASH_PATTERN = re.compile(r"^[0-9a-fA-F]{7,40}$")
_ACTION_PATTERN = re.compile(r"^([\w-]+)(?:\s*\(.*?\))?:")
_DATE_PATTERN = re.compile(r"@\{(.+)\}$")


def is_valid_selector(selector: str) -> bool:
    if not selector or selector.startswith("-"):
        return False
    return bool(_SELECTOR_PATTERN.match(selector) or _HASH_PATTERN.match(selector))


def parse_reflog(output: str) -> List[ReflogEntry]:
    entries = []
    for record in (r.strip("\n") for r in output.split(RECORD_SEP)):
        if not record.strip():
            continue
        fields = record.split(FIELD_SEP)
        if len(fields) < 4:
            continue
        commit_hash, short_hash, dated_selector, reflog_subject = fields[:4]
        match = _ACTION_PATTERN.match(reflog_subject)
        if match:
            action = match.group(1)
            subject = reflog_subject[match.end():].strip()
        else:
            action = reflog_subject.split(" ", 1)[0] if reflog_subject else ""
            subject = reflog_subject
        date = _DATE_PATTERN.search(dated_selector)
        entries.append(
            ReflogEntry(
                selector=f"HEAD@{{{len(entries)}}}",
                commit_hash=commit_hash.strip(),
                short_hash=short_hash.strip(),
                action=action,
                subject=subject,
                timestamp=date.group(1) if date else None,
            )
        )
    return entries


class TimeMachine:
    def __init__(self, invoker: CommandInvoker, tracker: StatusTracker, *, default_limit: int = 100):
        self.invoker = invoker
        self.tracker = tracker
        self.default_limit = default_limit

    def list_history(self, path: str, limit: Optional[int] = None) -> List[ReflogEntry]:
        """Reflog entries for HEAD, newest first. Empty when HEAD has no commits yet."""
        limit = limit or self.default_limit
        # fails outside a repository
        self.tracker.git_dir(path)
        if self.tracker.head_oid(path) is None:
            return []
        result = self.invoker.run(
            path,
            [
                "reflog",
                "show",
                "--date=iso-strict",
                f"--format={REFLOG_FORMAT}",
                "-n",
                str(int(limit)),
                "HEAD",
            ],
        )
        return parse_reflog(result.stdout)

    def restore(self, path: str, selector: str, expected_hash: Optional[str] = None) -> dict:
        """Hard-reset HEAD to the commit ``selector`` names right now.

        Raises:
            PreconditionError: invalid or stale selector, or the selector no
                longer points at ``expected_hash``
        """
        if not is_valid_selector(selector):
            raise PreconditionError(f"invalid selector: {selector!r}")
        operation = self.tracker.operation_in_progress(path)
        if operation:
            raise PreconditionError(f"{operation} in progress")

        resolved = self.invoker.run(
            path, ["rev-parse", "--verify", "--quiet", f"{selector}^{{commit}}"], check=False
        )
        commit = resolved.stdout.strip()
        if not resolved.ok or not commit:
            raise PreconditionError("selector no longer resolvable")
        if expected_hash and not commit.startswith(expected_hash.strip().lower()):
            raise PreconditionError(
                f"selector {selector} now points at {commit[:12]}, expected {expected_hash[:12]}"
            )

        previous = self.tracker.head_oid(path)
        self.invoker.run(path, ["reset", "--hard", commit], retry_index_lock=True)
        return {"selector": selector, "restored_commit": commit, "previous_head": previous}
