#!/usr/bin/env python3
"""gitflow CLI - run engine operations against a local repository."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from .models import OperationOutcome, ReflogEntry, StatusSnapshot, SyncResult


def _print_status(snapshot: StatusSnapshot) -> None:
    branch = snapshot.branch or "(detached)"
    line = f"On {branch}"
    if snapshot.upstream:
        line += f" tracking {snapshot.upstream} (ahead {snapshot.ahead}, behind {snapshot.behind})"
    print(line)
    if not snapshot.files:
        print("Working tree clean")
        return
    for entry in snapshot.files:
        marker = "staged" if entry.staged else "      "
        rename = f" (from {entry.old_path})" if entry.old_path else ""
        print(f"  {marker} {entry.status.value:<9} {entry.path}{rename}")


def _print_history(entries: list[ReflogEntry]) -> None:
    if not entries:
        print("No history")
        return
    for entry in entries:
        when = entry.timestamp or ""
        print(f"{entry.selector:<12} {entry.short_hash} {when:<25} {entry.action:<10} {entry.subject}")


def _print_outcome(outcome: OperationOutcome) -> None:
    value = outcome.value
    if outcome.ok:
        if isinstance(value, StatusSnapshot):
            _print_status(value)
        elif isinstance(value, list):
            _print_history(value)
        elif isinstance(value, SyncResult):
            print(f"✅ Synced (pulled: {value.pulled}, pushed: {value.pushed})")
        else:
            print(f"✅ {outcome.operation} succeeded")
            if isinstance(value, dict):
                for key, item in value.items():
                    print(f"- {key}: {item}")
        return

    print(f"❌ {outcome.operation} failed [{outcome.kind.value}]: {outcome.reason or ''}", file=sys.stderr)
    for path in outcome.paths:
        print(f"  conflict: {path}", file=sys.stderr)
    if outcome.stderr:
        print(outcome.stderr.rstrip(), file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="gitflow",
        description="Safe sync and history operations for local git repositories",
    )
    ap.add_argument("--repo", default=".", help="Repository path (default: current directory)")
    ap.add_argument("--account", help="Account whose token is used for remote operations")
    ap.add_argument("--json", action="store_true", help="Print the outcome as JSON")

    sub = ap.add_subparsers(dest="cmd")

    sub.add_parser("status", help="Show branch, upstream and file status")
    sub.add_parser("sync", help="Fetch, rebase onto upstream, push local commits")
    sub.add_parser("stash", help="Stash uncommitted changes")
    sub.add_parser("pop-stash", help="Re-apply the newest stash")

    p_commit = sub.add_parser("commit-push", help="Commit staged changes and push")
    p_commit.add_argument("-m", "--message", required=True, help="Commit message")

    sub.add_parser("push", help="Push the current branch")
    sub.add_parser("undo", help="Undo the last commit (changes stay staged)")
    sub.add_parser("revert", help="Add a commit that reverts the last commit")

    p_delete = sub.add_parser("delete-last", help="Discard the last commit locally and on the remote")
    p_delete.add_argument("--yes", action="store_true", help="Confirm the destructive operation")

    p_history = sub.add_parser("history", help="List reflog entries (Time Machine)")
    p_history.add_argument("-n", "--limit", type=int, help="Maximum entries")

    p_restore = sub.add_parser("restore", help="Hard-reset to a reflog entry")
    p_restore.add_argument("selector", help="Reflog selector (HEAD@{n}) or commit hash")
    p_restore.add_argument("--expect", help="Abort unless the selector resolves to this hash")
    return ap


def main(argv: list[str] | None = None) -> None:
    ap = build_parser()
    args = ap.parse_args(argv)

    if not args.cmd:
        ap.print_help()
        sys.exit(0)

    from .config_loader import ConfigError
    from .engine import Engine

    repo = Path(args.repo).expanduser().resolve()
    try:
        engine = Engine.from_config(project_path=repo)
    except ConfigError as exc:
        print(f"❌ {exc}", file=sys.stderr)
        sys.exit(1)

    if args.cmd == "status":
        outcome = engine.refresh_status(repo)
    elif args.cmd == "sync":
        outcome = engine.sync(repo, account_id=args.account)
    elif args.cmd == "stash":
        outcome = engine.stash(repo)
    elif args.cmd == "pop-stash":
        outcome = engine.pop_stash(repo)
    elif args.cmd == "commit-push":
        outcome = engine.commit_and_push(repo, args.message, account_id=args.account)
    elif args.cmd == "push":
        outcome = engine.push_only(repo, account_id=args.account)
    elif args.cmd == "undo":
        outcome = engine.undo_last_commit(repo)
    elif args.cmd == "revert":
        outcome = engine.revert_last_commit(repo)
    elif args.cmd == "delete-last":
        outcome = engine.delete_last_commit(repo, confirm=args.yes, account_id=args.account)
    elif args.cmd == "history":
        outcome = engine.list_history(repo, limit=args.limit)
    else:  # restore
        outcome = engine.restore(repo, args.selector, expected_hash=args.expect)

    if args.json:
        print(json.dumps(outcome.to_dict(), indent=2))
    else:
        _print_outcome(outcome)
    sys.exit(0 if outcome.ok else 1)


if __name__ == "__main__":
    main()
