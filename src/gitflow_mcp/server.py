"""gitflow MCP Server

FastMCP server exposing the engine's public operations to an out-of-process
UI or agent. Every tool returns the operation outcome as JSON; expected
failures (busy, conflict, auth missing, ...) are outcomes, not tool errors.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

from fastmcp import Context, FastMCP

from gitflow.models import RepositoryHandle
from gitflow.observability import log_debug, timeit

from .config import get_activity_buffer, get_async_engine, get_transport_config

mcp = FastMCP(name="gitflow")


def _handle(code_path: str, account: str = "") -> RepositoryHandle:
    path = Path(code_path).expanduser() if code_path else Path.cwd()
    return RepositoryHandle(path=str(path), account_id=account or None)


async def _call(operation: str, code_path: str, *args: Any, account: str = "") -> str:
    """Run one engine operation and serialize its outcome."""
    log_debug(f"TOOL_ENTRY: gitflow_{operation}", code_path=code_path)
    engine = get_async_engine()
    repo = _handle(code_path, account)
    with timeit("mcp.tool", tool_name=f"gitflow_{operation}") as info:
        outcome = await getattr(engine, operation)(repo, *args)
        info["outcome"] = outcome.kind.value
    return json.dumps(outcome.to_dict(), indent=2)


@mcp.tool(name="gitflow_status")
async def status(ctx: Context, code_path: str = "") -> str:
    """Branch, upstream, ahead/behind counts and per-file status.

    Args:
        code_path: Path to the repository working tree (default: server cwd)
    """
    return await _call("refresh_status", code_path)


@mcp.tool(name="gitflow_sync")
async def sync(ctx: Context, code_path: str = "", account: str = "") -> str:
    """Fetch, rebase local commits onto the upstream, then push.

    On conflicts the repository is restored and the colliding paths are
    returned.

    Args:
        code_path: Path to the repository working tree
        account: Account whose token authenticates fetch/push
    """
    return await _call("sync", code_path, account=account)


@mcp.tool(name="gitflow_stash")
async def stash(ctx: Context, code_path: str = "") -> str:
    """Stash uncommitted changes."""
    return await _call("stash", code_path)


@mcp.tool(name="gitflow_pop_stash")
async def pop_stash(ctx: Context, code_path: str = "") -> str:
    """Re-apply the newest stash. On conflicts the stash is kept."""
    return await _call("pop_stash", code_path)


@mcp.tool(name="gitflow_commit_and_push")
async def commit_and_push(ctx: Context, message: str, code_path: str = "", account: str = "") -> str:
    """Commit staged changes and push them to the upstream.

    Args:
        message: Commit message (required)
        code_path: Path to the repository working tree
        account: Account whose token authenticates the push
    """
    return await _call("commit_and_push", code_path, message, account=account)


@mcp.tool(name="gitflow_push")
async def push(ctx: Context, code_path: str = "", account: str = "") -> str:
    """Push the current branch (sets the upstream if there is none)."""
    return await _call("push_only", code_path, account=account)


@mcp.tool(name="gitflow_undo_last_commit")
async def undo_last_commit(ctx: Context, code_path: str = "") -> str:
    """Soft-reset the last commit; its changes return to the index."""
    return await _call("undo_last_commit", code_path)


@mcp.tool(name="gitflow_revert_last_commit")
async def revert_last_commit(ctx: Context, code_path: str = "") -> str:
    """Add a commit that reverses the last commit."""
    return await _call("revert_last_commit", code_path)


@mcp.tool(name="gitflow_delete_last_commit")
async def delete_last_commit(
    ctx: Context,
    code_path: str = "",
    confirm: bool = False,
    account: str = "",
) -> str:
    """Discard the last commit locally and force-push (with lease).

    Destructive: requires confirm=true. The discarded commit stays
    recoverable via gitflow_restore with the returned selector until the
    reflog expires.
    """
    return await _call("delete_last_commit", code_path, confirm, account=account)


@mcp.tool(name="gitflow_history")
async def history(ctx: Context, code_path: str = "", limit: int = 0) -> str:
    """List reflog entries, newest first (Time Machine).

    Args:
        code_path: Path to the repository working tree
        limit: Maximum entries (0 = configured default)
    """
    return await _call("list_history", code_path, limit or None)


@mcp.tool(name="gitflow_restore")
async def restore(ctx: Context, selector: str, code_path: str = "", expected_hash: str = "") -> str:
    """Hard-reset HEAD to a reflog entry.

    Args:
        selector: Reflog selector (e.g. HEAD@{1}) or commit hash
        code_path: Path to the repository working tree
        expected_hash: Refuse unless the selector still resolves to this commit
    """
    return await _call("restore", code_path, selector, expected_hash or None)


def recent_activity(limit: int = 50) -> list[dict]:
    buffer = get_activity_buffer()
    if buffer is None:
        return []
    records = buffer.records[-limit:] if limit > 0 else buffer.records
    return [record.to_dict() for record in records]


@mcp.tool(name="gitflow_activity")
def activity(ctx: Context, limit: int = 50) -> str:
    """Most recent activity records (operations and git commands)."""
    return json.dumps(recent_activity(limit), indent=2)


def main() -> None:
    """Entry point for the gitflow-mcp command."""
    transport_config = get_transport_config()
    if transport_config["transport"] == "http":
        host = transport_config["host"]
        port = transport_config["port"]
        print(f"Starting gitflow MCP Server on http://{host}:{port}", file=sys.stderr)
        mcp.run(transport="http", host=host, port=port)
    else:
        mcp.run()


if __name__ == "__main__":
    main()
