"""gitflow MCP server

FastMCP server that exposes the gitflow engine's public operations as tools.
Tools are namespaced as gitflow_* for provider compatibility.
"""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("gitflow-engine")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .server import mcp

__all__ = ["mcp"]
