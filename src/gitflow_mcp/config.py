from __future__ import annotations

import os
import threading
from typing import Optional

from gitflow.activity import FanoutActivitySink, MemoryActivitySink
from gitflow.engine import AsyncEngine, Engine

__all__ = [
    "get_engine",
    "get_async_engine",
    "set_engine",
    "get_activity_buffer",
    "get_transport_config",
]

# One engine per server process so every tool call shares the same
# per-repository leases.
_engine: Optional[Engine] = None
_engine_lock = threading.Lock()


def get_engine() -> Engine:
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = Engine.from_config()
        return _engine


def set_engine(engine: Optional[Engine]) -> None:
    """Replace (or with None, reset) the process-wide engine."""
    global _engine
    with _engine_lock:
        _engine = engine


def get_async_engine() -> AsyncEngine:
    return AsyncEngine(get_engine())


def get_activity_buffer(engine: Optional[Engine] = None) -> Optional[MemoryActivitySink]:
    """Return the engine's in-memory activity sink, if it has one."""
    sink = (engine or get_engine()).activity
    if isinstance(sink, MemoryActivitySink):
        return sink
    if isinstance(sink, FanoutActivitySink):
        for child in sink.sinks:
            if isinstance(child, MemoryActivitySink):
                return child
    return None


def get_transport_config() -> dict:
    """Transport settings from GITFLOW_MCP_TRANSPORT / _HOST / _PORT."""
    return {
        "transport": os.getenv("GITFLOW_MCP_TRANSPORT", "stdio").lower(),
        "host": os.getenv("GITFLOW_MCP_HOST", "127.0.0.1"),
        "port": int(os.getenv("GITFLOW_MCP_PORT", "3000")),
    }
