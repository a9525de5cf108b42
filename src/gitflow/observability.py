from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional


LOGGER_NAME = "gitflow"

# Environment variables for configuration
ENV_LOG_DIR = "GITFLOW_LOG_DIR"
ENV_LOG_LEVEL = "GITFLOW_LOG_LEVEL"
ENV_LOG_MAX_BYTES = "GITFLOW_LOG_MAX_BYTES"
ENV_LOG_BACKUP_COUNT = "GITFLOW_LOG_BACKUP_COUNT"
ENV_LOG_DISABLE_FILE = "GITFLOW_LOG_DISABLE_FILE"

# Defaults
DEFAULT_LOG_DIR = Path.home() / ".gitflow" / "logs"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_BACKUP_COUNT = 5

_logger_initialized = False
_session_start: Optional[str] = None
_overrides: Dict[str, Any] = {}


def _session_stamp() -> str:
    global _session_start
    if _session_start is None:
        _session_start = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H%M%S")
    return _session_start


def _setting(key: str, env_var: str, default: Any) -> Any:
    if key in _overrides and _overrides[key] not in (None, ""):
        return _overrides[key]
    return os.getenv(env_var, default)


def _get_log_level() -> int:
    """Get log level from config or environment, defaulting to INFO."""
    level_name = str(_setting("level", ENV_LOG_LEVEL, DEFAULT_LOG_LEVEL)).upper()
    return getattr(logging, level_name, logging.INFO)


def _get_log_file_path() -> Optional[Path]:
    """Get the log file path, creating directories if needed.

    Returns None if file logging is disabled via GITFLOW_LOG_DISABLE_FILE=1.
    """
    disabled = _setting("disable_file", ENV_LOG_DISABLE_FILE, "")
    if disabled is True or str(disabled).lower() in ("1", "true", "yes"):
        return None

    log_dir = Path(_setting("dir", ENV_LOG_DIR, DEFAULT_LOG_DIR)).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    # Session-based filename: gitflow_2024-01-15_143022.log
    return log_dir / f"gitflow_{_session_stamp()}.log"


def configure_logging(
    *,
    level: Optional[str] = None,
    log_dir: Optional[str] = None,
    max_bytes: Optional[int] = None,
    backup_count: Optional[int] = None,
    disable_file: Optional[bool] = None,
) -> logging.Logger:
    """Apply explicit logging settings (usually from the ``[logging]`` config table).

    Settings passed here win over environment variables. The logger is
    rebuilt on the next call to :func:`_get_logger`.
    """
    global _logger_initialized
    _overrides.update(
        {
            "level": level,
            "dir": log_dir,
            "max_bytes": max_bytes,
            "backup_count": backup_count,
            "disable_file": disable_file,
        }
    )
    _logger_initialized = False
    return _get_logger()


def _get_logger() -> logging.Logger:
    """Get or initialize the gitflow logger.

    By default, logs to ~/.gitflow/logs/gitflow_<session>.log

    Configuration via environment variables:
    - GITFLOW_LOG_DIR: Directory for log files (default: ~/.gitflow/logs/)
    - GITFLOW_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    - GITFLOW_LOG_MAX_BYTES: Max log file size before rotation (default: 10MB)
    - GITFLOW_LOG_BACKUP_COUNT: Number of backup files to keep (default: 5)
    - GITFLOW_LOG_DISABLE_FILE: Set to 1 to disable file logging (stderr only)
    """
    global _logger_initialized
    logger = logging.getLogger(LOGGER_NAME)

    if not _logger_initialized:
        _logger_initialized = True
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        log_level = _get_log_level()
        logger.setLevel(log_level)

        formatter = logging.Formatter(
            "[%(levelname)s %(asctime)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S"
        )

        log_file = _get_log_file_path()
        if log_file:
            max_bytes = int(_setting("max_bytes", ENV_LOG_MAX_BYTES, DEFAULT_MAX_BYTES))
            backup_count = int(_setting("backup_count", ENV_LOG_BACKUP_COUNT, DEFAULT_BACKUP_COUNT))

            file_handler = RotatingFileHandler(
                str(log_file),
                maxBytes=max_bytes,
                backupCount=backup_count,
            )
            file_handler.setFormatter(formatter)
            file_handler.setLevel(log_level)
            logger.addHandler(file_handler)

        # Warnings and above also go to stderr
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(max(log_level, logging.WARNING))
        logger.addHandler(stream_handler)

    return logger


def log_action(
    action: str,
    *,
    outcome: str = "ok",
    duration_ms: Optional[float] = None,
    repo: Optional[str] = None,
    **fields: Any,
) -> None:
    """Emit a structured log line for an action.

    Fields are serialized to JSON. Callers are responsible for redacting
    credentials before passing free-form text.

    Args:
        action: Name of the action being logged (e.g. "engine.sync")
        outcome: Result status ("ok", "error", outcome kind, ...)
        duration_ms: How long the action took in milliseconds
        repo: Repository path the action ran against
        **fields: Additional fields to include
    """
    payload: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "action": action,
        "outcome": outcome,
    }
    if duration_ms is not None:
        payload["duration_ms"] = round(duration_ms, 2)
    if repo is not None:
        payload["repo"] = repo
    if fields:
        payload.update(fields)

    _get_logger().info(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))


def _with_fields(message: str, fields: Dict[str, Any]) -> str:
    if not fields:
        return message
    return f"{message} {json.dumps(fields, separators=(',', ':'), sort_keys=True, default=str)}"


def log_debug(message: str, **fields: Any) -> None:
    """Log a debug message with optional structured fields.

    Only emitted when log level is DEBUG.
    """
    logger = _get_logger()
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(_with_fields(message, fields))


def log_warning(message: str, **fields: Any) -> None:
    """Log a warning message with optional structured fields."""
    _get_logger().warning(_with_fields(message, fields))


def log_error(message: str, **fields: Any) -> None:
    """Log an error message with optional structured fields."""
    _get_logger().error(_with_fields(message, fields))


@contextmanager
def timeit(action: str, **fields: Any):
    """Time a block and emit a structured log on exit.

    The yielded dict may be updated by the block; its ``outcome`` key (if
    set) replaces the default "ok". On exception, logs outcome="error" and
    re-raises.
    """
    start = time.perf_counter()
    result_info: Dict[str, Any] = {}
    try:
        yield result_info
    except Exception:
        duration_ms = (time.perf_counter() - start) * 1000.0
        log_action(action, outcome="error", duration_ms=duration_ms, **fields)
        raise
    duration_ms = (time.perf_counter() - start) * 1000.0
    outcome = result_info.pop("outcome", "ok")
    log_action(action, outcome=outcome, duration_ms=duration_ms, **{**fields, **result_info})
