"""Configuration loading and merging for gitflow-engine.

Handles TOML loading, config discovery, deep merging, and environment overlay.
"""

from __future__ import annotations

import os
import sys
import threading
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from pydantic import ValidationError

from .config_schema import GitflowConfig


CONFIG_FILENAME = "config.toml"
CREDENTIALS_FILENAME = "credentials.toml"

USER_CONFIG_DIR = ".gitflow"
PROJECT_CONFIG_DIR = ".gitflow"

# Environment variable -> (section path, key)
ENV_MAPPING: Dict[str, Tuple[List[str], str]] = {
    # Engine policy
    "GITFLOW_LOCK_WAIT": (["engine"], "lock_wait_seconds"),
    "GITFLOW_LOCK_TTL": (["engine"], "lock_ttl_seconds"),
    "GITFLOW_USE_FILE_LOCK": (["engine"], "use_file_lock"),
    "GITFLOW_COMMAND_TIMEOUT": (["engine"], "command_timeout"),
    "GITFLOW_NETWORK_TIMEOUT": (["engine"], "network_timeout"),
    "GITFLOW_SYNC_RETRIES": (["engine"], "sync_retries"),
    "GITFLOW_AUTOSTASH": (["engine"], "autostash"),
    "GITFLOW_STASH_UNTRACKED": (["engine"], "stash_include_untracked"),
    "GITFLOW_REFLOG_LIMIT": (["engine"], "reflog_limit"),
    # Git identity
    "GITFLOW_GIT_AUTHOR": (["git"], "author_name"),
    "GITFLOW_GIT_EMAIL": (["git"], "author_email"),
    "GITFLOW_DEFAULT_REMOTE": (["git"], "default_remote"),
    # Accounts
    "GITFLOW_ACCOUNT": (["accounts"], "default_account"),
    "GITFLOW_CREDENTIALS_FILE": (["accounts"], "credentials_file"),
    # Logging
    "GITFLOW_LOG_LEVEL": (["logging"], "level"),
    "GITFLOW_LOG_DIR": (["logging"], "dir"),
    "GITFLOW_LOG_MAX_BYTES": (["logging"], "max_bytes"),
    "GITFLOW_LOG_BACKUP_COUNT": (["logging"], "backup_count"),
    "GITFLOW_LOG_DISABLE_FILE": (["logging"], "disable_file"),
}


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


def _get_user_config_dir() -> Path:
    """Get user-level config directory (~/.gitflow/)."""
    return Path.home() / USER_CONFIG_DIR


def _get_project_config_dir(project_path: Optional[Path] = None) -> Optional[Path]:
    """Search upward from project_path for a .gitflow/ directory."""
    if project_path is None:
        project_path = Path.cwd()

    current = Path(project_path).resolve()
    user_dir = _get_user_config_dir().resolve()
    while current != current.parent:
        config_dir = current / PROJECT_CONFIG_DIR
        # the user-level directory is not a project config
        if config_dir.is_dir() and config_dir != user_dir:
            return config_dir
        current = current.parent

    return None


def _load_toml(path: Path) -> Dict[str, Any]:
    """Load a TOML file.

    Raises:
        ConfigError: If file cannot be loaded or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries; override wins, lists are replaced."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _apply_env_overlay(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Apply GITFLOW_* environment overrides (type conversion happens in pydantic)."""
    result = _deep_merge({}, config_dict)

    for env_var, (section_path, key_name) in ENV_MAPPING.items():
        value = os.getenv(env_var)
        if value is None:
            continue

        current = result
        for section in section_path:
            current = current.setdefault(section, {})
        current[key_name] = value

    return result


def load_config(
    project_path: Optional[Path] = None,
    skip_env: bool = False,
) -> GitflowConfig:
    """Load and merge configuration.

    Discovery order (later sources override earlier):
    1. Built-in defaults
    2. User config (~/.gitflow/config.toml)
    3. Project config (.gitflow/config.toml, searched upward)
    4. Environment variables (unless skip_env=True)

    Raises:
        ConfigError: If the project config or the merged result is invalid
    """
    config_dict: Dict[str, Any] = {}

    user_config_path = _get_user_config_dir() / CONFIG_FILENAME
    if user_config_path.exists():
        try:
            config_dict = _deep_merge(config_dict, _load_toml(user_config_path))
        except ConfigError as e:
            # User config is optional, warn but continue
            warnings.warn(
                f"Skipping invalid user config at {user_config_path}: {e}",
                UserWarning,
            )

    project_config_dir = _get_project_config_dir(project_path)
    if project_config_dir:
        project_config_path = project_config_dir / CONFIG_FILENAME
        if project_config_path.exists():
            try:
                config_dict = _deep_merge(config_dict, _load_toml(project_config_path))
            except ConfigError as e:
                raise ConfigError(f"Invalid project config: {e}")

    if not skip_env:
        config_dict = _apply_env_overlay(config_dict)

    try:
        return GitflowConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed:\n{e}")


def get_config_paths(project_path: Optional[Path] = None) -> Dict[str, Optional[Path]]:
    """Paths of the user/project config files and the user credentials file."""
    user_dir = _get_user_config_dir().resolve()
    project_dir = _get_project_config_dir(project_path)

    return {
        "user_config": user_dir / CONFIG_FILENAME,
        "project_config": project_dir / CONFIG_FILENAME if project_dir else None,
        "user_credentials": user_dir / CREDENTIALS_FILENAME,
    }


# Global cached config (thread-safe)
_cached_config: Optional[GitflowConfig] = None
_cached_project_path: Optional[Path] = None
_config_lock = threading.Lock()


def get_config(project_path: Optional[Path] = None, force_reload: bool = False) -> GitflowConfig:
    """Get cached config, loading if necessary (thread-safe)."""
    global _cached_config, _cached_project_path

    normalized_path = Path(project_path).resolve() if project_path and str(project_path) else None

    with _config_lock:
        if force_reload or _cached_config is None or _cached_project_path != normalized_path:
            _cached_config = load_config(project_path)
            _cached_project_path = normalized_path

        return _cached_config


def clear_config_cache() -> None:
    """Clear cached config (thread-safe)."""
    global _cached_config, _cached_project_path
    with _config_lock:
        _cached_config = None
        _cached_project_path = None
