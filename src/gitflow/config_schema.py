"""Configuration schema for gitflow-engine.

Defines all configuration options with types, defaults, and validation.
Uses Pydantic for schema enforcement and clear error messages.
"""

from __future__ import annotations

import warnings
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EngineConfig(BaseModel):
    """Locking, timeout and recovery policy."""

    lock_wait_seconds: float = Field(
        default=0.0,
        ge=0,
        description="Seconds to wait for a busy repository (0 = fail fast)",
    )
    lock_ttl_seconds: float = Field(
        default=600.0,
        ge=0,
        description="Age after which another process's lock file is considered stale (0 = never)",
    )
    use_file_lock: bool = Field(
        default=True,
        description="Also take a lock file in the git directory while a lease is held",
    )
    command_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for local git commands in seconds",
    )
    network_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for fetch/push in seconds",
    )
    sync_retries: int = Field(
        default=1,
        ge=0,
        description="Full fetch-rebase-push retries after a non-fast-forward push rejection",
    )
    autostash: bool = Field(
        default=True,
        description="Carry uncommitted tracked changes across a sync rebase",
    )
    stash_include_untracked: bool = Field(
        default=False,
        description="Include untracked files in stash()",
    )
    index_lock_retries: int = Field(
        default=3,
        ge=0,
        description="Retries when another process holds index.lock",
    )
    index_lock_retry_delay: float = Field(
        default=0.5,
        ge=0,
        description="Seconds between index.lock retries",
    )
    reflog_limit: int = Field(
        default=100,
        ge=1,
        description="Default number of reflog entries returned by list_history",
    )
    activity_buffer: int = Field(
        default=500,
        ge=1,
        description="Records kept by the in-memory activity sink",
    )


class GitConfig(BaseModel):
    """Identity and remote defaults."""

    author_name: str = Field(
        default="",
        description="Commit author/committer name (empty = git's own config)",
    )
    author_email: str = Field(
        default="",
        description="Commit author/committer email (empty = git's own config)",
    )
    default_remote: str = Field(
        default="origin",
        description="Remote used by push_only when the branch has no upstream",
    )

    @field_validator("default_remote")
    @classmethod
    def validate_default_remote(cls, v: str) -> str:
        if not v or v.startswith("-") or any(ch.isspace() for ch in v):
            raise ValueError(f"Invalid remote name: {v!r}")
        return v


class AccountsConfig(BaseModel):
    """Account selection."""

    default_account: str = Field(
        default="",
        description="Account used when a repository handle names none",
    )
    credentials_file: str = Field(
        default="",
        description="Credentials file (empty = ~/.gitflow/credentials.toml)",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    dir: str = Field(
        default="",
        description="Log directory (empty = ~/.gitflow/logs)",
    )
    max_bytes: int = Field(
        default=10485760,  # 10MB
        ge=0,
        description="Maximum log file size in bytes",
    )
    backup_count: int = Field(
        default=5,
        ge=0,
        description="Number of backup log files to keep",
    )
    disable_file: bool = Field(
        default=False,
        description="Disable file logging (stderr only)",
    )

    @field_validator("dir")
    @classmethod
    def validate_log_dir(cls, v: str) -> str:
        """Warn if the path exists but is not a directory (it is created on use)."""
        if v:
            path = Path(v).expanduser()
            if path.exists() and not path.is_dir():
                warnings.warn(
                    f"Log path exists but is not a directory: {v}",
                    UserWarning,
                )
        return v


class GitflowConfig(BaseModel):
    """Root configuration model."""

    model_config = ConfigDict(extra="ignore")

    version: int = Field(
        default=1,
        ge=1,
        description="Config schema version",
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    accounts: AccountsConfig = Field(default_factory=AccountsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> "GitflowConfig":
        """Create config with all defaults."""
        return cls()

    def credentials_path(self) -> Optional[Path]:
        if self.accounts.credentials_file:
            return Path(self.accounts.credentials_file).expanduser()
        return None
