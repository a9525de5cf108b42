"""Multi-account credential storage and the token providers built on it.

Tokens live in ``~/.gitflow/credentials.toml``::

    [accounts.work]
    token = "ghp_..."
    username = "octo-work"

A ``GITFLOW_TOKEN_<ACCOUNT>`` environment variable overrides the file for
that account. Tokens are never logged.
"""

from __future__ import annotations

import os
import re
import stat
import sys
import warnings
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Union

import tomlkit
from pydantic import BaseModel, Field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


CREDENTIALS_FILENAME = "credentials.toml"
USER_CONFIG_DIR = ".gitflow"
TOKEN_ENV_PREFIX = "GITFLOW_TOKEN_"


class AccountCredentials(BaseModel):
    """Credentials for one authenticated account."""

    token: str = Field(default="", description="Personal access / OAuth token")
    username: str = Field(default="", description="Hosting username (empty = account name)")


class Credentials(BaseModel):
    """All stored accounts, keyed by account id."""

    accounts: Dict[str, AccountCredentials] = Field(default_factory=dict)


class TokenProvider(Protocol):
    def get_token(self, account: str) -> Optional[str]:
        ...


def _get_user_credentials_path() -> Path:
    return Path.home() / USER_CONFIG_DIR / CREDENTIALS_FILENAME


def _secure_file_permissions(path: Path) -> None:
    """Set owner read/write only. No-op on Windows."""
    if os.name == "posix":
        try:
            os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)  # 0o600
        except OSError as e:
            warnings.warn(
                f"Could not set secure permissions on {path}: {e}. "
                "Credentials file may be readable by other users.",
                UserWarning,
            )


def _env_var_for(account: str) -> str:
    return TOKEN_ENV_PREFIX + re.sub(r"[^A-Za-z0-9]", "_", account).upper()


def load_credentials(path: Optional[Path] = None) -> Credentials:
    """Load stored credentials; a missing or unreadable file yields no accounts."""
    path = path or _get_user_credentials_path()
    if not path.exists():
        return Credentials()
    try:
        with open(path, "rb") as f:
            return Credentials.model_validate(tomllib.load(f))
    except Exception as e:
        warnings.warn(f"Error loading credentials: {e}", UserWarning)
        return Credentials()


def _load_document(path: Path) -> tomlkit.TOMLDocument:
    if path.exists():
        return tomlkit.parse(path.read_text(encoding="utf-8"))
    doc = tomlkit.document()
    doc.add(tomlkit.comment(" gitflow credentials"))
    doc.add(tomlkit.comment(" Keep this file secure - do not commit to version control"))
    doc.add(tomlkit.nl())
    return doc


def _write_document(path: Path, doc: tomlkit.TOMLDocument) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(tomlkit.dumps(doc))
    _secure_file_permissions(path)


def save_account_token(
    account: str,
    token: str,
    *,
    username: Optional[str] = None,
    path: Optional[Path] = None,
) -> Path:
    """Store (or replace) the token for ``account``, preserving other content.

    Returns:
        Path to the credentials file
    """
    if not account:
        raise ValueError("account name is required")
    path = path or _get_user_credentials_path()
    doc = _load_document(path)
    if "accounts" not in doc:
        doc.add("accounts", tomlkit.table(is_super_table=True))
    accounts = doc["accounts"]
    entry = accounts.get(account)
    if entry is None:
        entry = tomlkit.table()
        accounts.add(account, entry)
    entry["token"] = token
    if username:
        entry["username"] = username
    _write_document(path, doc)
    return path


def remove_account(account: str, *, path: Optional[Path] = None) -> bool:
    """Delete ``account`` from the credentials file. Returns False if absent."""
    path = path or _get_user_credentials_path()
    if not path.exists():
        return False
    doc = _load_document(path)
    accounts = doc.get("accounts")
    if accounts is None or account not in accounts:
        return False
    del accounts[account]
    _write_document(path, doc)
    return True


def list_accounts(path: Optional[Path] = None) -> List[str]:
    return sorted(load_credentials(path).accounts)


def detect_account(
    remote_url: Optional[str],
    accounts: Union[Mapping[str, AccountCredentials], Iterable[str]],
) -> Optional[str]:
    """Pick the account whose username owns ``remote_url``.

    Matches ``github.com/<user>/`` (HTTPS) and ``github.com:<user>/`` (SSH),
    case-insensitively. Returns the account id or None.
    """
    if not remote_url:
        return None
    url = remote_url.lower()
    if isinstance(accounts, Mapping):
        candidates = {name: (creds.username or name) for name, creds in accounts.items()}
    else:
        candidates = {name: name for name in accounts}
    for name, username in candidates.items():
        user = username.lower()
        if f"github.com/{user}/" in url or f"github.com:{user}/" in url:
            return name
    return None


class CredentialsTokenProvider:
    """Token provider backed by the credentials file and environment.

    Priority: ``GITFLOW_TOKEN_<ACCOUNT>`` > credentials file. The file is
    re-read on each lookup so tokens saved by another process are seen.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path

    def get_token(self, account: str) -> Optional[str]:
        if not account:
            return None
        env_token = os.getenv(_env_var_for(account))
        if env_token:
            return env_token
        creds = load_credentials(self.path).accounts.get(account)
        return creds.token if creds and creds.token else None

    def accounts(self) -> Dict[str, AccountCredentials]:
        return load_credentials(self.path).accounts


class StaticTokenProvider:
    """In-memory mapping of account id to token."""

    def __init__(self, tokens: Optional[Mapping[str, str]] = None):
        self.tokens = dict(tokens or {})

    def get_token(self, account: str) -> Optional[str]:
        return self.tokens.get(account) or None
