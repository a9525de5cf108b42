"""Tests for credentials module."""

from __future__ import annotations

import os
import stat

import pytest

from gitflow.credentials import (
    AccountCredentials,
    Credentials,
    CredentialsTokenProvider,
    StaticTokenProvider,
    _env_var_for,
    detect_account,
    list_accounts,
    load_credentials,
    remove_account,
    save_account_token,
)


class TestCredentialsModels:
    def test_defaults(self):
        assert Credentials().accounts == {}
        creds = AccountCredentials()
        assert creds.token == ""
        assert creds.username == ""


class TestCredentialsFile:
    def test_missing_file_yields_no_accounts(self, tmp_path):
        assert load_credentials(tmp_path / "nope.toml").accounts == {}

    def test_save_and_load_round_trip(self, tmp_path):
        path = tmp_path / "credentials.toml"
        save_account_token("work", "tok-work", username="octo-work", path=path)
        save_account_token("personal", "tok-me", path=path)
        creds = load_credentials(path)
        assert creds.accounts["work"].token == "tok-work"
        assert creds.accounts["work"].username == "octo-work"
        assert creds.accounts["personal"].token == "tok-me"
        assert list_accounts(path) == ["personal", "work"]

    def test_save_replaces_token_and_keeps_comments(self, tmp_path):
        path = tmp_path / "credentials.toml"
        path.write_text('# my notes\n[accounts.work]\ntoken = "old"\nusername = "octo"\n')
        save_account_token("work", "new", path=path)
        text = path.read_text()
        assert "# my notes" in text
        creds = load_credentials(path)
        assert creds.accounts["work"].token == "new"
        assert creds.accounts["work"].username == "octo"

    @pytest.mark.skipif(os.name != "posix", reason="POSIX-only test")
    def test_file_is_owner_only(self, tmp_path):
        path = save_account_token("work", "tok", path=tmp_path / "c" / "credentials.toml")
        mode = stat.S_IMODE(path.stat().st_mode)
        assert mode == 0o600

    def test_remove_account(self, tmp_path):
        path = tmp_path / "credentials.toml"
        save_account_token("work", "tok", path=path)
        assert remove_account("work", path=path) is True
        assert remove_account("work", path=path) is False
        assert list_accounts(path) == []

    def test_invalid_file_warns(self, tmp_path):
        path = tmp_path / "credentials.toml"
        path.write_text("accounts = [broken\n")
        with pytest.warns(UserWarning):
            assert load_credentials(path).accounts == {}

    def test_account_name_required(self, tmp_path):
        with pytest.raises(ValueError):
            save_account_token("", "tok", path=tmp_path / "c.toml")


class TestTokenProviders:
    def test_env_var_name(self):
        assert _env_var_for("work") == "GITFLOW_TOKEN_WORK"
        assert _env_var_for("my-org.team") == "GITFLOW_TOKEN_MY_ORG_TEAM"

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "credentials.toml"
        save_account_token("work", "from-file", path=path)
        provider = CredentialsTokenProvider(path)
        assert provider.get_token("work") == "from-file"
        monkeypatch.setenv("GITFLOW_TOKEN_WORK", "from-env")
        assert provider.get_token("work") == "from-env"
        assert provider.get_token("other") is None
        assert provider.get_token("") is None

    def test_file_is_reread(self, tmp_path):
        path = tmp_path / "credentials.toml"
        provider = CredentialsTokenProvider(path)
        assert provider.get_token("work") is None
        save_account_token("work", "later", path=path)
        assert provider.get_token("work") == "later"
        assert set(provider.accounts()) == {"work"}

    def test_static_provider(self):
        provider = StaticTokenProvider({"a": "t", "empty": ""})
        assert provider.get_token("a") == "t"
        assert provider.get_token("empty") is None
        assert provider.get_token("missing") is None


class TestDetectAccount:
    @pytest.mark.parametrize(
        "url",
        [
            "https://github.com/octo-work/repo.git",
            "git@github.com:Octo-Work/repo.git",
            "https://x-access-token@github.com/octo-work/repo",
        ],
    )
    def test_matches_username(self, url):
        accounts = {
            "work": AccountCredentials(token="t", username="octo-work"),
            "me": AccountCredentials(token="t2"),
        }
        assert detect_account(url, accounts) == "work"

    def test_falls_back_to_account_name(self):
        assert detect_account("https://github.com/me/repo.git", ["work", "me"]) == "me"

    def test_no_match(self):
        assert detect_account("https://gitlab.com/octo-work/repo.git", ["octo-work"]) is None
        assert detect_account(None, ["me"]) is None
