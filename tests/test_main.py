"""
Unit tests for the entry point: config loading, target building and
argument parsing.
"""

from unittest.mock import patch

import pytest

from inboxsync.main import _database_config, build_targets, load_config, parse_args
from inboxsync.scheduler import SyncTarget

_VALID = """
[unipile]
dsn = "api6.unipile.com:13670"

[sync]
mode = "full"
scope = "messages"

[[sync.targets]]
workspace_id = "ws-1"
account_id = "acc-1"

[[sync.targets]]
workspace_id = "ws-1"
account_id = "acc-1"

[[sync.targets]]
workspace_id = "ws-2"
account_id = "acc-9"

[database]
host = "localhost"
database = "inbox"
user = "inbox_sync"
"""


def _write(tmp_path, text):
    path = tmp_path / "settings.toml"
    path.write_text(text)
    return path


class TestLoadConfig:
    def test_valid_config(self, tmp_path):
        config = load_config(_write(tmp_path, _VALID))
        assert config["sync"]["mode"] == "full"
        assert config["unipile"]["dsn"] == "api6.unipile.com:13670"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.toml")

    def test_missing_section(self, tmp_path):
        text = _VALID.replace("[unipile]", "[other]")
        with pytest.raises(KeyError, match="unipile"):
            load_config(_write(tmp_path, text))

    def test_sync_section_defaulted(self, tmp_path):
        text = '[unipile]\ndsn = "x"\n\n[database]\nhost = "h"\n'
        config = load_config(_write(tmp_path, text))
        assert config["sync"] == {}

    def test_invalid_mode(self, tmp_path):
        with pytest.raises(ValueError, match="sync.mode"):
            load_config(_write(tmp_path, _VALID.replace('mode = "full"', 'mode = "weekly"')))

    def test_invalid_scope(self, tmp_path):
        with pytest.raises(ValueError, match="sync.scope"):
            load_config(_write(tmp_path, _VALID.replace('scope = "messages"', 'scope = "all"')))

    def test_target_without_account(self, tmp_path):
        text = _VALID.replace('account_id = "acc-9"', "")
        with pytest.raises(KeyError, match="targets"):
            load_config(_write(tmp_path, text))


class TestBuildTargets:
    def test_deduplicated_in_order(self, tmp_path):
        config = load_config(_write(tmp_path, _VALID))
        assert build_targets(config) == [
            SyncTarget("ws-1", "acc-1"),
            SyncTarget("ws-2", "acc-9"),
        ]

    def test_no_targets(self):
        assert build_targets({}) == []


class TestDatabaseConfig:
    def test_password_from_keychain(self):
        with patch("inboxsync.main.get_secret", return_value="s3cret") as secret:
            db = _database_config({"database": {"host": "h"}})
        secret.assert_called_once_with("database-password")
        assert db["password"] == "s3cret"

    def test_missing_password_allows_peer_auth(self):
        with patch("inboxsync.main.get_secret", side_effect=RuntimeError("absent")):
            db = _database_config({"database": {"host": "h"}})
        assert "password" not in db

    def test_password_lookup_disabled(self):
        with patch("inboxsync.main.get_secret") as secret:
            db = _database_config({"database": {"host": "h", "password_secret": False}})
        secret.assert_not_called()
        assert "password_secret" not in db


class TestParseArgs:
    def test_once_flags(self):
        args = parse_args(["--once", "--workspace", "ws", "--account", "acc", "--mode", "full"])
        assert args.once is True
        assert (args.workspace, args.account, args.mode) == ("ws", "acc", "full")
        assert args.scope is None

    def test_invalid_scope_rejected(self):
        with pytest.raises(SystemExit):
            parse_args(["--scope", "everything"])
