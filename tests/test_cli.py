from __future__ import annotations

import contextlib
import json

import pytest
import yaml
from typer.testing import CliRunner

from ad_password_manager import delegation
from ad_password_manager.ad_client import DirectoryUnavailable
from ad_password_manager.cli import GENERIC_FAILURE, app

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path):
    directory = {
        "password_policy": {"min_length": 8},
        "users": [
            {"sAMAccountName": "alice", "displayName": "Alice Admin", "password": "Admin-Pass-1", "pwdLastSet": 132000000000000000},
            {"sAMAccountName": "bob", "displayName": "Bob Branch", "mail": "bob@corp.example.com", "lockedOut": True, "pwdLastSet": 132000000000000000},
            {"sAMAccountName": "carol", "displayName": "Carol Branch", "passwordNeverExpires": True},
            {"sAMAccountName": "dave", "displayName": "Dave West", "pwdLastSet": 132000000000000000},
        ],
        "groups": [
            {"sAMAccountName": "HelpDesk-Tier1", "members": ["alice"]},
            {"sAMAccountName": "Branch-NY-Users", "members": ["carol", "bob"]},
            {"sAMAccountName": "Branch-LA-Users", "members": ["dave"]},
        ],
    }
    data_file = tmp_path / "directory.yaml"
    data_file.write_text(yaml.safe_dump(directory), encoding="utf-8")

    settings = {
        "ldap": {
            "server_uri": "mock://directory",
            "domain": "corp.example.com",
            "service_user": "svc-pwreset",
            "service_password": "secret",
            "mock_data_file": str(data_file),
        },
        "delegation": [{"admin_group": "HelpDesk-Tier1", "managed_groups": ["Branch-NY-Users"]}],
        "logging": {"level": "WARNING"},
    }
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.safe_dump(settings), encoding="utf-8")
    return path


def _invoke(config_file, *args, input=None):
    return runner.invoke(app, [*args, "--config", str(config_file)], input=input)


def test_managed_users_lists_sorted_accounts(config_file):
    result = _invoke(config_file, "managed-users", "alice")

    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert lines[0].startswith("- bob: Bob Branch <bob@corp.example.com>")
    assert lines[1] == "- carol: Carol Branch [never-expires, change-required]"


def test_managed_users_json(config_file):
    result = _invoke(config_file, "managed-users", "CORP\\alice", "--json")

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert [entry["username"] for entry in payload] == ["bob", "carol"]
    assert payload[1]["passwordChangeRequired"] is True


def test_managed_users_for_non_admin(config_file):
    result = _invoke(config_file, "managed-users", "dave")

    assert result.exit_code == 0
    assert "No managed users found." in result.output


def test_status_unknown_user_exits_nonzero(config_file):
    result = _invoke(config_file, "status", "mallory")

    assert result.exit_code == 1
    assert "not found" in result.output


def test_reset_password_updates_managed_account(config_file):
    result = _invoke(
        config_file,
        "reset-password",
        "bob",
        "--admin",
        "alice",
        "--require-change",
        "--expires",
        input="New-Pass-99\nNew-Pass-99\n",
    )

    assert result.exit_code == 0, result.output
    assert "updated successfully" in result.output

    status = json.loads(_invoke(config_file, "status", "bob", "--json").output)
    assert status["passwordChangeRequired"] is True
    assert status["passwordNeverExpires"] is False


def test_reset_password_refuses_unmanaged_account(config_file):
    result = _invoke(config_file, "reset-password", "dave", "--admin", "alice", "--password", "New-Pass-99")

    assert result.exit_code == 1
    assert "not managed by" in result.output


def test_reset_password_reports_generic_failure_when_directory_is_down(config_file, monkeypatch):
    @contextlib.contextmanager
    def unavailable(ldap_config):
        raise DirectoryUnavailable("directory is down")
        yield

    monkeypatch.setattr(delegation, "directory_session", unavailable)

    result = _invoke(config_file, "reset-password", "bob", "--admin", "alice", "--password", "New-Pass-99")

    assert result.exit_code == 1
    assert GENERIC_FAILURE in result.output
    assert "not managed by" not in result.output


def test_reset_password_reports_generic_failure(config_file):
    result = _invoke(config_file, "reset-password", "bob", "--admin", "alice", "--password", "short")

    assert result.exit_code == 1
    assert GENERIC_FAILURE in result.output


def test_mappings_command(config_file):
    result = _invoke(config_file, "mappings")

    assert result.exit_code == 0
    assert "- HelpDesk-Tier1" in result.output
    assert "manages: Branch-NY-Users" in result.output


def test_missing_config_file(tmp_path):
    result = runner.invoke(app, ["mappings", "--config", str(tmp_path / "absent.yaml")])

    assert result.exit_code == 1
    assert "does not exist" in result.output
