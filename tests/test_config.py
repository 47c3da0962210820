from __future__ import annotations

import os
from pathlib import Path

import pytest
import yaml

from ad_password_manager.config import (
    ConfigurationError,
    DelegationMapping,
    dn_from_domain,
    ensure_default_config,
    load_config,
    parse_delegation,
)

REPO_ROOT = Path(__file__).resolve().parents[1]


def _write(tmp_path, payload) -> Path:
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("ADPM_"):
            monkeypatch.delenv(key, raising=False)


def test_load_config_reads_all_sections(tmp_path):
    path = _write(
        tmp_path,
        {
            "ldap": {
                "server_uri": "ldaps://dc1.corp.example.com",
                "domain": "corp.example.com",
                "service_user": "svc-pwreset",
                "service_password": "s3cret",
                "use_ssl": "yes",
                "connect_timeout": "5",
                "group_search_base": "OU=Groups,DC=corp,DC=example,DC=com",
            },
            "delegation": [
                {"admin_group": "HelpDesk-Tier1", "managed_groups": ["Branch-NY-Users", " Branch-LA-Users "]},
                {"admin_group": "HelpDesk-Tier2", "managed_groups": "Branch-NY-Users"},
            ],
            "logging": {"level": "debug"},
        },
    )

    config = load_config(path)

    assert config.ldap.is_configured
    assert config.ldap.connect_timeout == 5
    assert config.ldap.search_base == "DC=corp,DC=example,DC=com"
    assert config.ldap.bind_user == "svc-pwreset@corp.example.com"
    assert config.ldap.group_search_base == "OU=Groups,DC=corp,DC=example,DC=com"
    assert config.delegation.mappings == (
        DelegationMapping("HelpDesk-Tier1", frozenset({"Branch-NY-Users", "Branch-LA-Users"})),
        DelegationMapping("HelpDesk-Tier2", frozenset({"Branch-NY-Users"})),
    )
    assert config.logging.level == "DEBUG"


def test_missing_values_fail_closed(tmp_path):
    config = load_config(_write(tmp_path, {"ldap": {"domain": "corp.example.com"}}))

    assert not config.ldap.is_configured
    assert not config.delegation
    assert len(config.delegation) == 0


def test_service_password_is_hidden_from_repr(tmp_path):
    config = load_config(_write(tmp_path, {"ldap": {"service_password": "s3cret"}}))

    assert "s3cret" not in repr(config)


def test_environment_overrides(tmp_path, monkeypatch):
    path = _write(tmp_path, {"ldap": {"domain": "corp.example.com", "service_user": "svc"}})
    monkeypatch.setenv("ADPM_LDAP__SERVICE_PASSWORD", "from-env")
    monkeypatch.setenv("ADPM_LDAP__USE_SSL", "false")

    config = load_config(path)

    assert config.ldap.service_password == "from-env"
    assert config.ldap.use_ssl is False
    assert config.ldap.is_configured


def test_blank_use_ssl_keeps_ldaps(tmp_path, monkeypatch):
    path = _write(tmp_path, {"ldap": {"domain": "corp.example.com", "use_ssl": None}})

    assert load_config(path).ldap.use_ssl is True

    monkeypatch.setenv("ADPM_LDAP__USE_SSL", "")
    assert load_config(path).ldap.use_ssl is True


def test_config_path_from_environment(tmp_path, monkeypatch):
    path = _write(tmp_path, {"ldap": {"domain": "env.example.com"}})
    monkeypatch.setenv("ADPM_CONFIG", str(path))

    assert load_config().ldap.domain == "env.example.com"


def test_missing_file_raises(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "absent.yaml")


def test_delegation_mapping_form_is_accepted():
    settings = parse_delegation({"HelpDesk-Tier1": ["A", "B"], "HelpDesk-Tier2": None})

    assert [mapping.admin_group for mapping in settings] == ["HelpDesk-Tier1", "HelpDesk-Tier2"]
    assert settings.mappings[1].managed_groups == frozenset()


@pytest.mark.parametrize("raw", ["HelpDesk", [{"managed_groups": ["A"]}], ["HelpDesk"]])
def test_malformed_delegation_is_rejected(raw):
    with pytest.raises(ConfigurationError):
        parse_delegation(raw)


def test_dn_from_domain():
    assert dn_from_domain("corp.example.com") == "DC=corp,DC=example,DC=com"
    assert dn_from_domain("") == ""


def test_ensure_default_config_copies_template(tmp_path):
    target = tmp_path / "config" / "settings.yaml"

    ensure_default_config(target, REPO_ROOT / "config" / "settings.example.yaml")

    config = load_config(target)
    assert config.ldap.server_uri.startswith("mock://")
    assert [mapping.admin_group for mapping in config.delegation] == ["HelpDesk-Tier1", "HelpDesk-Tier2"]
