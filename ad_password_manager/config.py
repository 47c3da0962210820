"""Configuration loading utilities for the delegated password manager."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

import yaml


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "ADPM_CONFIG"
ENV_PREFIX = "ADPM_"


@dataclass(frozen=True)
class LDAPConfig:
    """Service identity and connection settings for Active Directory."""

    server_uri: str = ""
    domain: str = ""
    service_user: str = ""
    service_password: str = field(default="", repr=False)
    base_dn: str = ""
    use_ssl: bool = True
    connect_timeout: int = 10
    user_search_base: Optional[str] = None
    group_search_base: Optional[str] = None
    mock_data_file: Optional[Path] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.domain and self.service_user and self.service_password)

    @property
    def search_base(self) -> str:
        return self.base_dn or dn_from_domain(self.domain)

    @property
    def bind_user(self) -> str:
        if "@" in self.service_user or "\\" in self.service_user:
            return self.service_user
        return f"{self.service_user}@{self.domain}"


@dataclass(frozen=True)
class DelegationMapping:
    """One admin group and the groups its members may manage."""

    admin_group: str
    managed_groups: frozenset[str] = frozenset()


@dataclass(frozen=True)
class DelegationSettings:
    """Ordered, read-only delegation table."""

    mappings: Tuple[DelegationMapping, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.mappings)

    def __iter__(self):
        return iter(self.mappings)

    def __len__(self) -> int:
        return len(self.mappings)


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class AppConfig:
    """Aggregate configuration for the application."""

    ldap: LDAPConfig = field(default_factory=LDAPConfig)
    delegation: DelegationSettings = field(default_factory=DelegationSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def dn_from_domain(domain: str) -> str:
    """Turn ``corp.example.com`` into ``DC=corp,DC=example,DC=com``."""

    parts = [part for part in (domain or "").strip().split(".") if part]
    return ",".join(f"DC={part}" for part in parts)


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/settings.example.yaml' or set environment variables."
        )
    with path.open("r", encoding="utf-8") as file:
        payload = yaml.safe_load(file) or {}
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping.")
    return payload


def _environment_overrides() -> Dict[str, Any]:
    """Nest ``ADPM_SECTION__KEY=value`` variables as ``{"section": {"key": value}}``."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == ENV_CONFIG_PATH:
            continue
        *sections, name = key[len(ENV_PREFIX) :].lower().split("__")
        node = overrides
        for section in sections:
            node = node.setdefault(section, {})
        node[name] = value
    return overrides


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _merge(current, value)
        else:
            merged[key] = value
    return merged


def config_path(path: Optional[Path] = None) -> Path:
    """The settings file to read: explicit path, then ``ADPM_CONFIG``, then the default."""

    return Path(path or os.environ.get(ENV_CONFIG_PATH) or DEFAULT_CONFIG_PATH)


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Create the settings file from the example template when it is missing."""

    target = config_path(path)
    if target.exists():
        return target

    template = Path(template_path or DEFAULT_TEMPLATE_PATH)
    if not template.exists():
        raise ConfigurationError(
            f"Cannot create '{target}': template '{template}' not found."
        )
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target)
    return target


def _section(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = config_dict.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping.")
    return value


def _as_list(value: Any) -> Iterable[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return value
    return [value]


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _str(value: Any) -> str:
    return _optional_str(value) or ""


def _flag(value: Any, default: bool) -> bool:
    """Parse a yes/no setting; unset or blank keeps ``default``."""

    if isinstance(value, bool):
        return value
    text = _optional_str(value)
    if text is None:
        return default
    return text.lower() in {"1", "true", "yes", "on"}


def _load_ldap(section: Dict[str, Any]) -> LDAPConfig:
    defaults = LDAPConfig()
    raw_timeout = _optional_str(section.get("connect_timeout"))
    try:
        timeout = int(raw_timeout) if raw_timeout else defaults.connect_timeout
    except ValueError as exc:
        raise ConfigurationError(f"Invalid ldap.connect_timeout: {exc}.") from exc

    mock_data_file = _optional_str(section.get("mock_data_file"))
    return LDAPConfig(
        server_uri=_str(section.get("server_uri")),
        domain=_str(section.get("domain")),
        service_user=_str(section.get("service_user")),
        # Secrets keep surrounding whitespace; only None collapses to empty.
        service_password="" if section.get("service_password") is None else str(section["service_password"]),
        base_dn=_str(section.get("base_dn")),
        use_ssl=_flag(section.get("use_ssl"), defaults.use_ssl),
        connect_timeout=timeout,
        user_search_base=_optional_str(section.get("user_search_base")),
        group_search_base=_optional_str(section.get("group_search_base")),
        mock_data_file=Path(mock_data_file) if mock_data_file else None,
    )


def parse_delegation(raw: Any) -> DelegationSettings:
    """Build the delegation table from the ``delegation`` config value.

    Accepts either a list of ``{admin_group, managed_groups}`` entries or a
    mapping of admin group to managed groups. Entries repeating an admin group
    are kept as separate mappings; the resolver unions them.
    """

    if raw is None:
        return DelegationSettings()

    if isinstance(raw, dict):
        entries = [
            {"admin_group": admin_group, "managed_groups": managed}
            for admin_group, managed in raw.items()
        ]
    elif isinstance(raw, list):
        entries = raw
    else:
        raise ConfigurationError("The 'delegation' section must be a list of mappings.")

    mappings = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Delegation entry #{index + 1} must be a mapping.")
        admin_group = _optional_str(entry.get("admin_group"))
        if not admin_group:
            raise ConfigurationError(f"Delegation entry #{index + 1} is missing 'admin_group'.")
        managed = frozenset(
            filter(
                None,
                [_optional_str(value) for value in _as_list(entry.get("managed_groups"))],
            )
        )
        mappings.append(DelegationMapping(admin_group=admin_group, managed_groups=managed))
    return DelegationSettings(mappings=tuple(mappings))


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    resolved = config_path(path)
    if resolved == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved)
    config_dict = _merge(_load_from_file(resolved), _environment_overrides())
    logging_section = _section(config_dict, "logging")
    defaults = LoggingConfig()

    return AppConfig(
        ldap=_load_ldap(_section(config_dict, "ldap")),
        delegation=parse_delegation(config_dict.get("delegation")),
        logging=LoggingConfig(
            level=_str(logging_section.get("level")).upper() or defaults.level,
            format=_str(logging_section.get("format")) or defaults.format,
        ),
    )


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "config_path",
    "DelegationMapping",
    "DelegationSettings",
    "LDAPConfig",
    "LoggingConfig",
    "dn_from_domain",
    "ensure_default_config",
    "load_config",
    "parse_delegation",
]
