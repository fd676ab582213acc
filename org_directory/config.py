"""Configuration loading utilities for the directory provisioning engine."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "ORGDIR_CONFIG"
ENV_PREFIX = "ORGDIR_"


@dataclass
class DirectoryConfig:
    """Settings required to connect to the directory server via LDAP."""

    server_uri: str
    bind_dn: str
    password: str
    base_dn: str
    use_ssl: bool = True
    asset_ou: str = "ASSETS"
    group_search_base: Optional[str] = None
    mail_domain: Optional[str] = None
    login_attribute: str = "sAMAccountName"
    employee_id_attribute: str = "employeeID"
    group_object_class: str = "group"
    user_object_classes: tuple[str, ...] = ("top", "person", "organizationalPerson", "user")
    pool_size: int = 4
    connect_timeout: int = 10
    mock_data_file: Optional[Path] = None

    @property
    def is_mock(self) -> bool:
        return self.server_uri.startswith("mock://")

    @property
    def groups_base(self) -> str:
        return self.group_search_base or self.base_dn

    @property
    def domain(self) -> str:
        if self.mail_domain:
            return self.mail_domain
        parts = [
            segment.split("=", 1)[1].strip()
            for segment in self.base_dn.split(",")
            if segment.strip().upper().startswith("DC=")
        ]
        return ".".join(parts)


@dataclass
class DatabaseConfig:
    """Connection settings for the authoritative relational store."""

    url: str
    echo: bool = False


@dataclass
class ProvisioningConfig:
    """Account provisioning defaults."""

    person_id_pattern: str = r"^\d{15}$"
    staff_groups: tuple[str, ...] = ()
    guest_groups: tuple[str, ...] = ()
    guest_ou: str = "Invitados"
    fallback_department_prefix: str = "Departamento"
    max_login_attempts: int = 50


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    directory: DirectoryConfig
    database: DatabaseConfig
    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/settings.example.yaml' or set environment variables."
        )
    with path.open("r", encoding="utf-8") as file:
        return yaml.safe_load(file) or {}


def _apply_environment_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Override configuration values with environment variables."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == ENV_CONFIG_PATH:
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Ensure a configuration file exists, copying from the example if needed."""

    target_path = _resolve_config_path(path)
    if target_path.exists():
        return target_path

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        raise ConfigurationError(
            "Default configuration template not found. "
            "Ensure 'config/settings.example.yaml' is present or specify a template."
        )

    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target_path)
    return target_path


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved_path = _resolve_config_path(path)
    if resolved_path == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved_path)

    config_dict = _load_from_file(resolved_path)
    return _apply_environment_overrides(config_dict)


def _get_required(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    try:
        return config_dict[key]
    except KeyError as exc:
        raise ConfigurationError(f"Missing required configuration section: '{key}'.") from exc


def _normalize_sequence(value: Any) -> Iterable[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return value
    if isinstance(value, str):
        # DN lists from environment overrides are ';' separated since DNs contain commas.
        return value.split(";")
    return [value]


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _optional_path(raw: Any) -> Optional[Path]:
    """Convert a raw config value to ``Path`` if set, otherwise ``None``."""

    if raw is None:
        return None
    if isinstance(raw, Path):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return None
        return Path(stripped)
    return Path(raw)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _string_tuple(value: Any) -> tuple[str, ...]:
    return tuple(
        filter(None, [str(entry).strip() for entry in _normalize_sequence(value)])
    )


def parse_config(config_dict: Dict[str, Any]) -> AppConfig:
    """Build an :class:`AppConfig` from an already merged dictionary."""

    directory_section = _get_required(config_dict, "directory")
    database_section = _get_required(config_dict, "database")

    try:
        defaults = DirectoryConfig(server_uri="", bind_dn="", password="", base_dn="")
        directory_config = DirectoryConfig(
            server_uri=str(directory_section["server_uri"]),
            bind_dn=str(directory_section["bind_dn"]),
            password=str(directory_section["password"]),
            base_dn=str(directory_section["base_dn"]),
            use_ssl=_to_bool(directory_section.get("use_ssl", True)),
            asset_ou=str(directory_section.get("asset_ou") or defaults.asset_ou),
            group_search_base=_optional_str(directory_section.get("group_search_base")),
            mail_domain=_optional_str(directory_section.get("mail_domain")),
            login_attribute=str(
                directory_section.get("login_attribute") or defaults.login_attribute
            ),
            employee_id_attribute=str(
                directory_section.get("employee_id_attribute") or defaults.employee_id_attribute
            ),
            group_object_class=str(
                directory_section.get("group_object_class") or defaults.group_object_class
            ),
            user_object_classes=_string_tuple(
                directory_section.get("user_object_classes", defaults.user_object_classes)
            )
            or defaults.user_object_classes,
            pool_size=_to_int(directory_section.get("pool_size", defaults.pool_size)),
            connect_timeout=_to_int(
                directory_section.get("connect_timeout", defaults.connect_timeout)
            ),
            mock_data_file=_optional_path(directory_section.get("mock_data_file")),
        )
    except KeyError as exc:
        raise ConfigurationError(f"Missing directory configuration key: {exc}.") from exc
    except ValueError as exc:
        raise ConfigurationError(f"Invalid directory configuration value: {exc}.") from exc

    if directory_config.pool_size < 1:
        raise ConfigurationError("directory.pool_size must be at least 1.")

    try:
        database_config = DatabaseConfig(
            url=str(database_section["url"]),
            echo=_to_bool(database_section.get("echo", False)),
        )
    except KeyError as exc:
        raise ConfigurationError(f"Missing database configuration key: {exc}.") from exc

    provisioning_section = config_dict.get("provisioning") or {}
    default_provisioning = ProvisioningConfig()
    try:
        max_attempts = _to_int(
            provisioning_section.get("max_login_attempts", default_provisioning.max_login_attempts)
        )
    except ValueError as exc:
        raise ConfigurationError(f"Invalid provisioning.max_login_attempts: {exc}.") from exc
    provisioning_config = ProvisioningConfig(
        person_id_pattern=str(
            provisioning_section.get("person_id_pattern") or default_provisioning.person_id_pattern
        ),
        staff_groups=_string_tuple(provisioning_section.get("staff_groups")),
        guest_groups=_string_tuple(provisioning_section.get("guest_groups")),
        guest_ou=str(provisioning_section.get("guest_ou") or default_provisioning.guest_ou),
        fallback_department_prefix=str(
            provisioning_section.get("fallback_department_prefix")
            or default_provisioning.fallback_department_prefix
        ),
        max_login_attempts=max_attempts,
    )

    logging_section = config_dict.get("logging") or {}
    default_logging = LoggingConfig()
    logging_config = LoggingConfig(
        level=str(logging_section.get("level") or default_logging.level).upper(),
        format=str(logging_section.get("format") or default_logging.format),
    )

    return AppConfig(
        directory=directory_config,
        database=database_config,
        provisioning=provisioning_config,
        logging=logging_config,
    )


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    return parse_config(_load_config_dict(path))


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "DatabaseConfig",
    "DirectoryConfig",
    "LoggingConfig",
    "ProvisioningConfig",
    "ensure_default_config",
    "load_config",
    "parse_config",
]
