"""
Configuration settings management for cobaltsync.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.cobaltsync/config.yaml by default, with the
path overridable via the COBALTSYNC_CONFIG environment variable.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from cobaltsync.backup.types import BackupOptions, ConflictStrategy
from cobaltsync.providers.base import ProviderConfig, ProviderRegistry, RetryPolicy

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".cobaltsync"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_PAYLOAD_MODES = ("full", "metadata-only")


@dataclass
class ProviderSettings:
    """Where snapshots are stored."""

    kind: str = "local-dir"
    root: str = ""
    webdav_url: str = ""
    webdav_username: str = ""
    webdav_password: str = ""
    timeout: float = 60.0


@dataclass
class BackupDefaults:
    """Default BackupOptions for CLI invocations."""

    include_files: bool = True
    include_settings: bool = True
    include_albums: bool = True
    include_targets: bool = True
    include_sessions: bool = True
    include_thumbnails: bool = False
    local_payload_mode: str = "full"
    conflict_strategy: str = ConflictStrategy.SKIP_EXISTING.value
    auto_backup_interval_hours: float = 24


@dataclass
class RetrySettings:
    """Retry behaviour for provider transfers."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0


@dataclass
class Settings:
    """
    Complete cobaltsync configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with COBALTSYNC_.

    Attributes:
        data_dir: Directory holding the library database and payload files.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        device_name: Label written into manifests created on this machine.
        provider: Storage provider configuration.
        backup: Default backup and restore options.
        retry: Transfer retry configuration.
    """

    data_dir: str = str(DEFAULT_CONFIG_DIR / "data")
    log_level: str = "INFO"
    device_name: str = ""

    provider: ProviderSettings = field(default_factory=ProviderSettings)
    backup: BackupDefaults = field(default_factory=BackupDefaults)
    retry: RetrySettings = field(default_factory=RetrySettings)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from COBALTSYNC_CONFIG environment variable if set,
    otherwise returns the default path (~/.cobaltsync/config.yaml).
    """
    env_path = os.environ.get("COBALTSYNC_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")

        try:
            settings = _apply_config_data(settings, config_data)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value in config file: {e}") from e

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(_settings_to_dict(settings), f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    general = data.get("cobaltsync") or {}

    if "data_dir" in general:
        settings.data_dir = str(general["data_dir"])
    if "log_level" in general:
        settings.log_level = str(general["log_level"]).upper()
    if "device_name" in general:
        settings.device_name = str(general["device_name"])

    provider = data.get("provider") or {}
    if "kind" in provider:
        settings.provider.kind = str(provider["kind"])
    if "root" in provider:
        settings.provider.root = str(provider["root"])
    if "timeout" in provider:
        settings.provider.timeout = float(provider["timeout"])

    webdav = provider.get("webdav") or {}
    settings.provider.webdav_url = str(webdav.get("url", settings.provider.webdav_url))
    settings.provider.webdav_username = str(
        webdav.get("username", settings.provider.webdav_username)
    )
    settings.provider.webdav_password = str(
        webdav.get("password", settings.provider.webdav_password)
    )

    backup = data.get("backup") or {}
    for name in (
        "include_files",
        "include_settings",
        "include_albums",
        "include_targets",
        "include_sessions",
        "include_thumbnails",
    ):
        if name in backup:
            setattr(settings.backup, name, bool(backup[name]))
    if "local_payload_mode" in backup:
        settings.backup.local_payload_mode = str(backup["local_payload_mode"])
    if "conflict_strategy" in backup:
        settings.backup.conflict_strategy = str(backup["conflict_strategy"])
    if "auto_backup_interval_hours" in backup:
        settings.backup.auto_backup_interval_hours = float(backup["auto_backup_interval_hours"])

    retry = data.get("retry") or {}
    if "max_retries" in retry:
        settings.retry.max_retries = int(retry["max_retries"])
    if "base_delay" in retry:
        settings.retry.base_delay = float(retry["base_delay"])
    if "max_delay" in retry:
        settings.retry.max_delay = float(retry["max_delay"])

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "COBALTSYNC_DATA_DIR": ("data_dir", str),
        "COBALTSYNC_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "COBALTSYNC_PROVIDER": ("provider.kind", str),
        "COBALTSYNC_PROVIDER_ROOT": ("provider.root", str),
        "COBALTSYNC_WEBDAV_URL": ("provider.webdav_url", str),
        "COBALTSYNC_WEBDAV_USERNAME": ("provider.webdav_username", str),
        "COBALTSYNC_WEBDAV_PASSWORD": ("provider.webdav_password", str),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested_attr(settings, attr_path, converter(value))

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    if settings.log_level not in VALID_LOG_LEVELS:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(VALID_LOG_LEVELS)}"
        )

    kinds = ProviderRegistry.get_kinds()
    if settings.provider.kind not in kinds:
        raise ConfigurationError(
            f"Invalid provider kind: {settings.provider.kind}. "
            f"Must be one of: {', '.join(kinds)}"
        )

    if settings.backup.local_payload_mode not in VALID_PAYLOAD_MODES:
        raise ConfigurationError(
            f"Invalid local_payload_mode: {settings.backup.local_payload_mode}. "
            f"Must be one of: {', '.join(VALID_PAYLOAD_MODES)}"
        )

    try:
        ConflictStrategy.parse(settings.backup.conflict_strategy)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    if settings.backup.auto_backup_interval_hours <= 0:
        raise ConfigurationError("auto_backup_interval_hours must be positive")

    if settings.retry.max_retries < 0:
        raise ConfigurationError("max_retries must not be negative")

    if settings.retry.base_delay < 0 or settings.retry.max_delay < settings.retry.base_delay:
        raise ConfigurationError("retry delays must satisfy 0 <= base_delay <= max_delay")

    if settings.provider.timeout <= 0:
        raise ConfigurationError("provider timeout must be positive")


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "cobaltsync": {
            "data_dir": settings.data_dir,
            "log_level": settings.log_level,
            "device_name": settings.device_name,
        },
        "provider": {
            "kind": settings.provider.kind,
            "root": settings.provider.root,
            "timeout": settings.provider.timeout,
            "webdav": {
                "url": settings.provider.webdav_url,
                "username": settings.provider.webdav_username,
                "password": settings.provider.webdav_password,
            },
        },
        "backup": {
            "include_files": settings.backup.include_files,
            "include_settings": settings.backup.include_settings,
            "include_albums": settings.backup.include_albums,
            "include_targets": settings.backup.include_targets,
            "include_sessions": settings.backup.include_sessions,
            "include_thumbnails": settings.backup.include_thumbnails,
            "local_payload_mode": settings.backup.local_payload_mode,
            "conflict_strategy": settings.backup.conflict_strategy,
            "auto_backup_interval_hours": settings.backup.auto_backup_interval_hours,
        },
        "retry": {
            "max_retries": settings.retry.max_retries,
            "base_delay": settings.retry.base_delay,
            "max_delay": settings.retry.max_delay,
        },
    }


def to_backup_options(settings: Settings, **overrides: Any) -> BackupOptions:
    """
    Build BackupOptions from the configured defaults.

    Keyword overrides replace individual BackupOptions fields; None values
    are ignored so CLI flags that were not given keep the configured default.
    """
    defaults = settings.backup
    values: dict[str, Any] = {
        "include_files": defaults.include_files,
        "include_settings": defaults.include_settings,
        "include_albums": defaults.include_albums,
        "include_targets": defaults.include_targets,
        "include_sessions": defaults.include_sessions,
        "include_thumbnails": defaults.include_thumbnails,
        "local_payload_mode": defaults.local_payload_mode,
        "restore_conflict_strategy": defaults.conflict_strategy,
    }
    values.update({key: value for key, value in overrides.items() if value is not None})
    return BackupOptions(**values)


def to_provider_config(settings: Settings) -> ProviderConfig:
    provider = settings.provider
    return ProviderConfig(
        kind=provider.kind,
        root=provider.root or None,
        webdav_url=provider.webdav_url or None,
        webdav_username=provider.webdav_username or None,
        webdav_password=provider.webdav_password or None,
        timeout=provider.timeout,
    )


def to_retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.retry.max_retries,
        base_delay=settings.retry.base_delay,
        max_delay=settings.retry.max_delay,
    )
