"""
Configuration management for cobaltsync.
"""

from cobaltsync.config.settings import (
    ConfigurationError,
    Settings,
    load_config,
    save_config,
)

__all__ = [
    "Settings",
    "load_config",
    "save_config",
    "ConfigurationError",
]
