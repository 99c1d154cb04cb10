"""Configuration loading, validation and logging setup."""

from .config_parser import DEFAULT_CONFIG_PATH, Settings, load_settings, settings_from_mapping
from .logging_config import init_logging

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "Settings",
    "init_logging",
    "load_settings",
    "settings_from_mapping",
]
