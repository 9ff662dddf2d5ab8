"""Configuration module for lessonrag."""

from .settings import Settings, load_settings, get_settings, reset_settings
from .loader import ConfigPaths, expand_env_vars, get_config_paths, init_local_config

__all__ = [
    "Settings",
    "load_settings",
    "get_settings",
    "reset_settings",
    "ConfigPaths",
    "expand_env_vars",
    "get_config_paths",
    "init_local_config",
]
