"""Configuration module for loading and managing application settings"""
from typing import Dict, Any, Optional
from .lib.load_settings_conf import (
    DEFAULTS,
    SettingsError,
    load_settings_conf,
    validate_settings,
)
import configparser

__all__ = ['DEFAULTS', 'SettingsError', 'load_config', 'get_settings', 'validate_settings']

def load_config(config_path: Optional[str] = None) -> configparser.ConfigParser:
    """Load configuration from file.

    Args:
        config_path: Optional path to config file. If not provided,
                    will look for settings.conf in current directory.

    Returns:
        ConfigParser object with loaded settings
    """
    config = configparser.ConfigParser(defaults=DEFAULTS)

    if config_path:
        config.read(config_path)
    else:
        config.read('settings.conf')

    return config

def get_settings(settings_path: Optional[str] = None) -> Dict[str, Any]:
    """Return validated settings.

    With a ``settings_path`` the directory must hold a complete settings.conf;
    without one, settings.conf in the working directory is read if present
    and defaults fill the rest.
    """
    try:
        if settings_path is not None:
            settings = load_settings_conf(settings_path)
        else:
            settings = dict(load_config().defaults())
        return validate_settings(settings)
    except SettingsError as e:
        # Re-raise the error but provide more context
        raise SettingsError(
            f"Configuration Error\n"
            "=================\n\n"
            f"{str(e)}\n\n"
            "Please ensure settings.conf is properly configured.\n"
            "See settings.conf.example for the available keys."
        ) from e
