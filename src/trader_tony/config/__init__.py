"""
Configuration management module.

Loads configuration from YAML files and provides easy access.
"""

from .loader import ConfigLoader, get_app_config, get_config_loader, reload_config
from .settings import AppConfig

__all__ = ['AppConfig', 'ConfigLoader', 'get_app_config', 'get_config_loader', 'reload_config']
