"""
Configuration loader with YAML + environment variable support.

Reads two files from the config/ directory:
- config.yaml: system, monitor, execution, backends, storage, notifications
- strategies.yaml: default exit-rule template and the strategies to seed

${VAR} and ${VAR:default} placeholders are expanded anywhere inside string
values. A handful of deployment settings can then be overridden from the
environment (see ENV_OVERRIDES) before the result is validated as AppConfig.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import yaml
from dotenv import load_dotenv

from trader_tony.config.settings import AppConfig


logger = logging.getLogger(__name__)

# src/trader_tony/config -> repo root
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent.parent

load_dotenv(PROJECT_ROOT / ".env")

MAIN_CONFIG = "config"
STRATEGY_CONFIG = "strategies"

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::([^}]*))?\}")

# env var -> (section, key, converter)
ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
    "ENVIRONMENT": ("system", "environment", str.lower),
    "LOG_LEVEL": ("system", "log_level", str.upper),
    "DATA_DIR": ("system", "data_dir", str),
    "API_PORT": ("system", "api_port", int),
    "TRADING_MODE": ("execution", "mode", str.lower),
    "TICK_INTERVAL_SECONDS": ("monitor", "tick_interval_seconds", float),
    "DATABASE_PATH": ("storage", "database_path", str),
}


def expand_placeholders(value: Any) -> Any:
    """Recursively expand ${VAR} / ${VAR:default} in strings."""
    if isinstance(value, dict):
        return {k: expand_placeholders(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_placeholders(item) for item in value]
    if isinstance(value, str) and "${" in value:
        return _PLACEHOLDER.sub(_resolve_placeholder, value)
    return value


def _resolve_placeholder(match: "re.Match") -> str:
    name, default = match.group(1), match.group(2)
    value = os.getenv(name)
    if value is not None:
        return value
    if default is not None:
        return default.strip()
    logger.warning(f"Environment variable {name} not set, using empty string")
    return ""


# ============================================================================
# ConfigLoader
# ============================================================================

class ConfigLoader:
    """
    Builds a validated AppConfig from config/ and the environment.

    The result is cached per loader; reload() re-reads the files.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir else (PROJECT_ROOT / "config")
        self._cached: Optional[AppConfig] = None
        logger.debug(f"ConfigLoader using {self.config_dir}")

    def load_yaml(self, config_name: str) -> Dict[str, Any]:
        """
        Load config/<config_name>.yaml with placeholders expanded.

        Raises:
            FileNotFoundError: If the file doesn't exist
        """
        config_path = self.config_dir / f"{config_name}.yaml"
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{config_path} must contain a mapping, got {type(data).__name__}")
        return expand_placeholders(data)

    def _load_optional(self, config_name: str) -> Dict[str, Any]:
        try:
            return self.load_yaml(config_name)
        except FileNotFoundError:
            logger.warning(f"{config_name}.yaml not found, using defaults")
            return {}

    def load_app_config(self, use_cache: bool = True) -> AppConfig:
        """
        Load, override and validate the application configuration.

        Raises:
            pydantic.ValidationError: If the merged settings are invalid
        """
        if use_cache and self._cached is not None:
            return self._cached

        data = self._load_optional(MAIN_CONFIG)

        strategy_file = self._load_optional(STRATEGY_CONFIG)
        if "exit_rules" in strategy_file:
            data["exit_rules"] = strategy_file["exit_rules"]
        if strategy_file.get("strategies"):
            data["strategies"] = strategy_file["strategies"]

        self._apply_env_overrides(data)

        try:
            config = AppConfig(**data)
        except Exception as e:
            logger.error(f"Configuration validation failed: {e}")
            raise

        logger.info(
            f"Configuration loaded: {config.execution.mode} mode, "
            f"{len(config.strategies)} strategies, tick {config.monitor.tick_interval_seconds}s"
        )
        if use_cache:
            self._cached = config
        return config

    @staticmethod
    def _apply_env_overrides(data: Dict[str, Any]) -> None:
        for env_var, (section, key, convert) in ENV_OVERRIDES.items():
            raw = os.getenv(env_var)
            if not raw:
                continue
            data.setdefault(section, {})[key] = convert(raw)
            logger.debug(f"{section}.{key} overridden by {env_var}")

    def reload(self) -> AppConfig:
        """Drop the cached config and read the files again."""
        self._cached = None
        return self.load_app_config()


# ============================================================================
# Global Access
# ============================================================================

_global_loader: Optional[ConfigLoader] = None


def get_config_loader() -> ConfigLoader:
    """Get or create the process-wide ConfigLoader."""
    global _global_loader
    if _global_loader is None:
        _global_loader = ConfigLoader()
    return _global_loader


def get_app_config(use_cache: bool = True) -> AppConfig:
    return get_config_loader().load_app_config(use_cache=use_cache)


def reload_config() -> AppConfig:
    return get_config_loader().reload()
