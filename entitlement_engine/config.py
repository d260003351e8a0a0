"""Loads entitlements.yaml: Pro products, grace default, store and watcher settings.

The file is optional. Without it the engine runs with built-in defaults (no
catalog restriction, in-memory store, wall clock).
"""

import os
from datetime import timedelta
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from entitlement_engine.errors import EntitlementEngineError
from entitlement_engine.logging_config import get_logger
from entitlement_engine.models.settings import EngineSettings, StoreSettings, WatcherSettings
from entitlement_engine.utils.billing_period import billing_period_to_timedelta

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = "config/entitlements.yaml"


class ConfigurationError(EntitlementEngineError):
    """entitlements.yaml is unreadable, malformed or fails validation."""


class Config:
    """Validated view of entitlements.yaml.

    The path comes from the argument, then CONFIG_PATH, then
    config/entitlements.yaml. A missing file is an error only when a path
    was given explicitly.
    """

    def __init__(self, config_path: Optional[str] = None):
        self._explicit = bool(config_path or os.getenv("CONFIG_PATH"))
        self._config_path = self._resolve_config_path(config_path)
        self._settings: Optional[EngineSettings] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path(DEFAULT_CONFIG_PATH)

    def _load_config(self) -> None:
        if not self._config_path.exists():
            if self._explicit:
                raise ConfigurationError(
                    f"Configuration file not found: {self._config_path}\n"
                    f"Please create it or unset CONFIG_PATH to use built-in defaults"
                )
            logger.info("config_defaults_used", config_path=str(self._config_path))
            self._settings = EngineSettings()
            return

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration: {e}") from e

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")
        if not isinstance(raw_config, dict):
            raise ConfigurationError(
                f"Configuration root must be a mapping: {self._config_path}"
            )

        try:
            self._settings = EngineSettings(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

        logger.info(
            "config_loaded",
            config_path=str(self._config_path),
            pro_products=len(self._settings.pro_products),
            store_backend=self._settings.store.backend,
        )

    @property
    def settings(self) -> EngineSettings:
        if self._settings is None:
            raise ConfigurationError("Configuration not loaded")
        return self._settings

    @property
    def config_path(self) -> Path:
        return self._config_path

    @property
    def default_grace_period(self) -> timedelta:
        """Grace window applied when a billing event omits the grace end."""
        return billing_period_to_timedelta(self.settings.default_grace_period)

    @property
    def pro_product_ids(self) -> list[str]:
        """Pro product ids; empty means every product counts as Pro."""
        return [product.id for product in self.settings.pro_products]

    @property
    def store_settings(self) -> StoreSettings:
        return self.settings.store

    @property
    def watcher_settings(self) -> WatcherSettings:
        return self.settings.watcher

    def reload(self) -> None:
        """Re-read the file. Components built from the old settings keep them."""
        self._load_config()


_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Shared Config, created on first use. config_path only applies to that first call."""
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def reload_config() -> None:
    """Reload the shared Config, creating it if needed."""
    global _config_instance
    if _config_instance:
        _config_instance.reload()
    else:
        _config_instance = Config()


def reset_config() -> None:
    """Drop the global configuration so the next get_config() reloads it."""
    global _config_instance
    _config_instance = None
