"""
Configuration for the ServiceTrait operator.

Every setting comes from an environment variable; unset variables fall back
to the dataclass defaults. Plugins receive their own settings through
PLUGIN_CONFIGS, a JSON object keyed by plugin name.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{value}'") from None


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if not value:
        return default
    return value.lower() in ("true", "1", "yes")


def _env_list(name: str) -> List[str]:
    value = os.getenv(name, "")
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class DatabaseConfig:
    """PostgreSQL object store configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "servicetrait_operator"
    user: str = "operator"
    password: str = field(default="", repr=False)
    min_pool_size: int = 5
    max_pool_size: int = 20

    def __post_init__(self):
        if self.min_pool_size > self.max_pool_size:
            raise ValueError(
                f"DB_MIN_POOL_SIZE ({self.min_pool_size}) cannot exceed "
                f"DB_MAX_POOL_SIZE ({self.max_pool_size})"
            )

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """
        Load from DB_* environment variables.

        Raises:
            ValueError: If DB_PASSWORD is unset or a number is malformed
        """
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )
        return cls(
            host=os.getenv("DB_HOST", cls.host),
            port=_env_int("DB_PORT", cls.port),
            database=os.getenv("DB_NAME", cls.database),
            user=os.getenv("DB_USER", cls.user),
            password=password,
            min_pool_size=_env_int("DB_MIN_POOL_SIZE", cls.min_pool_size),
            max_pool_size=_env_int("DB_MAX_POOL_SIZE", cls.max_pool_size),
        )


@dataclass
class ControllerConfig:
    """Work queue, resync and retry settings."""

    reconcile_interval: int = 300  # seconds between full resyncs
    max_concurrent_reconciles: int = 5
    reconcile_wait: int = 30  # seconds before a failed reconcile is retried

    def __post_init__(self):
        if self.max_concurrent_reconciles < 1:
            raise ValueError("MAX_CONCURRENT_RECONCILES must be at least 1")
        if self.reconcile_wait <= 0 or self.reconcile_interval <= 0:
            raise ValueError("RECONCILE_WAIT and RECONCILE_INTERVAL must be positive")

    @classmethod
    def from_env(cls) -> "ControllerConfig":
        return cls(
            reconcile_interval=_env_int("RECONCILE_INTERVAL", cls.reconcile_interval),
            max_concurrent_reconciles=_env_int(
                "MAX_CONCURRENT_RECONCILES", cls.max_concurrent_reconciles
            ),
            reconcile_wait=_env_int("RECONCILE_WAIT", cls.reconcile_wait),
        )


@dataclass
class APIConfig:
    """HTTP API and logging settings."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_enabled: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "APIConfig":
        return cls(
            host=os.getenv("API_HOST", cls.host),
            port=_env_int("API_PORT", cls.port),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            cors_enabled=_env_bool("CORS_ENABLED"),
            cors_origins=_env_list("CORS_ORIGINS") or ["*"],
        )


@dataclass
class PluginConfig:
    """Which plugins run, and their per-plugin settings."""

    # Empty lists mean every registered plugin
    enabled_input_plugins: List[str] = field(default_factory=list)
    enabled_reconciler_plugins: List[str] = field(default_factory=list)
    plugin_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "PluginConfig":
        return cls(
            enabled_input_plugins=_env_list("ENABLED_INPUT_PLUGINS"),
            enabled_reconciler_plugins=_env_list("ENABLED_RECONCILER_PLUGINS"),
            plugin_configs=cls._load_plugin_configs(os.getenv("PLUGIN_CONFIGS")),
        )

    @staticmethod
    def _load_plugin_configs(raw: Optional[str]) -> Dict[str, Dict[str, Any]]:
        if not raw:
            return {}
        try:
            configs = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring invalid PLUGIN_CONFIGS: {e}")
            return {}
        if not isinstance(configs, dict):
            logger.warning("Ignoring PLUGIN_CONFIGS: expected a JSON object")
            return {}
        return configs

    def get_plugin_config(self, plugin_name: str) -> Dict[str, Any]:
        """Settings for one plugin, empty if none were given."""
        return self.plugin_configs.get(plugin_name, {})


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    api: APIConfig
    plugins: PluginConfig

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
            plugins=PluginConfig.from_env(),
        )

    @classmethod
    def default(cls) -> "Config":
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
            plugins=PluginConfig(),
        )


config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration once; later calls return the same object."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    return load_config()


def reset_config() -> None:
    """Forget the loaded configuration (mainly for testing)."""
    global config
    config = None
