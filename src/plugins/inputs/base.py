"""
Input Plugin Base - Interface for the ways manifests enter the store.

The built-in HTTP plugin is the only input today; third-party inputs are
discovered through the registry.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from plugins.base import ObjectCallback


class InputPlugin(ABC):
    """
    An input writes manifests to the store and reports each write to the
    application through the callback given to ``start``.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Registry name, e.g. 'http'."""

    @property
    @abstractmethod
    def version(self) -> str:
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """Apply the merged environment and PLUGIN_CONFIGS settings."""

    @abstractmethod
    async def start(self, on_object_event: ObjectCallback) -> None:
        """
        Serve until stopped.

        Args:
            on_object_event: Awaited with ('applied' | 'deleted' | 'reconcile',
                object) after each write or explicit reconcile request.
        """

    @abstractmethod
    async def stop(self) -> None:
        pass

    @abstractmethod
    async def health_check(self) -> tuple[bool, str]:
        """Return ``(healthy, message)``."""

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Settings this plugin reads from the environment; none by default."""
        return {}

    def set_db_manager(self, db_manager: Any) -> None:
        """Hand the plugin the object store. Ignored unless overridden."""

    def set_event_bus(self, event_bus: Any) -> None:
        """Hand the plugin the event bus. Ignored unless overridden."""
