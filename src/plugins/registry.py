"""
Plugin Registry - registration and instantiation of plugins.

Input plugins are keyed by name. Reconciler plugins are keyed by name and by
every resource kind they own; a kind has exactly one owning reconciler.
"""

import logging
from dataclasses import dataclass
from importlib.metadata import entry_points
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from plugins.inputs.base import InputPlugin
from plugins.reconcilers.base import ReconcilerPlugin
from validation import validate_openapi_schema

logger = logging.getLogger(__name__)

RECONCILER_ENTRY_POINT_GROUP = "servicetrait.reconcilers"

P = TypeVar("P")


@dataclass
class Registration(Generic[P]):
    """A registered plugin class, its description and its lazy instance."""

    plugin_class: Type[P]
    info: Dict[str, Any]
    instance: Optional[P] = None


class PluginRegistry:
    """Central registry for input and reconciler plugins."""

    def __init__(self):
        self._inputs: Dict[str, Registration[InputPlugin]] = {}
        self._input_configs: Dict[str, Dict[str, Any]] = {}
        self._reconcilers: Dict[str, Registration[ReconcilerPlugin]] = {}
        # resource kind -> reconciler name
        self._owners: Dict[str, str] = {}

    def register_input_plugin(self, plugin_class: Type[InputPlugin]) -> None:
        """Register an input plugin class and load its environment config."""
        probe = plugin_class()
        if probe.name in self._inputs:
            logger.warning(f"Overwriting existing input plugin: {probe.name}")

        self._inputs[probe.name] = Registration(
            plugin_class, {"name": probe.name, "version": probe.version}
        )
        self._input_configs[probe.name] = plugin_class.load_config_from_env()
        logger.info(f"Registered input plugin: {probe.name} v{probe.version}")

    def register_reconciler_plugin(self, plugin_class: Type[ReconcilerPlugin]) -> None:
        """
        Register a reconciler plugin class.

        Raises:
            ValueError: If one of its kinds is owned by another reconciler,
                or the schema it publishes for a kind is not valid JSON Schema
        """
        probe = plugin_class()
        name = probe.name

        for kind in probe.resource_types:
            owner = self._owners.get(kind)
            if owner is not None and owner != name:
                raise ValueError(
                    f"Resource type '{kind}' is already claimed by "
                    f"reconciler '{owner}'. Cannot register '{name}'."
                )
            schema = probe.spec_schema(kind)
            if schema is None:
                continue
            is_valid, error = validate_openapi_schema(schema)
            if not is_valid:
                raise ValueError(
                    f"Reconciler '{name}' publishes an invalid schema "
                    f"for '{kind}': {error}"
                )

        if name in self._reconcilers:
            logger.warning(f"Overwriting existing reconciler plugin: {name}")

        self._reconcilers[name] = Registration(
            plugin_class,
            {
                "name": name,
                "resource_types": list(probe.resource_types),
                "watches": [f"{w.kind}.{w.api_version}" for w in probe.watches],
            },
        )
        self._owners.update((kind, name) for kind in probe.resource_types)
        logger.info(
            f"Registered reconciler plugin: {name} "
            f"(resource types: {', '.join(probe.resource_types)})"
        )

    async def get_input_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> InputPlugin:
        """
        Get the input plugin instance, initializing it on first use.

        Raises:
            ValueError: If the plugin name is not registered
        """
        registration = self._inputs.get(name)
        if registration is None:
            available = ", ".join(self._inputs) or "none"
            raise ValueError(
                f"Unknown input plugin: {name}. Available plugins: {available}"
            )

        if registration.instance is None:
            plugin = registration.plugin_class()
            await plugin.initialize(config or {})
            registration.instance = plugin
            logger.info(f"Initialized input plugin: {name}")
        return registration.instance

    def get_reconciler_plugin(self, name: str) -> ReconcilerPlugin:
        """
        Get the reconciler instance, creating it on first use.

        Raises:
            ValueError: If the reconciler name is not registered
        """
        registration = self._reconcilers.get(name)
        if registration is None:
            available = ", ".join(self._reconcilers) or "none"
            raise ValueError(
                f"Unknown reconciler plugin: {name}. "
                f"Available reconcilers: {available}"
            )

        if registration.instance is None:
            registration.instance = registration.plugin_class()
            logger.info(f"Instantiated reconciler plugin: {name}")
        return registration.instance

    def list_input_plugins(self) -> List[str]:
        return list(self._inputs)

    def list_reconciler_plugins(self) -> List[str]:
        return list(self._reconcilers)

    def has_input_plugin(self, name: str) -> bool:
        return name in self._inputs

    def has_reconciler_for_resource_type(self, kind: str) -> bool:
        return kind in self._owners

    def get_reconciler_for_resource_type(
        self, kind: str
    ) -> Optional[ReconcilerPlugin]:
        """The reconciler owning a resource kind, or None."""
        name = self._owners.get(kind)
        return self.get_reconciler_plugin(name) if name else None

    def get_spec_schema(self, kind: str) -> Optional[Dict[str, Any]]:
        """Spec schema published for a resource kind by its owner, if any."""
        reconciler = self.get_reconciler_for_resource_type(kind)
        return reconciler.spec_schema(kind) if reconciler else None

    def get_input_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        """Name and version of a registered input plugin, or None."""
        registration = self._inputs.get(name)
        return registration.info if registration else None

    def get_reconciler_plugin_info(self, name: str) -> Optional[Dict[str, Any]]:
        """Name, resource types and watched kinds of a reconciler, or None."""
        registration = self._reconcilers.get(name)
        return registration.info if registration else None

    def get_input_plugin_config(self, name: str) -> Dict[str, Any]:
        """Environment-loaded configuration of an input plugin."""
        return self._input_configs.get(name, {})


_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_plugins() -> None:
    """
    Register the HTTP input plugin, the ServiceTrait reconciler and any
    reconciler installed under the 'servicetrait.reconcilers' entry point group.

    A third-party reconciler that fails to load or conflicts with an
    already registered one is logged and skipped.
    """
    from plugins.inputs.http import HTTPInputPlugin
    from plugins.reconcilers.servicetrait import ServiceTraitReconciler

    registry = get_registry()
    registry.register_input_plugin(HTTPInputPlugin)
    registry.register_reconciler_plugin(ServiceTraitReconciler)

    for ep in entry_points(group=RECONCILER_ENTRY_POINT_GROUP):
        try:
            registry.register_reconciler_plugin(ep.load())
        except (ImportError, AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Could not load reconciler plugin {ep.name}: {e}")
