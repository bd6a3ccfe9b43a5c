"""
Main entry point for the ServiceTrait operator.

Wires the object store, the event bus, the controller and the input plugins
together and runs them until SIGINT or SIGTERM.
"""

import asyncio
import logging
import signal
from typing import Any, Dict, List, Optional

from config import Config, get_config
from controller import Controller, ControllerConfig
from db import DatabaseManager
from events import EventBus
from plugins.inputs.base import InputPlugin
from plugins.registry import PluginRegistry, get_registry, register_builtin_plugins

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    logging.getLogger().setLevel(level.upper())


class Application:
    """Owns the operator's components and their lifecycle."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.event_bus = EventBus()
        self.db: Optional[DatabaseManager] = None
        self.controller: Optional[Controller] = None
        self.input_plugins: List[InputPlugin] = []
        self.running = False

    async def initialize(self) -> None:
        logger.info("Initializing ServiceTrait operator")
        register_builtin_plugins()
        registry = get_registry()

        self.db = await self._open_store()
        self.controller = self._build_controller(registry)
        self.input_plugins = await self._load_input_plugins(registry)

        logger.info(
            f"Initialized with reconcilers {sorted(self.controller.reconcilers)} "
            f"and input plugins {[p.name for p in self.input_plugins]}"
        )

    async def _open_store(self) -> DatabaseManager:
        """Connect to PostgreSQL and bring the schema up to date."""
        settings = self.config.database
        db = DatabaseManager(
            host=settings.host,
            port=settings.port,
            database=settings.database,
            user=settings.user,
            password=settings.password,
            min_pool_size=settings.min_pool_size,
            max_pool_size=settings.max_pool_size,
            event_bus=self.event_bus,
        )
        await db.connect()
        await db.initialize_schema()
        return db

    def _build_controller(self, registry: PluginRegistry) -> Controller:
        settings = self.config.controller
        controller = Controller(
            db_manager=self.db,
            registry=registry,
            config=ControllerConfig(
                reconcile_interval=settings.reconcile_interval,
                max_concurrent_reconciles=settings.max_concurrent_reconciles,
                reconcile_wait=settings.reconcile_wait,
                enabled_reconcilers=self.config.plugins.enabled_reconciler_plugins,
            ),
            event_bus=self.event_bus,
        )
        controller.load_reconcilers()
        return controller

    async def _load_input_plugins(self, registry: PluginRegistry) -> List[InputPlugin]:
        """
        Initialize the enabled input plugins (all registered ones by default).

        A plugin's environment config is overlaid with its PLUGIN_CONFIGS
        entry. Unknown plugin names are logged and skipped.
        """
        plugins = []
        enabled = (
            self.config.plugins.enabled_input_plugins or registry.list_input_plugins()
        )
        for name in enabled:
            if not registry.has_input_plugin(name):
                logger.warning(f"Input plugin '{name}' not found, skipping")
                continue

            plugin_config: Dict[str, Any] = {
                **registry.get_input_plugin_config(name),
                **self.config.plugins.get_plugin_config(name),
            }
            plugin = await registry.get_input_plugin(name, plugin_config)
            plugin.set_db_manager(self.db)
            plugin.set_event_bus(self.event_bus)
            plugins.append(plugin)
        return plugins

    async def on_object_event(self, event_type: str, obj: Dict[str, Any]) -> None:
        """
        Callback for input plugins.

        Writes already reach the controller through the event bus; only
        explicit reconcile requests are forwarded.
        """
        name = obj.get("metadata", {}).get("name")
        logger.debug(f"Object event: {event_type} - {obj.get('kind')} {name}")
        if event_type == "reconcile" and self.controller:
            await self.controller.trigger_reconciliation(obj)

    async def start(self) -> None:
        if self.controller is None:
            await self.initialize()

        self.running = True
        logger.info("Starting ServiceTrait operator")

        tasks = [asyncio.create_task(self.controller.start())]
        tasks.extend(
            asyncio.create_task(plugin.start(self.on_object_event))
            for plugin in self.input_plugins
        )
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self) -> None:
        if not self.running:
            return
        logger.info("Stopping ServiceTrait operator")
        self.running = False

        if self.controller:
            await self.controller.stop()
        for plugin in self.input_plugins:
            await plugin.stop()
        if self.db:
            await self.db.close()

        logger.info("ServiceTrait operator stopped")


async def main():
    config = get_config()
    setup_logging(config.api.log_level)
    app = Application(config)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
