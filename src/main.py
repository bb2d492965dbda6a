"""
Main entry point for the hardware plugin operator.

Registers hooks, connects the object store, bridges its change
notifications onto the event bus and runs the controller next to the
input plugins.
"""

import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional

from config import Config, get_config
from controller import Controller
from db import DatabaseManager
from errors import FatalConfigError
from events import EventBus
from plugins.inputs.base import InputPlugin
from plugins.registry import get_registry, register_builtin_plugins

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controller and plugins."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.db: Optional[DatabaseManager] = None
        self.controller: Optional[Controller] = None
        self.event_bus: Optional[EventBus] = None
        self.input_plugins: List[InputPlugin] = []
        self.running = False
        self._stopping = False
        self._init_lock = asyncio.Lock()

    async def initialize(self):
        """
        Initialize all components.

        Raises:
            FatalConfigError: If hook registration or kind selection fails.
                Nothing has been served at that point.
        """
        async with self._init_lock:
            await self._initialize()

    async def _initialize(self):
        logger.info("Initializing hardware plugin operator")

        register_builtin_plugins()
        registry = get_registry()

        self.event_bus = EventBus()

        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        await self.db.watch(self.event_bus.publish)
        logger.info("Database initialized")

        self.controller = Controller(
            store=self.db,
            registry=registry,
            config=self.config.controller,
            plugin_config=self.config.plugins,
            event_bus=self.event_bus,
        )
        await self.controller.setup()

        for plugin_name in registry.list_input_plugins():
            # Env-loaded config with PLUGIN_CONFIGS overrides
            plugin_config = dict(registry.get_input_plugin_config(plugin_name))
            plugin_config.update(self.config.plugins.get_plugin_config(plugin_name))

            plugin = await registry.get_input_plugin(plugin_name, plugin_config)
            plugin.set_store(self.db)
            plugin.set_registry(registry)
            plugin.set_event_bus(self.event_bus)
            self.input_plugins.append(plugin)

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        if self._stopping:
            logger.info("Shutdown requested during initialization")
            return

        self.running = True
        logger.info("Starting hardware plugin operator")

        tasks = [asyncio.create_task(self.controller.start())]
        for plugin in self.input_plugins:
            tasks.append(asyncio.create_task(plugin.start(self.controller.trigger)))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """
        Stop the application gracefully.

        Waits for an in-flight initialize to finish before tearing down.
        """
        self._stopping = True
        async with self._init_lock:
            if not self.running and self.db is None:
                return
            logger.info("Stopping hardware plugin operator")
            self.running = False

            if self.controller:
                await self.controller.stop()

            for plugin in self.input_plugins:
                await plugin.stop()

            if self.db:
                await self.db.close()
                self.db = None

            logger.info("Hardware plugin operator stopped")


async def main() -> int:
    """Main entry point. Returns the process exit code."""
    app = Application()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except FatalConfigError as e:
        logger.error(f"Fatal configuration error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()
    return 0


def run():
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
