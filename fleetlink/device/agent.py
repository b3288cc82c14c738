"""Device agent: owns the listener, discovery and reporting for one device.

The process entry point constructs exactly one agent and hands it (or its
listener) to whatever needs to register command handlers.

  start():  bind command port → discover host → register → heartbeat
            while the dispatch loop delivers commands to handlers
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Any

from fleetlink.config import DeviceConfig
from fleetlink.device.discovery import DiscoveryCoordinator
from fleetlink.device.identity import DeviceIdentity
from fleetlink.device.listener import CommandListener
from fleetlink.device.reporter import ClientReporter
from fleetlink.dispatcher import CommandHandler

logger = logging.getLogger(__name__)


class DeviceAgent:
    """Wires a command listener, discovery coordinator and reporter together."""

    def __init__(
        self,
        config: DeviceConfig,
        identity: DeviceIdentity | None = None,
        listener: CommandListener | None = None,
    ) -> None:
        self.config = config
        self.identity = identity or DeviceIdentity.detect(config)
        self.listener = listener or CommandListener.from_config(config)
        self.coordinator = DiscoveryCoordinator(config, self.identity)
        self.reporter = ClientReporter(config, self.identity, self.coordinator)
        self._running = False

        self.listener.on_command(self.coordinator.handle_command)
        self.coordinator.on_resolved(self._on_host_resolved)

    def register_handler(self, action: str, handler: CommandHandler) -> None:
        self.listener.register_handler(action, handler)

    def unregister_handler(self, action: str, handler: CommandHandler) -> None:
        self.listener.unregister_handler(action, handler)

    async def start(self) -> None:
        """Bind the listener and run until cancelled.

        Raises:
            BindFailure: the command port is unavailable.
        """
        logger.info("=== fleetlink device agent ===")
        logger.info(
            "ID: %s | Name: %s | Command port: %d",
            self.identity.device_id, self.identity.device_name, self.config.command_port,
        )
        self.listener.start()
        self._running = True
        try:
            await asyncio.gather(
                self.listener.run_dispatch_loop(self.config.dispatch_interval),
                self._initialize(),
            )
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("Shutting down device agent...")
        self._running = False
        await self.reporter.stop_heartbeat()
        self.listener.stop()
        self.reporter.close()

    async def _initialize(self) -> None:
        if self.config.auto_discover:
            await self.coordinator.run()
        elif not self.coordinator.is_host_resolved:
            logger.warning("Host discovery disabled and no host address configured")
        self.reporter.maybe_start_reporting(force_register=self.config.register_on_start)

    def _on_host_resolved(self) -> None:
        self.reporter.maybe_start_reporting()

    def status(self) -> dict[str, Any]:
        return {
            "device": asdict(self.identity),
            "listening": self.listener.listening,
            "command_port": self.listener.port,
            "discovery": asdict(self.coordinator.status()),
            "heartbeat_running": self.reporter.heartbeat_running,
        }
