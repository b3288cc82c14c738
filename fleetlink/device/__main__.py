"""fleetlink device agent entry point.

Usage:
    python -m fleetlink.device [--config CONFIG_PATH] [--host ADDRESS] [--debug]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from fleetlink.config import DeviceConfig
from fleetlink.device.agent import DeviceAgent
from fleetlink.dispatcher import CommandHandler
from fleetlink.errors import BindFailure
from fleetlink.protocol.envelope import CommandEnvelope

logger = logging.getLogger("fleetlink.device")


def _log_command(envelope: CommandEnvelope) -> None:
    logger.info("Ping received (cmdId=%s, payload=%r)", envelope.cmd_id, envelope.payload)


DEFAULT_HANDLERS: dict[str, CommandHandler] = {"Ping": _log_command}


def main() -> None:
    parser = argparse.ArgumentParser(description="fleetlink device agent")
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to config.json (default: ~/.fleetlink/device.json if present)",
    )
    parser.add_argument("--host", default=None, help="Dashboard host address (disables discovery)")
    parser.add_argument("--host-port", type=int, default=None, help="Dashboard UDP port")
    parser.add_argument("--port", type=int, default=None, help="Command listen port")
    parser.add_argument("--secret", default=None, help="Shared secret for signatures")
    parser.add_argument("--name", default=None, help="Device display name")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config_path = args.config
    if config_path is None:
        candidate = Path.home() / ".fleetlink" / "device.json"
        if candidate.exists():
            config_path = str(candidate)

    if config_path:
        config = DeviceConfig.load(config_path)
        logger.info("Loaded config from %s", config_path)
    else:
        config = DeviceConfig()
    config.apply_env()

    if args.host:
        config.host_address = args.host
        config.auto_discover = False
    if args.host_port:
        config.host_port = args.host_port
        config.discovery_port = args.host_port
    if args.port:
        config.command_port = args.port
    if args.secret is not None:
        config.shared_secret = args.secret
    if args.name:
        config.device_name = args.name

    agent = DeviceAgent(config)
    for action, handler in DEFAULT_HANDLERS.items():
        agent.register_handler(action, handler)

    loop = asyncio.new_event_loop()
    main_task = loop.create_task(agent.start())

    def _shutdown(sig: int) -> None:
        logger.info("Received signal %d, shutting down", sig)
        main_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown, sig)

    try:
        loop.run_until_complete(main_task)
    except BindFailure as e:
        logger.error("%s", e)
        sys.exit(1)
    except asyncio.CancelledError:
        pass
    finally:
        loop.close()


if __name__ == "__main__":
    main()
