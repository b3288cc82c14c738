"""fleetlink dashboard host entry point.

Usage:
    python -m fleetlink.host [--config CONFIG_PATH] [--port UDP_PORT] [--api-port HTTP_PORT]
"""

from __future__ import annotations

import argparse
import logging

import uvicorn

from fleetlink.config import HostConfig
from fleetlink.host.api import create_app
from fleetlink.host.service import HostService


def main() -> None:
    parser = argparse.ArgumentParser(description="fleetlink dashboard host")
    parser.add_argument("--config", "-c", default=None, help="Path to host config.json")
    parser.add_argument("--port", type=int, default=None, help="UDP listen port (default 4949)")
    parser.add_argument("--secret", default=None, help="Shared secret for signatures")
    parser.add_argument("--api-host", default=None, help="HTTP API bind address")
    parser.add_argument("--api-port", type=int, default=None, help="HTTP API port")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = HostConfig.load(args.config) if args.config else HostConfig()
    config.apply_env()
    if args.port is not None:
        config.listen_port = args.port
    if args.secret is not None:
        config.shared_secret = args.secret
    if args.api_host:
        config.api_host = args.api_host
    if args.api_port:
        config.api_port = args.api_port

    app = create_app(HostService(config))
    uvicorn.run(app, host=config.api_host, port=config.api_port, log_level="debug" if args.debug else "info")


if __name__ == "__main__":
    main()
