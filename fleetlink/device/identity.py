"""Identity a device reports in discovery requests, registrations and heartbeats."""

from __future__ import annotations

import platform
import socket
import uuid
from dataclasses import dataclass

from fleetlink import __version__
from fleetlink.config import DeviceConfig


@dataclass
class DeviceIdentity:
    device_id: str
    device_name: str = ""
    platform: str = ""
    build_version: str = ""
    scene: str = ""

    @classmethod
    def detect(cls, config: DeviceConfig) -> DeviceIdentity:
        """Fill in anything the config leaves blank from the local machine."""
        hostname = socket.gethostname()
        return cls(
            device_id=config.device_id or generate_device_id(),
            device_name=config.device_name or hostname,
            platform=platform.system() or "unknown",
            build_version=__version__,
            scene=config.scene,
        )


def generate_device_id() -> str:
    """Stable per-machine id derived from the hardware address."""
    return f"dev-{uuid.getnode():012x}"
