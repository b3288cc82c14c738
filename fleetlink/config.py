"""Configuration for fleetlink devices and hosts.

Both configs are plain dataclasses loaded from a JSON file (unknown keys are
ignored, a missing file yields defaults) and can be overridden from
``FLEETLINK_<FIELD>`` environment variables.  The entry points apply CLI
overrides on top.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

ENV_PREFIX = "FLEETLINK_"

DEFAULT_COMMAND_PORT = 3939
DEFAULT_HOST_PORT = 4949

_C = TypeVar("_C", bound="_FileConfig")


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


class _FileConfig:
    """JSON load/save and environment overrides shared by the configs."""

    @classmethod
    def load(cls: type[_C], path: str | Path) -> _C:
        path = Path(path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {f.name for f in dataclasses.fields(cls)}  # type: ignore[arg-type]
            filtered = {k: v for k, v in data.items() if k in known}
            return cls(**filtered)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(dataclasses.asdict(self), f, indent=2)  # type: ignore[call-overload]

    def apply_env(self, environ: dict[str, str] | None = None) -> None:
        """Override fields from ``FLEETLINK_<FIELD>`` environment variables."""
        environ = os.environ if environ is None else environ
        for f in dataclasses.fields(self):  # type: ignore[arg-type]
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                setattr(self, f.name, _coerce(raw, getattr(self, f.name)))
            except ValueError:
                logger.warning("Ignoring invalid %s%s=%r", ENV_PREFIX, f.name.upper(), raw)
        post_init = getattr(self, "__post_init__", None)
        if post_init is not None:
            post_init()

    @classmethod
    def from_env(cls: type[_C], environ: dict[str, str] | None = None) -> _C:
        config = cls()
        config.apply_env(environ)
        return config


@dataclass
class DeviceConfig(_FileConfig):
    """Device-side configuration: command listener, discovery and reporting."""

    device_id: str = ""
    device_name: str = ""
    scene: str = ""

    # Host
    host_address: str = "auto"
    host_port: int = DEFAULT_HOST_PORT
    shared_secret: str = ""

    # Command listener
    command_port: int = DEFAULT_COMMAND_PORT
    send_acknowledgement: bool = True
    stale_window_seconds: float = 5.0
    dispatch_interval: float = 0.05

    # Discovery
    auto_discover: bool = True
    discovery_port: int = DEFAULT_HOST_PORT
    discovery_address: str = "255.255.255.255"
    discovery_timeout: float = 2.0
    discovery_retry_interval: float = 5.0
    max_discovery_attempts: int = 3

    # Reporting
    register_on_start: bool = True
    heartbeat_interval: float = 10.0

    def __post_init__(self) -> None:
        self.command_port = min(max(int(self.command_port), 1), 65535)


@dataclass
class HostConfig(_FileConfig):
    """Dashboard-side configuration: listener, roster and HTTP API."""

    listen_port: int = DEFAULT_HOST_PORT
    host_name: str = ""
    shared_secret: str = ""
    stale_window_seconds: float = 0.0
    liveness_timeout: float = 10.0
    default_command_port: int = DEFAULT_COMMAND_PORT
    dispatch_interval: float = 0.05

    # HTTP API
    api_host: str = "0.0.0.0"
    api_port: int = 5200
