"""Payload shapes for the built-in protocol actions.

The transport treats payloads as opaque strings; these helpers are used only
by the components that claim an action (discovery, registration, heartbeat).
Parsing is tolerant: unknown keys are ignored and wrongly-typed values are
treated as absent.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any

DISCOVER_HOST = "DiscoverHost"
HOST_ANNOUNCEMENT = "HostAnnouncement"
REGISTER_CLIENT = "RegisterClient"
HEARTBEAT = "Heartbeat"

_WIRE_NAMES = {
    "device_id": "deviceId",
    "device_name": "deviceName",
    "build_version": "buildVersion",
    "request_port": "requestPort",
    "command_port": "commandPort",
    "host_name": "hostName",
    "host_address": "hostAddress",
    "host_port": "hostPort",
}


def is_action(action: str, expected: str) -> bool:
    """Case-insensitive action match used for the built-in protocol actions."""
    return action.lower() == expected.lower()


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _port(value: Any) -> int | None:
    port = _int(value)
    if port is None or not 1 <= port <= 65535:
        return None
    return port


class _Payload:
    def to_payload(self) -> dict[str, Any]:
        return {
            _WIRE_NAMES.get(k, k): v
            for k, v in asdict(self).items()  # type: ignore[call-overload]
            if v is not None
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), separators=(",", ":"))


@dataclass
class DiscoveryRequest(_Payload):
    """Payload of a DiscoverHost request."""

    device_id: str | None = None
    device_name: str | None = None
    platform: str | None = None
    build_version: str | None = None
    scene: str | None = None
    request_port: int | None = None
    command_port: int | None = None

    @classmethod
    def from_payload(cls, data: dict | None) -> DiscoveryRequest:
        data = data or {}
        return cls(
            device_id=_str(data.get("deviceId")),
            device_name=_str(data.get("deviceName")),
            platform=_str(data.get("platform")),
            build_version=_str(data.get("buildVersion")),
            scene=_str(data.get("scene")),
            request_port=_port(data.get("requestPort")),
            command_port=_port(data.get("commandPort")),
        )


@dataclass
class HostAnnouncement(_Payload):
    """Payload of a HostAnnouncement, solicited or not."""

    host_name: str | None = None
    host_address: str | None = None
    host_port: int | None = None
    command_port: int | None = None

    @classmethod
    def from_payload(cls, data: dict | None) -> HostAnnouncement:
        data = data or {}
        return cls(
            host_name=_str(data.get("hostName")),
            host_address=_str(data.get("hostAddress")),
            host_port=_port(data.get("hostPort")),
            command_port=_port(data.get("commandPort")),
        )


@dataclass
class ClientRecord(_Payload):
    """Payload of RegisterClient and Heartbeat messages."""

    device_id: str | None = None
    device_name: str | None = None
    platform: str | None = None
    build_version: str | None = None
    ipv4: str | None = None
    scene: str | None = None
    command_port: int | None = None
    timestamp: int | None = None

    @classmethod
    def from_payload(cls, data: dict | None) -> ClientRecord:
        data = data or {}
        device_id = _str(data.get("deviceId")) or _str(data.get("deviceID"))
        return cls(
            device_id=device_id,
            device_name=_str(data.get("deviceName")),
            platform=_str(data.get("platform")),
            build_version=_str(data.get("buildVersion")),
            ipv4=_str(data.get("ipv4")),
            scene=_str(data.get("scene")),
            command_port=_port(data.get("commandPort")),
            timestamp=_int(data.get("timestamp")),
        )
