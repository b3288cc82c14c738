"""Wire envelope for the UDP command protocol.

One envelope per datagram, UTF-8 JSON text with a flat field map::

    {"action": "Beep", "timestamp": 1700000000000,
     "payload": "...", "cmdId": "1a2b3c4d", "signature": "..."}

``payload`` is an opaque string (usually JSON itself) and is never inspected
by the transport.  Acknowledgements use a separate shape::

    {"cmdId": "1a2b3c4d", "status": "received", "receivedTimestamp": 1700000000123}
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any

from fleetlink.errors import MalformedEnvelope

# Timestamps above this are milliseconds, anything at or below is seconds.
MILLISECOND_THRESHOLD = 9_999_999_999

ACK_STATUS_RECEIVED = "received"

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def now_ms() -> int:
    """Current wall-clock time as Unix milliseconds."""
    return int(time.time() * 1000)


def new_cmd_id() -> str:
    """Short opaque command id (8 hex characters)."""
    return uuid.uuid4().hex[:8]


def timestamp_to_seconds(timestamp: int) -> float:
    """Convert a wire timestamp to Unix seconds using the dual-unit rule."""
    if timestamp > MILLISECOND_THRESHOLD:
        return timestamp / 1000.0
    return float(timestamp)


@dataclass
class CommandEnvelope:
    """A single protocol message."""

    action: str
    payload: str | None = None
    timestamp: int = 0
    cmd_id: str | None = None
    signature: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"action": self.action, "timestamp": self.timestamp}
        if self.payload is not None:
            data["payload"] = self.payload
        if self.cmd_id:
            data["cmdId"] = self.cmd_id
        if self.signature:
            data["signature"] = self.signature
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def to_bytes(self) -> bytes:
        return self.to_json().encode("utf-8")

    def with_signature(self, signature: str | None) -> CommandEnvelope:
        return replace(self, signature=signature)

    def payload_json(self) -> dict[str, Any] | None:
        """Decode the payload as a JSON object, or None if it is not one."""
        if not self.payload:
            return None
        try:
            value = json.loads(self.payload)
        except ValueError:
            return None
        return value if isinstance(value, dict) else None


@dataclass
class Acknowledgement:
    """Receipt sent back to the originator of an accepted command."""

    cmd_id: str | None
    received_timestamp: int
    status: str = ACK_STATUS_RECEIVED

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.cmd_id:
            data["cmdId"] = self.cmd_id
        data["status"] = self.status
        data["receivedTimestamp"] = self.received_timestamp
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def for_command(cls, envelope: CommandEnvelope) -> Acknowledgement:
        return cls(cmd_id=envelope.cmd_id, received_timestamp=now_ms())


def parse_acknowledgement(data: str | bytes) -> Acknowledgement | None:
    """Decode *data* as an acknowledgement, or None if it has another shape.

    Anything carrying an ``action`` is an envelope, not an acknowledgement.
    """
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        raw = json.loads(data)
    except ValueError:
        return None
    if not isinstance(raw, dict) or "action" in raw:
        return None

    status = raw.get("status")
    received = raw.get("receivedTimestamp")
    cmd_id = raw.get("cmdId")
    if not isinstance(status, str) or isinstance(received, bool) or not isinstance(received, int):
        return None
    if cmd_id is not None and not isinstance(cmd_id, str):
        return None
    return Acknowledgement(cmd_id=cmd_id or None, received_timestamp=received, status=status)


def canonical_string(envelope: CommandEnvelope) -> str:
    """The exact text that is signed and verified."""
    return f"{envelope.action}|{envelope.payload or ''}|{envelope.timestamp}"


def parse_envelope(data: str | bytes) -> CommandEnvelope:
    """Decode one datagram into an envelope.

    Raises:
        MalformedEnvelope: the data is not a JSON object, or ``action`` is
            missing or empty, or a field has the wrong type.
    """
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedEnvelope(f"not UTF-8: {e}") from e

    if not data or not data.strip():
        raise MalformedEnvelope("empty datagram")

    try:
        raw = json.loads(data)
    except ValueError as e:
        raise MalformedEnvelope(f"invalid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise MalformedEnvelope("envelope is not a JSON object")

    action = raw.get("action")
    if not isinstance(action, str) or not action:
        raise MalformedEnvelope("missing action")

    payload = raw.get("payload")
    if payload is not None and not isinstance(payload, str):
        raise MalformedEnvelope("payload must be a string")

    return CommandEnvelope(
        action=action,
        payload=payload,
        timestamp=_parse_timestamp(raw.get("timestamp")),
        cmd_id=_optional_str(raw.get("cmdId"), "cmdId"),
        signature=_optional_str(raw.get("signature"), "signature"),
    )


def _parse_timestamp(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise MalformedEnvelope("timestamp must be an integer")
    if isinstance(value, float):
        try:
            value = int(value)
        except (OverflowError, ValueError) as e:
            raise MalformedEnvelope("timestamp is not finite") from e
    if not isinstance(value, int):
        raise MalformedEnvelope("timestamp must be an integer")
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise MalformedEnvelope("timestamp out of range")
    return value


def _optional_str(value: Any, name: str) -> str | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise MalformedEnvelope(f"{name} must be a string")
    return value
