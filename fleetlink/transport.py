"""UDP send helpers and local network address resolution."""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from typing import Callable

import psutil

from fleetlink.errors import SendFailure
from fleetlink.protocol.auth import signed
from fleetlink.protocol.envelope import CommandEnvelope, new_cmd_id, now_ms

logger = logging.getLogger(__name__)

BROADCAST_ADDRESS = "255.255.255.255"


@dataclass
class SendResult:
    sent_bytes: int
    envelope: CommandEnvelope


def create_udp_socket(port: int | None = None, host: str = "0.0.0.0") -> socket.socket:
    """Create an IPv4 UDP socket with broadcast enabled, optionally bound."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        if port is not None:
            sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    return sock


def build_envelope(
    action: str,
    payload: str | None = None,
    *,
    secret: str | None = None,
    include_cmd_id: bool = False,
    cmd_id: str | None = None,
    timestamp: int | None = None,
    force_payload_field: bool = False,
) -> CommandEnvelope:
    """Build a signed envelope the way every fleetlink sender does.

    The payload field is emitted only when non-empty or forced; a cmdId is
    attached when requested (the explicit one if given, otherwise a fresh
    short id).
    """
    action = action.strip()
    if not action:
        raise ValueError("Action is required.")

    envelope = CommandEnvelope(
        action=action,
        timestamp=int(timestamp) if timestamp is not None else now_ms(),
    )
    if payload or force_payload_field:
        envelope.payload = payload or ""
    if include_cmd_id:
        envelope.cmd_id = (cmd_id or "").strip() or new_cmd_id()
    return signed(secret, envelope)


class UdpSender:
    """Sends envelopes from a lazily created, broadcast-capable socket."""

    def __init__(self, socket_factory: Callable[[], socket.socket] = create_udp_socket) -> None:
        self._socket_factory = socket_factory
        self._sock: socket.socket | None = None

    def ensure_socket(self) -> socket.socket:
        if self._sock is None:
            self._sock = self._socket_factory()
        return self._sock

    def send(self, envelope: CommandEnvelope, host: str, port: int) -> SendResult:
        data = envelope.to_bytes()
        try:
            self.ensure_socket().sendto(data, (host, port))
        except OSError as e:
            raise SendFailure(f"failed to send '{envelope.action}' to {host}:{port}: {e}") from e
        return SendResult(sent_bytes=len(data), envelope=envelope)

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:
                logger.debug("Error closing sender socket", exc_info=True)
            self._sock = None


def local_ipv4_addresses() -> list[str]:
    """Non-loopback IPv4 addresses of interfaces that are up."""
    try:
        stats = psutil.net_if_stats()
        addrs = psutil.net_if_addrs()
    except (OSError, RuntimeError):
        logger.debug("Interface enumeration failed", exc_info=True)
        return []

    result = []
    for name, entries in addrs.items():
        stat = stats.get(name)
        if stat is not None and not stat.isup:
            continue
        for entry in entries:
            if entry.family != socket.AF_INET:
                continue
            if entry.address.startswith("127."):
                continue
            result.append(entry.address)
    return result


def resolve_local_ipv4(remote_address: str | None = None) -> str | None:
    """Pick the local IPv4 address a peer at *remote_address* can reach.

    Prefers an address in the same /24 as the peer, else the first usable
    address, else None.
    """
    candidates = local_ipv4_addresses()
    if not candidates:
        return None

    remote_parts = remote_address.split(".") if remote_address else []
    if len(remote_parts) == 4:
        for address in candidates:
            local_parts = address.split(".")
            if len(local_parts) == 4 and local_parts[:3] == remote_parts[:3]:
                return address
    return candidates[0]


def resolve_ipv4_endpoint(host: str, port: int) -> tuple[str, int] | None:
    """Resolve *host* to an IPv4 endpoint, or None if it has no IPv4 address."""
    try:
        infos = socket.getaddrinfo(host, port, socket.AF_INET, socket.SOCK_DGRAM)
    except (socket.gaierror, UnicodeError) as e:
        logger.warning("Failed to resolve host '%s': %s", host, e)
        return None
    for info in infos:
        address = info[4]
        return address[0], address[1]
    logger.warning("Could not resolve an IPv4 endpoint for '%s'", host)
    return None
