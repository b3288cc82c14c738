"""Host discovery: locates the dashboard without static configuration.

States: IDLE → SEARCHING → RESOLVED
                  ↺ (attempt timed out, next attempt)

  Each cycle broadcasts up to ``max_discovery_attempts`` DiscoverHost requests,
  each from a fresh ephemeral socket and each bounded by
  ``discovery_timeout``.  If the cycle ends unresolved the coordinator idles
  for ``discovery_retry_interval`` and starts another one, indefinitely,
  until the host is resolved by any means (a reply to a request or an unsolicited
  HostAnnouncement arriving on the command listener).
"""

from __future__ import annotations

import asyncio
import enum
import logging
import socket
import time
from dataclasses import dataclass
from typing import Callable

from fleetlink.config import DeviceConfig
from fleetlink.device.identity import DeviceIdentity
from fleetlink.errors import DiscoveryTimeout, MalformedEnvelope
from fleetlink.protocol.auth import verify
from fleetlink.protocol.envelope import CommandEnvelope, parse_envelope
from fleetlink.protocol.payloads import (
    DISCOVER_HOST,
    HOST_ANNOUNCEMENT,
    DiscoveryRequest,
    HostAnnouncement,
    is_action,
)
from fleetlink.transport import build_envelope, create_udp_socket, resolve_ipv4_endpoint

logger = logging.getLogger(__name__)

Address = tuple[str, int]

MIN_ATTEMPT_TIMEOUT = 0.25
MIN_RETRY_INTERVAL = 1.0
AUTO_HOST = "auto"


class DiscoveryState(enum.Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    RESOLVED = "resolved"


@dataclass
class DiscoveryStatus:
    """Snapshot for the "where is my host" query."""

    state: str
    enabled: bool
    host_address: str
    host_port: int
    attempts: int
    cycles: int
    registration_sent: bool
    last_attempt_at: float | None = None
    resolved_at: float | None = None


def _ephemeral_socket() -> socket.socket:
    sock = create_udp_socket(0)
    sock.setblocking(False)
    return sock


class DiscoveryCoordinator:
    """Client-side discovery handshake and the resolved host endpoint."""

    def __init__(
        self,
        config: DeviceConfig,
        identity: DeviceIdentity,
        socket_factory: Callable[[], socket.socket] = _ephemeral_socket,
    ) -> None:
        self.config = config
        self.identity = identity
        self._socket_factory = socket_factory
        self.state = DiscoveryState.RESOLVED if self.is_host_resolved else DiscoveryState.IDLE
        self.registration_sent = False
        self.attempts = 0
        self.cycles = 0
        self.last_attempt_at: float | None = None
        self.resolved_at: float | None = None
        self._cached_host: str | None = None
        self._cached_endpoint: Address | None = None
        self._callbacks: list[Callable[[], None]] = []

    # ── State ──────────────────────────────────────────────────────

    @property
    def is_host_resolved(self) -> bool:
        address = (self.config.host_address or "").strip()
        return bool(address) and address.lower() != AUTO_HOST

    def should_attempt_discovery(self) -> bool:
        return (
            not self.is_host_resolved
            and self.config.auto_discover
            and self.config.discovery_port > 0
            and self.config.max_discovery_attempts > 0
        )

    def on_resolved(self, callback: Callable[[], None]) -> None:
        """Register a callback fired whenever a host announcement is applied."""
        self._callbacks.append(callback)

    def status(self) -> DiscoveryStatus:
        return DiscoveryStatus(
            state=self.state.value,
            enabled=self.config.auto_discover,
            host_address=self.config.host_address,
            host_port=self.config.host_port,
            attempts=self.attempts,
            cycles=self.cycles,
            registration_sent=self.registration_sent,
            last_attempt_at=self.last_attempt_at,
            resolved_at=self.resolved_at,
        )

    # ── Discovery loop ─────────────────────────────────────────────

    async def run(self) -> bool:
        """Keep running discovery cycles until a host is resolved or discovery is off."""
        retry = max(MIN_RETRY_INTERVAL, self.config.discovery_retry_interval)
        while self.should_attempt_discovery():
            try:
                if await self.discover_once():
                    break
            except OSError as e:
                logger.warning("Discovery cycle failed: %s", e)

            if not self.should_attempt_discovery():
                break
            logger.info("No host found, retrying discovery in %.1fs", retry)
            await asyncio.sleep(retry)
        return self.is_host_resolved

    async def discover_once(self) -> bool:
        """Run one cycle of discovery attempts. True when a host was resolved."""
        self.cycles += 1
        request = self.build_discovery_request().to_bytes()
        timeout = max(MIN_ATTEMPT_TIMEOUT, self.config.discovery_timeout)
        target = (self.config.discovery_address, self.config.discovery_port)

        for attempt in range(1, self.config.max_discovery_attempts + 1):
            if self.is_host_resolved:
                return True
            self.state = DiscoveryState.SEARCHING
            self.attempts += 1
            self.last_attempt_at = time.time()
            try:
                announcement, remote = await self._attempt(request, target, timeout)
            except DiscoveryTimeout:
                logger.debug("Discovery attempt %d timed out after %.2fs", attempt, timeout)
                continue
            except OSError as e:
                logger.warning("Discovery attempt %d failed: %s", attempt, e)
                continue

            if self.apply_announcement(announcement, remote):
                logger.info(
                    "Discovered host %s:%d", self.config.host_address, self.config.host_port
                )
                return True

        if not self.is_host_resolved:
            self.state = DiscoveryState.IDLE
        return self.is_host_resolved

    def build_discovery_request(self) -> CommandEnvelope:
        request = DiscoveryRequest(
            device_id=self.identity.device_id,
            device_name=self.identity.device_name,
            platform=self.identity.platform,
            build_version=self.identity.build_version,
            scene=self.identity.scene,
            request_port=self.config.host_port,
            command_port=self.config.command_port,
        )
        return build_envelope(
            DISCOVER_HOST, request.to_json(), secret=self.config.shared_secret
        )

    async def _attempt(
        self, request: bytes, target: Address, timeout: float
    ) -> tuple[HostAnnouncement, Address]:
        """Send one request and wait for a HostAnnouncement on the same socket.

        The socket lives only for this attempt, so a late reply to an earlier
        request can never be mistaken for this one's.
        """
        loop = asyncio.get_running_loop()
        sock = self._socket_factory()
        try:
            await loop.sock_sendto(sock, request, target)
            deadline = loop.time() + timeout
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise DiscoveryTimeout(f"no host announcement within {timeout:.2f}s")
                try:
                    data, remote = await asyncio.wait_for(
                        loop.sock_recvfrom(sock, 65535), remaining
                    )
                except asyncio.TimeoutError:
                    raise DiscoveryTimeout(f"no host announcement within {timeout:.2f}s") from None

                envelope = self._parse_reply(data, remote)
                if envelope is not None:
                    return HostAnnouncement.from_payload(envelope.payload_json()), (remote[0], remote[1])
        finally:
            sock.close()

    def _parse_reply(self, data: bytes, remote: Address) -> CommandEnvelope | None:
        try:
            envelope = parse_envelope(data)
        except MalformedEnvelope as e:
            logger.warning("Discovery response parse error from %s: %s", remote[0], e)
            return None
        if not is_action(envelope.action, HOST_ANNOUNCEMENT):
            return None
        if not verify(self.config.shared_secret, envelope):
            logger.warning("Rejected unsigned host announcement from %s", remote[0])
            return None
        return envelope

    # ── Applying announcements ─────────────────────────────────────

    def apply_announcement(
        self, announcement: HostAnnouncement | None, remote: Address | None
    ) -> bool:
        """Adopt the host described by *announcement* (or its sender)."""
        address = announcement.host_address.strip() if announcement and announcement.host_address else ""
        if not address and remote is not None:
            address = remote[0]
        if not address:
            return False

        port = self.config.host_port
        if announcement is not None and announcement.host_port and announcement.host_port > 0:
            port = announcement.host_port

        address_changed = address.lower() != (self.config.host_address or "").lower()
        port_changed = port != self.config.host_port

        self.config.host_address = address
        self.config.host_port = port
        self.config.discovery_port = port

        if address_changed or port_changed:
            self.invalidate_endpoint()
            self.registration_sent = False

        self.state = DiscoveryState.RESOLVED
        self.resolved_at = time.time()

        for cb in list(self._callbacks):
            try:
                cb()
            except Exception:
                logger.exception("Error in host-resolved callback")
        return True

    def handle_command(self, envelope: CommandEnvelope, address: Address | None) -> None:
        """Command observer: apply unsolicited HostAnnouncement messages."""
        if not is_action(envelope.action, HOST_ANNOUNCEMENT):
            return
        announcement = None
        if envelope.payload:
            payload = envelope.payload_json()
            if payload is None:
                logger.warning("Host announcement payload is not a JSON object")
            else:
                announcement = HostAnnouncement.from_payload(payload)
        if self.apply_announcement(announcement, address):
            logger.info(
                "Host announced itself at %s:%d", self.config.host_address, self.config.host_port
            )

    # ── Endpoint cache ─────────────────────────────────────────────

    def resolve_endpoint(self) -> Address | None:
        """IPv4 endpoint of the resolved host, cached until the host changes."""
        if not self.is_host_resolved:
            return None
        if (
            self._cached_endpoint is not None
            and self._cached_host is not None
            and self._cached_host.lower() == self.config.host_address.lower()
            and self._cached_endpoint[1] == self.config.host_port
        ):
            return self._cached_endpoint

        endpoint = resolve_ipv4_endpoint(self.config.host_address, self.config.host_port)
        if endpoint is not None:
            self._cached_endpoint = endpoint
            self._cached_host = self.config.host_address
        return endpoint

    def invalidate_endpoint(self) -> None:
        self._cached_endpoint = None
        self._cached_host = None
