"""Dashboard host service: the host half of the protocol.

Handles the messages devices send to the dashboard port:

  DiscoverHost     → reply HostAnnouncement to the requester
  HostAnnouncement → remember the announced host (another dashboard)
  RegisterClient   → roster
  Heartbeat        → roster

and sends commands from the same socket, to one device or to a selection of
roster entries.  Action matching here is case-insensitive.
"""

from __future__ import annotations

import logging
import socket
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

from fleetlink.config import HostConfig
from fleetlink.dispatcher import AckObserver, BatchResult, CommandDispatcher
from fleetlink.endpoint import DatagramEndpoint
from fleetlink.errors import SendFailure
from fleetlink.host.roster import RosterTracker
from fleetlink.protocol.envelope import CommandEnvelope
from fleetlink.protocol.freshness import FreshnessFilter
from fleetlink.protocol.gate import EnvelopeGate
from fleetlink.protocol.payloads import (
    DISCOVER_HOST,
    HEARTBEAT,
    HOST_ANNOUNCEMENT,
    REGISTER_CLIENT,
    ClientRecord,
    DiscoveryRequest,
    HostAnnouncement,
    is_action,
)
from fleetlink.transport import BROADCAST_ADDRESS, SendResult, build_envelope, resolve_local_ipv4

logger = logging.getLogger(__name__)

Address = tuple[str, int]
PacketObserver = Callable[[CommandEnvelope, Address | None], None]


@dataclass
class SendRequest:
    """A command the dashboard wants sent."""

    action: str
    payload: str = ""
    include_cmd_id: bool = True
    cmd_id: str | None = None
    timestamp: int | None = None
    force_payload_field: bool = False
    shared_secret: str | None = None


@dataclass
class DiscoveredHost:
    host_name: str
    host_address: str
    host_port: int
    command_port: int


def validate_port(port: int, minimum: int = 1) -> int:
    if isinstance(port, bool) or not isinstance(port, int) or not minimum <= port <= 65535:
        raise ValueError(f"Port must be between {minimum} and 65535.")
    return port


class HostService:
    """Owns the dashboard's UDP endpoint and the device roster."""

    def __init__(
        self,
        config: HostConfig,
        roster: RosterTracker | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.roster = roster or RosterTracker(
            liveness_timeout=config.liveness_timeout,
            default_command_port=config.default_command_port,
            clock=clock,
        )
        self.discovered_host: DiscoveredHost | None = None
        self.dispatcher = CommandDispatcher(send_acknowledgement=False, warn_unhandled=False)
        self.dispatcher.on_command(self._route)
        gate = EnvelopeGate(
            config.shared_secret,
            FreshnessFilter(config.stale_window_seconds, clock=clock),
        )
        self.endpoint = DatagramEndpoint(config.listen_port, gate, self.dispatcher, name="HostService")
        self._observers: list[PacketObserver] = []

    # ── Lifecycle ──────────────────────────────────────────────────

    def start(self) -> None:
        """Bind the dashboard port. Raises BindFailure if it is taken."""
        self.endpoint.start()

    def stop(self) -> None:
        self.endpoint.stop()

    async def run_dispatch_loop(self) -> None:
        await self.endpoint.run_dispatch_loop(self.config.dispatch_interval)

    def set_listen_port(self, port: int) -> Address | None:
        """Rebind to *port* (0 picks an ephemeral port)."""
        validate_port(port, minimum=0)
        address = self.endpoint.rebind(port)
        self.config.listen_port = self.endpoint.port
        return address

    def on_packet(self, observer: PacketObserver) -> None:
        """Observe every admitted envelope (the dashboard's message log)."""
        self._observers.append(observer)

    def on_ack(self, observer: AckObserver) -> None:
        """Observe acknowledgements devices send back for our commands."""
        self.dispatcher.on_ack(observer)

    # ── Inbound ───────────────────────────────────────────────────

    def _route(self, envelope: CommandEnvelope, address: Address | None) -> None:
        for observer in list(self._observers):
            try:
                observer(envelope, address)
            except Exception:
                logger.exception("Packet observer error")

        action = envelope.action
        if is_action(action, DISCOVER_HOST):
            if address is not None:
                self.handle_discovery(envelope, address)
        elif is_action(action, HOST_ANNOUNCEMENT):
            self.handle_host_announcement(envelope)
        elif is_action(action, REGISTER_CLIENT) or is_action(action, HEARTBEAT):
            self.handle_client_record(envelope, address)

    def handle_discovery(self, envelope: CommandEnvelope, address: Address) -> None:
        reply = self.build_announcement(
            DiscoveryRequest.from_payload(envelope.payload_json()),
            remote_address=address[0],
            cmd_id=envelope.cmd_id,
        )
        try:
            self.endpoint.send_to(reply.to_bytes(), address)
            logger.info("Answered discovery from %s:%d", address[0], address[1])
        except OSError as e:
            logger.warning("Discovery response to %s failed: %s", address[0], e)

    def build_announcement(
        self,
        request: DiscoveryRequest | None = None,
        remote_address: str | None = None,
        cmd_id: str | None = None,
    ) -> CommandEnvelope:
        bound = self.endpoint.bound_address
        host_address = resolve_local_ipv4(remote_address) or (bound[0] if bound else "0.0.0.0")
        command_port = request.command_port if request and request.command_port else 0
        announcement = HostAnnouncement(
            host_name=self.config.host_name or socket.gethostname(),
            host_address=host_address,
            host_port=self.endpoint.port,
            command_port=command_port,
        )
        envelope = build_envelope(
            HOST_ANNOUNCEMENT,
            announcement.to_json(),
            secret=self.config.shared_secret,
        )
        if cmd_id:
            envelope.cmd_id = cmd_id
        return envelope

    def handle_host_announcement(self, envelope: CommandEnvelope) -> None:
        payload = envelope.payload_json()
        if payload is None:
            return
        announcement = HostAnnouncement.from_payload(payload)
        previous = self.discovered_host
        self.discovered_host = DiscoveredHost(
            host_name=announcement.host_name or "",
            host_address=announcement.host_address or "",
            host_port=announcement.host_port if announcement.host_port is not None
            else (previous.host_port if previous else 0),
            command_port=announcement.command_port if announcement.command_port is not None
            else (previous.command_port if previous else 0),
        )
        if self.discovered_host.command_port > 0:
            self.roster.default_command_port = self.discovered_host.command_port
        logger.info(
            "Host announcement: %s at %s:%d",
            self.discovered_host.host_name,
            self.discovered_host.host_address,
            self.discovered_host.host_port,
        )

    def handle_client_record(self, envelope: CommandEnvelope, address: Address | None) -> None:
        payload = envelope.payload_json()
        if payload is None:
            logger.debug("%s without payload ignored", envelope.action)
            return
        entry = self.roster.apply(
            ClientRecord.from_payload(payload),
            source_address=address[0] if address else None,
            source_port=address[1] if address else None,
        )
        logger.debug("%s from %s (%s)", envelope.action, entry.key, entry.remote_address)

    # ── Outbound ──────────────────────────────────────────────────

    def _build(self, request: SendRequest) -> CommandEnvelope:
        secret = request.shared_secret if request.shared_secret is not None else self.config.shared_secret
        return build_envelope(
            request.action,
            request.payload,
            secret=secret,
            include_cmd_id=request.include_cmd_id,
            cmd_id=request.cmd_id,
            timestamp=request.timestamp,
            force_payload_field=request.force_payload_field,
        )

    def _send(self, envelope: CommandEnvelope, host: str, port: int) -> SendResult:
        data = envelope.to_bytes()
        try:
            self.endpoint.send_to(data, (host, port))
        except (OSError, OverflowError, ValueError) as e:
            raise SendFailure(f"failed to send '{envelope.action}' to {host}:{port}: {e}") from e
        return SendResult(sent_bytes=len(data), envelope=envelope)

    def send_command(self, request: SendRequest, host: str, port: int) -> SendResult:
        """Send one command to an explicit host.

        Raises:
            ValueError: missing host or action, or port out of range.
            SendFailure: the datagram could not be sent.
        """
        host = (host or "").strip()
        if not host:
            raise ValueError("Target host is required.")
        validate_port(port)
        envelope = self._build(request)
        result = self._send(envelope, host, port)
        logger.info("Sent %s to %s:%d (%d bytes)", envelope.action, host, port, result.sent_bytes)
        return result

    def send_to_devices(self, keys: list[str], request: SendRequest) -> BatchResult:
        """Send *request* to each selected roster entry in turn.

        Every device gets its own envelope (own cmdId, own timestamp when
        none is given).
        """
        if not request.action:
            raise ValueError("Action is required.")
        targets = self.roster.targets(keys)
        return self.dispatcher.send_to_targets(
            targets, lambda host, port: self._send(self._build(request), host, port)
        )

    def announce(self, port: int | None = None, address: str = BROADCAST_ADDRESS) -> SendResult:
        """Broadcast an unsolicited HostAnnouncement to devices."""
        envelope = self.build_announcement(
            DiscoveryRequest(command_port=self.roster.default_command_port)
        )
        target_port = validate_port(port if port is not None else self.roster.default_command_port)
        result = self._send(envelope, address, target_port)
        logger.info("Announced host to %s:%d", address, target_port)
        return result

    # ── Queries ───────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        online, offline = self.roster.counts()
        return {
            "listening": self.endpoint.listening,
            "listen_port": self.endpoint.port,
            "discovered_host": asdict(self.discovered_host) if self.discovered_host else None,
            "devices": {"online": online, "offline": offline},
            "liveness_timeout": self.roster.liveness_timeout,
        }
