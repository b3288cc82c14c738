"""Registration and heartbeat reporting to the dashboard host."""

from __future__ import annotations

import asyncio
import logging

from fleetlink.config import DeviceConfig
from fleetlink.device.discovery import DiscoveryCoordinator
from fleetlink.device.identity import DeviceIdentity
from fleetlink.errors import SendFailure
from fleetlink.protocol.envelope import now_ms
from fleetlink.protocol.payloads import HEARTBEAT, REGISTER_CLIENT, ClientRecord
from fleetlink.transport import UdpSender, build_envelope, resolve_local_ipv4

logger = logging.getLogger(__name__)

MIN_HEARTBEAT_INTERVAL = 1.0


class ClientReporter:
    """Keeps the host's roster informed about this device."""

    def __init__(
        self,
        config: DeviceConfig,
        identity: DeviceIdentity,
        coordinator: DiscoveryCoordinator,
        sender: UdpSender | None = None,
    ) -> None:
        self.config = config
        self.identity = identity
        self.coordinator = coordinator
        self.sender = sender or UdpSender()
        self._heartbeat_task: asyncio.Task | None = None
        self._logged_missing_host = False

    # ── Messages ──────────────────────────────────────────────────

    def register(self) -> bool:
        """Send a RegisterClient record. Marks the registration as sent on success."""
        if not self.ensure_host_ready("registration"):
            return False
        record = ClientRecord(
            device_id=self.identity.device_id,
            device_name=self.identity.device_name,
            platform=self.identity.platform,
            build_version=self.identity.build_version,
            ipv4=resolve_local_ipv4(self.config.host_address) or "",
            scene=self.identity.scene,
            timestamp=now_ms(),
            command_port=self.config.command_port,
        )
        if self.send_command(REGISTER_CLIENT, record):
            self.coordinator.registration_sent = True
            return True
        return False

    def send_heartbeat(self) -> bool:
        if not self.ensure_host_ready("heartbeat"):
            return False
        record = ClientRecord(
            device_id=self.identity.device_id,
            scene=self.identity.scene,
            timestamp=now_ms(),
            command_port=self.config.command_port,
        )
        return self.send_command(HEARTBEAT, record, include_cmd_id=False)

    def set_scene(self, scene: str) -> None:
        """Record a scene change and tell the host right away."""
        if scene == self.identity.scene:
            return
        self.identity.scene = scene
        self.send_heartbeat()

    def send_command(
        self,
        action: str,
        record: ClientRecord | None = None,
        include_cmd_id: bool = True,
    ) -> bool:
        """Send one envelope to the resolved host. Never raises."""
        if not self.ensure_host_ready(f"sending '{action}'"):
            return False

        endpoint = self.coordinator.resolve_endpoint()
        if endpoint is None:
            return False

        envelope = build_envelope(
            action,
            record.to_json() if record is not None else None,
            secret=self.config.shared_secret,
            include_cmd_id=include_cmd_id,
        )
        try:
            self.sender.send(envelope, endpoint[0], endpoint[1])
        except SendFailure as e:
            logger.warning("Failed to send '%s' message: %s", action, e)
            return False
        logger.debug("Sent %s to %s:%d", action, endpoint[0], endpoint[1])
        return True

    def ensure_host_ready(self, context: str) -> bool:
        """True once the host is known; otherwise log the reason once."""
        if self.coordinator.is_host_resolved:
            self._logged_missing_host = False
            return True
        if self._logged_missing_host:
            return False
        reason = (
            "host has not responded to discovery yet"
            if self.config.auto_discover
            else "host address is not configured"
        )
        logger.warning("Skipped %s: %s", context, reason)
        self._logged_missing_host = True
        return False

    # ── Reporting lifecycle ───────────────────────────────────────

    def maybe_start_reporting(self, force_register: bool = False) -> None:
        """Register with a newly resolved host (once) and start heartbeats."""
        if not self.coordinator.is_host_resolved:
            return
        self._logged_missing_host = False
        if not self.coordinator.registration_sent and (force_register or self.config.register_on_start):
            self.register()
        self.start_heartbeat()

    def start_heartbeat(self) -> None:
        if (
            self.config.heartbeat_interval <= 0
            or self._heartbeat_task is not None
            or not self.coordinator.is_host_resolved
        ):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, heartbeat not started")
            return
        self._heartbeat_task = loop.create_task(self.heartbeat_loop())

    async def stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    async def heartbeat_loop(self) -> None:
        interval = max(MIN_HEARTBEAT_INTERVAL, self.config.heartbeat_interval)
        while True:
            await asyncio.sleep(interval)
            self.send_heartbeat()

    def close(self) -> None:
        self.sender.close()
