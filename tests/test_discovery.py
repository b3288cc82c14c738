"""Tests for host discovery and applying host announcements."""

from __future__ import annotations

import asyncio
import socket
import threading

import pytest

from fleetlink.config import DeviceConfig
from fleetlink.device.discovery import DiscoveryCoordinator, DiscoveryState
from fleetlink.device.identity import DeviceIdentity, generate_device_id
from fleetlink.protocol.auth import verify
from fleetlink.protocol.envelope import CommandEnvelope, parse_envelope
from fleetlink.protocol.payloads import HostAnnouncement
from fleetlink.transport import build_envelope


@pytest.fixture()
def identity():
    return DeviceIdentity(
        device_id="dev-1",
        device_name="Lobby Kiosk",
        platform="Linux",
        build_version="1.2.0",
        scene="Attract",
    )


class Responder:
    """Loopback stand-in for a dashboard host answering DiscoverHost requests."""

    def __init__(self, reply_factory=None, secret: str = "") -> None:
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(0.1)
        self.port = self.sock.getsockname()[1]
        self.secret = secret
        self.reply_factory = reply_factory or self.default_reply
        self.requests: list[CommandEnvelope] = []
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)

    def default_reply(self, request: CommandEnvelope) -> list[bytes]:
        ann = HostAnnouncement(
            host_name="dashboard", host_address="127.0.0.1", host_port=self.port, command_port=3939
        )
        return [build_envelope("HostAnnouncement", ann.to_json(), secret=self.secret).to_bytes()]

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                data, addr = self.sock.recvfrom(65535)
            except socket.timeout:
                continue
            except OSError:
                break
            request = parse_envelope(data)
            self.requests.append(request)
            for reply in self.reply_factory(request):
                self.sock.sendto(reply, addr)

    def __enter__(self) -> Responder:
        self._thread.start()
        return self

    def __exit__(self, *exc) -> None:
        self._stop.set()
        self._thread.join(2.0)
        self.sock.close()


def _config(port: int, **overrides) -> DeviceConfig:
    config = DeviceConfig(
        host_address="auto",
        discovery_address="127.0.0.1",
        discovery_port=port,
        discovery_timeout=0.5,
        max_discovery_attempts=2,
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


# ── State ─────────────────────────────────────────────────────────


class TestDiscoveryState:
    def test_auto_host_is_unresolved(self, identity):
        coordinator = DiscoveryCoordinator(DeviceConfig(), identity)
        assert not coordinator.is_host_resolved
        assert coordinator.state is DiscoveryState.IDLE
        assert coordinator.should_attempt_discovery()

    def test_configured_host_is_resolved(self, identity):
        coordinator = DiscoveryCoordinator(DeviceConfig(host_address="10.0.0.5"), identity)
        assert coordinator.is_host_resolved
        assert coordinator.state is DiscoveryState.RESOLVED
        assert not coordinator.should_attempt_discovery()

    @pytest.mark.parametrize("overrides", [
        {"auto_discover": False},
        {"discovery_port": 0},
        {"max_discovery_attempts": 0},
    ])
    def test_discovery_preconditions(self, identity, overrides):
        config = DeviceConfig(**overrides)
        assert not DiscoveryCoordinator(config, identity).should_attempt_discovery()

    def test_request_contents(self, identity):
        config = DeviceConfig(shared_secret="s3cret", command_port=3940)
        request = DiscoveryCoordinator(config, identity).build_discovery_request()
        assert request.action == "DiscoverHost"
        assert request.cmd_id is None
        assert verify("s3cret", request)
        payload = request.payload_json()
        assert payload["deviceId"] == "dev-1"
        assert payload["commandPort"] == 3940
        assert payload["requestPort"] == 4949

    def test_generated_device_id_is_stable(self):
        assert generate_device_id() == generate_device_id()
        assert generate_device_id().startswith("dev-")


# ── Applying announcements ────────────────────────────────────────


class TestApplyAnnouncement:
    def test_announcement_resolves_host(self, identity):
        config = DeviceConfig()
        coordinator = DiscoveryCoordinator(config, identity)
        fired = []
        coordinator.on_resolved(lambda: fired.append(True))
        coordinator.registration_sent = True

        ok = coordinator.apply_announcement(
            HostAnnouncement(host_address="10.0.0.5", host_port=4949), ("10.0.0.5", 4949)
        )
        assert ok
        assert config.host_address == "10.0.0.5"
        assert config.host_port == 4949
        assert config.discovery_port == 4949
        assert coordinator.state is DiscoveryState.RESOLVED
        assert coordinator.is_host_resolved
        assert not coordinator.registration_sent
        assert fired == [True]
        assert coordinator.resolve_endpoint() == ("10.0.0.5", 4949)

    def test_sender_address_used_when_payload_has_none(self, identity):
        config = DeviceConfig(host_port=5000)
        coordinator = DiscoveryCoordinator(config, identity)
        assert coordinator.apply_announcement(HostAnnouncement(host_port=0), ("10.0.0.9", 6000))
        assert config.host_address == "10.0.0.9"
        assert config.host_port == 5000

    def test_no_address_at_all_is_ignored(self, identity):
        coordinator = DiscoveryCoordinator(DeviceConfig(), identity)
        assert not coordinator.apply_announcement(HostAnnouncement(), None)
        assert not coordinator.is_host_resolved

    def test_same_host_keeps_registration(self, identity):
        config = DeviceConfig(host_address="10.0.0.5", host_port=4949)
        coordinator = DiscoveryCoordinator(config, identity)
        coordinator.registration_sent = True
        coordinator.apply_announcement(HostAnnouncement(host_address="10.0.0.5", host_port=4949), None)
        assert coordinator.registration_sent

    def test_host_change_invalidates_endpoint(self, identity):
        config = DeviceConfig(host_address="10.0.0.5", host_port=4949)
        coordinator = DiscoveryCoordinator(config, identity)
        assert coordinator.resolve_endpoint() == ("10.0.0.5", 4949)
        coordinator.apply_announcement(HostAnnouncement(host_address="10.0.0.6", host_port=4950), None)
        assert coordinator.resolve_endpoint() == ("10.0.0.6", 4950)

    def test_callback_error_does_not_propagate(self, identity):
        coordinator = DiscoveryCoordinator(DeviceConfig(), identity)
        later = []
        coordinator.on_resolved(lambda: 1 / 0)
        coordinator.on_resolved(lambda: later.append(True))
        assert coordinator.apply_announcement(HostAnnouncement(host_address="10.0.0.5"), None)
        assert later == [True]

    def test_unsolicited_announcement_via_command_observer(self, identity):
        config = DeviceConfig()
        coordinator = DiscoveryCoordinator(config, identity)
        env = CommandEnvelope(
            action="hostannouncement",
            payload=HostAnnouncement(host_address="10.0.0.7", host_port=4949).to_json(),
            timestamp=1,
        )
        coordinator.handle_command(env, ("10.0.0.7", 4949))
        assert config.host_address == "10.0.0.7"

    def test_other_actions_ignored_by_observer(self, identity):
        config = DeviceConfig()
        coordinator = DiscoveryCoordinator(config, identity)
        coordinator.handle_command(CommandEnvelope(action="Beep", timestamp=1), ("10.0.0.7", 1))
        assert not coordinator.is_host_resolved


# ── Discovery over loopback ───────────────────────────────────────


class TestDiscoveryAttempts:
    @pytest.mark.asyncio
    async def test_discovers_loopback_host(self, identity):
        with Responder() as responder:
            config = _config(responder.port)
            coordinator = DiscoveryCoordinator(config, identity)
            assert await coordinator.discover_once()
        assert config.host_address == "127.0.0.1"
        assert config.host_port == responder.port
        assert coordinator.state is DiscoveryState.RESOLVED
        assert coordinator.attempts == 1
        assert responder.requests[0].action == "DiscoverHost"

    @pytest.mark.asyncio
    async def test_non_announcement_replies_are_skipped(self, identity):
        def replies(request):
            ann = HostAnnouncement(host_address="127.0.0.1", host_port=4949)
            return [
                b"garbage",
                build_envelope("Beep").to_bytes(),
                build_envelope("HostAnnouncement", ann.to_json()).to_bytes(),
            ]

        with Responder(replies) as responder:
            config = _config(responder.port)
            assert await DiscoveryCoordinator(config, identity).discover_once()
        assert config.host_port == 4949

    @pytest.mark.asyncio
    async def test_every_attempt_times_out(self, identity):
        with Responder(lambda request: []) as responder:
            config = _config(responder.port, discovery_timeout=0.25)
            coordinator = DiscoveryCoordinator(config, identity)
            assert not await coordinator.discover_once()
            assert len(responder.requests) == 2
        assert coordinator.attempts == 2
        assert coordinator.state is DiscoveryState.IDLE
        assert config.host_address == "auto"

    @pytest.mark.asyncio
    async def test_unsigned_reply_rejected_when_secret_set(self, identity):
        with Responder() as responder:
            config = _config(responder.port, shared_secret="s3cret", discovery_timeout=0.25,
                             max_discovery_attempts=1)
            assert not await DiscoveryCoordinator(config, identity).discover_once()

    @pytest.mark.asyncio
    async def test_signed_reply_accepted(self, identity):
        with Responder(secret="s3cret") as responder:
            config = _config(responder.port, shared_secret="s3cret")
            assert await DiscoveryCoordinator(config, identity).discover_once()
            assert verify("s3cret", responder.requests[0])

    @pytest.mark.asyncio
    async def test_run_returns_immediately_when_disabled(self, identity):
        coordinator = DiscoveryCoordinator(DeviceConfig(auto_discover=False), identity)
        assert not await coordinator.run()
        assert coordinator.cycles == 0

    @pytest.mark.asyncio
    async def test_run_stops_once_resolved(self, identity):
        with Responder() as responder:
            coordinator = DiscoveryCoordinator(_config(responder.port), identity)
            assert await coordinator.run()
        assert coordinator.cycles == 1

    @pytest.mark.asyncio
    async def test_run_retries_across_cycles(self, identity, monkeypatch):
        real_sleep = asyncio.sleep
        sleeps = []

        async def fake_sleep(delay, *args, **kwargs):
            sleeps.append(delay)
            await real_sleep(0)

        monkeypatch.setattr("fleetlink.device.discovery.asyncio.sleep", fake_sleep)

        def replies(request):
            # Stay silent for the whole first cycle (two attempts).
            if len(responder.requests) <= 2:
                return []
            ann = HostAnnouncement(host_address="127.0.0.1", host_port=4949)
            return [build_envelope("HostAnnouncement", ann.to_json()).to_bytes()]

        with Responder(replies) as responder:
            config = _config(responder.port, discovery_timeout=0.25, discovery_retry_interval=30.0)
            coordinator = DiscoveryCoordinator(config, identity)
            assert await coordinator.run()
            assert len(responder.requests) == 3
        assert coordinator.cycles == 2
        assert coordinator.attempts == 3
        assert sleeps == [30.0]
        assert config.host_port == 4949
        assert coordinator.state is DiscoveryState.RESOLVED

    @pytest.mark.asyncio
    async def test_announcement_while_idle_ends_run(self, identity, monkeypatch):
        real_sleep = asyncio.sleep

        async def fake_sleep(delay, *args, **kwargs):
            # A host pushes an unsolicited announcement during the retry wait.
            coordinator.apply_announcement(
                HostAnnouncement(host_address="10.0.0.5", host_port=4949), ("10.0.0.5", 4949)
            )
            await real_sleep(0)

        monkeypatch.setattr("fleetlink.device.discovery.asyncio.sleep", fake_sleep)

        with Responder(lambda request: []) as responder:
            config = _config(responder.port, discovery_timeout=0.25, max_discovery_attempts=1)
            coordinator = DiscoveryCoordinator(config, identity)
            assert await coordinator.run()
            assert len(responder.requests) == 1
        assert coordinator.cycles == 1
        assert config.host_address == "10.0.0.5"
        assert config.host_port == 4949

    def test_status_snapshot(self, identity):
        coordinator = DiscoveryCoordinator(DeviceConfig(), identity)
        status = coordinator.status()
        assert status.state == "idle"
        assert status.host_address == "auto"
        assert status.attempts == 0
