"""Tests for the dashboard host service (loopback sockets)."""

from __future__ import annotations

import asyncio
import json
import socket
import time

import pytest

from fleetlink.config import DeviceConfig, HostConfig
from fleetlink.errors import SendFailure
from fleetlink.device.discovery import DiscoveryCoordinator
from fleetlink.device.identity import DeviceIdentity
from fleetlink.host.service import HostService, SendRequest, validate_port
from fleetlink.protocol.auth import signed, verify
from fleetlink.protocol.envelope import CommandEnvelope, now_ms, parse_envelope
from fleetlink.protocol.payloads import ClientRecord, HostAnnouncement
from fleetlink.transport import build_envelope


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def service():
    svc = HostService(HostConfig(listen_port=0, host_name="dashboard"))
    svc.start()
    yield svc
    svc.stop()


@pytest.fixture()
def device_sock():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(3.0)
    yield sock
    sock.close()


def _deliver(service: HostService, sock: socket.socket, envelope: CommandEnvelope, count: int = 1) -> None:
    sock.sendto(envelope.to_bytes(), ("127.0.0.1", service.endpoint.port))
    deadline = time.monotonic() + 3.0
    while service.endpoint.pending_count() < count and time.monotonic() < deadline:
        time.sleep(0.01)
    service.endpoint.drain()


def _record_envelope(action: str = "RegisterClient", **fields) -> CommandEnvelope:
    record = ClientRecord(**{"device_id": "dev-1", "device_name": "Lobby Kiosk", **fields})
    return build_envelope(action, record.to_json(), include_cmd_id=True)


# ── Inbound ───────────────────────────────────────────────────────


class TestInbound:
    def test_register_client_updates_roster(self, service, device_sock):
        _deliver(service, device_sock, _record_envelope(command_port=3940))
        view = service.roster.get("dev-1")
        assert view is not None
        assert view.online
        assert view.entry.remote_address == "127.0.0.1"
        assert view.entry.remote_port == device_sock.getsockname()[1]
        assert view.entry.command_port == 3940

    def test_actions_match_case_insensitively(self, service, device_sock):
        _deliver(service, device_sock, _record_envelope("heartbeat", scene="Game"))
        assert service.roster.get("dev-1").entry.scene == "Game"

    def test_record_without_payload_ignored(self, service, device_sock):
        _deliver(service, device_sock, build_envelope("Heartbeat"))
        assert len(service.roster) == 0

    def test_packet_observer_sees_everything(self, service, device_sock):
        seen = []
        service.on_packet(lambda env, addr: seen.append(env.action))
        _deliver(service, device_sock, build_envelope("Custom"))
        assert seen == ["Custom"]

    def test_discovery_request_answered(self, service, device_sock):
        request = build_envelope("DiscoverHost", '{"commandPort":3940}', cmd_id="abcd1234", include_cmd_id=True)
        _deliver(service, device_sock, request)
        data, addr = device_sock.recvfrom(65535)
        assert addr[1] == service.endpoint.port
        reply = parse_envelope(data)
        assert reply.action == "HostAnnouncement"
        assert reply.cmd_id == "abcd1234"
        ann = HostAnnouncement.from_payload(reply.payload_json())
        assert ann.host_name == "dashboard"
        assert ann.host_port == service.endpoint.port
        assert ann.command_port == 3940
        assert ann.host_address

    def test_host_announcement_remembered(self, service, device_sock):
        ann = HostAnnouncement(host_name="other", host_address="10.0.0.5", host_port=4949, command_port=4000)
        _deliver(service, device_sock, build_envelope("HostAnnouncement", ann.to_json()))
        assert service.discovered_host.host_address == "10.0.0.5"
        assert service.roster.default_command_port == 4000
        assert service.status()["discovered_host"]["host_name"] == "other"

    def test_acknowledgement_reaches_ack_observer(self, service, device_sock, caplog):
        acks = []
        packets = []
        service.on_ack(lambda ack, addr: acks.append(ack.cmd_id))
        service.on_packet(lambda env, addr: packets.append(env))
        device_sock.sendto(
            b'{"cmdId":"1a2b3c4d","status":"received","receivedTimestamp":1700000000123}',
            ("127.0.0.1", service.endpoint.port),
        )
        deadline = time.monotonic() + 3.0
        while service.endpoint.pending_count() < 1 and time.monotonic() < deadline:
            time.sleep(0.01)
        service.endpoint.drain()
        assert acks == ["1a2b3c4d"]
        assert packets == []
        assert len(service.roster) == 0
        assert "Dropped malformed" not in caplog.text

    def test_unsigned_record_rejected_when_secret_set(self, device_sock):
        svc = HostService(HostConfig(listen_port=0, shared_secret="s3cret"))
        svc.start()
        try:
            device_sock.sendto(_record_envelope().to_bytes(), ("127.0.0.1", svc.endpoint.port))
            good = signed("s3cret", _record_envelope(device_id="dev-2"))
            _deliver(svc, device_sock, good)
            assert svc.roster.keys() == ["dev-2"]
        finally:
            svc.stop()

    @pytest.mark.asyncio
    async def test_device_discovers_host_end_to_end(self, service):
        task = asyncio.create_task(service.run_dispatch_loop())
        try:
            config = DeviceConfig(
                discovery_address="127.0.0.1",
                discovery_port=service.endpoint.port,
                discovery_timeout=1.0,
                max_discovery_attempts=2,
            )
            coordinator = DiscoveryCoordinator(config, DeviceIdentity(device_id="dev-1"))
            assert await coordinator.discover_once()
            assert config.host_port == service.endpoint.port
            assert config.host_address not in ("", "auto")
        finally:
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task


# ── Outbound ──────────────────────────────────────────────────────


class TestOutbound:
    def test_send_command(self, service, device_sock):
        port = device_sock.getsockname()[1]
        req = SendRequest(action="Beep", payload="hi", cmd_id="1a2b3c4d", timestamp=1700000000000)
        result = service.send_command(req, "127.0.0.1", port)
        data, _ = device_sock.recvfrom(65535)
        assert result.sent_bytes == len(data)
        assert json.loads(data) == {
            "action": "Beep",
            "timestamp": 1700000000000,
            "payload": "hi",
            "cmdId": "1a2b3c4d",
        }

    def test_send_command_signs_with_override_secret(self, service, device_sock):
        port = device_sock.getsockname()[1]
        service.send_command(SendRequest(action="Beep", shared_secret="s3cret"), "127.0.0.1", port)
        data, _ = device_sock.recvfrom(65535)
        assert verify("s3cret", parse_envelope(data))

    def test_force_empty_payload_field(self, service, device_sock):
        port = device_sock.getsockname()[1]
        service.send_command(
            SendRequest(action="Beep", include_cmd_id=False, force_payload_field=True), "127.0.0.1", port
        )
        data, _ = device_sock.recvfrom(65535)
        raw = json.loads(data)
        assert raw["payload"] == ""
        assert "cmdId" not in raw

    @pytest.mark.parametrize("host,port,action", [
        ("", 3939, "Beep"),
        ("127.0.0.1", 0, "Beep"),
        ("127.0.0.1", 70000, "Beep"),
        ("127.0.0.1", 3939, "  "),
    ])
    def test_send_command_validation(self, service, host, port, action):
        with pytest.raises(ValueError):
            service.send_command(SendRequest(action=action), host, port)

    def test_send_to_devices_partial_failure(self, service, device_sock):
        port = device_sock.getsockname()[1]
        service.roster.apply(
            ClientRecord(device_id="dev-1", ipv4="127.0.0.1", command_port=port), "127.0.0.1", 1
        )
        result = service.send_to_devices(["dev-1", "ghost"], SendRequest(action="Beep"))
        assert result.success_count == 1
        assert result.failures == ["ghost: missing address, skipped"]
        env = parse_envelope(device_sock.recvfrom(65535)[0])
        assert env.action == "Beep"
        assert env.cmd_id

    def test_each_device_gets_its_own_cmd_id(self, service, device_sock):
        port = device_sock.getsockname()[1]
        for key in ("a", "b"):
            service.roster.apply(ClientRecord(device_id=key, ipv4="127.0.0.1", command_port=port))
        result = service.send_to_devices(["a", "b"], SendRequest(action="Beep"))
        assert result.success_count == 2
        first = parse_envelope(device_sock.recvfrom(65535)[0])
        second = parse_envelope(device_sock.recvfrom(65535)[0])
        assert first.cmd_id != second.cmd_id

    def test_out_of_range_roster_port_does_not_abort_batch(self, service, device_sock):
        port = device_sock.getsockname()[1]
        service.roster.apply(ClientRecord(device_id="bad", ipv4="127.0.0.1", command_port=port))
        service.roster.apply(ClientRecord(device_id="good", ipv4="127.0.0.1", command_port=port))
        service.roster._entries["bad"].command_port = 70000
        result = service.send_to_devices(["bad", "good"], SendRequest(action="Beep"))
        assert result.success_count == 1
        assert result.failures == ["bad: invalid port 70000, skipped"]
        assert parse_envelope(device_sock.recvfrom(65535)[0]).action == "Beep"

    def test_send_error_from_socket_becomes_send_failure(self, service):
        envelope = build_envelope("Beep")
        with pytest.raises(SendFailure):
            service._send(envelope, "127.0.0.1", 70000)

    @pytest.mark.parametrize("port", [0, -1, 70000])
    def test_announce_rejects_bad_port(self, service, port):
        with pytest.raises(ValueError):
            service.announce(port=port, address="127.0.0.1")

    def test_announce(self, service, device_sock):
        port = device_sock.getsockname()[1]
        service.announce(port=port, address="127.0.0.1")
        env = parse_envelope(device_sock.recvfrom(65535)[0])
        assert env.action == "HostAnnouncement"
        assert HostAnnouncement.from_payload(env.payload_json()).host_port == service.endpoint.port


# ── Lifecycle ─────────────────────────────────────────────────────


class TestLifecycle:
    def test_set_listen_port(self, service):
        old = service.endpoint.port
        address = service.set_listen_port(0)
        assert address is not None
        assert service.endpoint.port != old
        assert service.config.listen_port == service.endpoint.port

    def test_set_listen_port_validation(self, service):
        with pytest.raises(ValueError):
            service.set_listen_port(-1)
        with pytest.raises(ValueError):
            service.set_listen_port(65536)

    def test_validate_port(self):
        assert validate_port(3939) == 3939
        with pytest.raises(ValueError):
            validate_port(True)

    def test_status(self, service):
        status = service.status()
        assert status["listening"]
        assert status["listen_port"] == service.endpoint.port
        assert status["devices"] == {"online": 0, "offline": 0}

    def test_roster_uses_service_clock(self):
        clock = FakeClock()
        svc = HostService(HostConfig(listen_port=0, liveness_timeout=10.0), clock=clock)
        svc.roster.apply(ClientRecord(device_id="dev-1"), "10.0.0.1", 1)
        clock.now += 11
        assert svc.status()["devices"] == {"online": 0, "offline": 1}

    def test_stale_envelopes_filtered_with_window(self, device_sock):
        svc = HostService(HostConfig(listen_port=0, stale_window_seconds=5.0))
        svc.start()
        try:
            old = _record_envelope(device_id="old")
            old.timestamp = now_ms() - 60_000
            device_sock.sendto(old.to_bytes(), ("127.0.0.1", svc.endpoint.port))
            _deliver(svc, device_sock, _record_envelope(device_id="new"))
            assert svc.roster.keys() == ["new"]
        finally:
            svc.stop()
