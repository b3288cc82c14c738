"""Device command listener: receives commands and acknowledges them."""

from __future__ import annotations

import logging
import time
from typing import Callable

from fleetlink.config import DEFAULT_COMMAND_PORT, DeviceConfig
from fleetlink.dispatcher import CommandDispatcher, CommandHandler, CommandObserver
from fleetlink.endpoint import DatagramEndpoint
from fleetlink.protocol.envelope import Acknowledgement
from fleetlink.protocol.freshness import FreshnessFilter
from fleetlink.protocol.gate import EnvelopeGate
from fleetlink.transport import UdpSender

logger = logging.getLogger(__name__)


class CommandListener(DatagramEndpoint):
    """Listens for command envelopes on the device's command port.

    Acknowledgements go out from a separate socket so the listening socket
    is only ever read by the receive thread.
    """

    def __init__(
        self,
        port: int = DEFAULT_COMMAND_PORT,
        shared_secret: str = "",
        stale_window_seconds: float = 5.0,
        send_acknowledgement: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ack_sender = UdpSender()
        gate = EnvelopeGate(shared_secret, FreshnessFilter(stale_window_seconds, clock=clock))
        dispatcher = CommandDispatcher(send_acknowledgement, ack_sender=self._send_ack)
        super().__init__(port, gate, dispatcher, name="CommandListener")

    @classmethod
    def from_config(cls, config: DeviceConfig) -> CommandListener:
        return cls(
            port=config.command_port,
            shared_secret=config.shared_secret,
            stale_window_seconds=config.stale_window_seconds,
            send_acknowledgement=config.send_acknowledgement,
        )

    def register_handler(self, action: str, handler: CommandHandler) -> None:
        self.dispatcher.register_handler(action, handler)

    def unregister_handler(self, action: str, handler: CommandHandler) -> None:
        self.dispatcher.unregister_handler(action, handler)

    def on_command(self, observer: CommandObserver) -> None:
        self.dispatcher.on_command(observer)

    def stop(self) -> None:
        super().stop()
        self._ack_sender.close()

    def _send_ack(self, ack: Acknowledgement, address: tuple[str, int]) -> None:
        self._ack_sender.ensure_socket().sendto(ack.to_json().encode("utf-8"), address)
        logger.debug("ACK %s sent to %s:%d", ack.cmd_id, address[0], address[1])
