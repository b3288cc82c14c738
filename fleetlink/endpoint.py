"""Listening UDP endpoint with a background receive thread.

Producer side (receive thread):
  recvfrom → acknowledgement, or EnvelopeGate (codec, auth, freshness) → queue

Consumer side (owner's loop):
  ``drain()`` / ``run_dispatch_loop()`` → CommandDispatcher, FIFO, one at a time

The socket and its thread are owned together: ``stop()`` cancels, closes and
joins before returning, and ``rebind()`` fully stops the old socket before
binding the new one.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import socket
import threading

from fleetlink.dispatcher import CommandDispatcher, InboundAck, InboundCommand
from fleetlink.errors import BindFailure
from fleetlink.protocol.envelope import parse_acknowledgement
from fleetlink.protocol.gate import EnvelopeGate
from fleetlink.transport import create_udp_socket

logger = logging.getLogger(__name__)

Address = tuple[str, int]

MAX_DATAGRAM_SIZE = 65535
# recvfrom wakes at least this often to notice cancellation.
RECEIVE_POLL_SECONDS = 0.25
JOIN_TIMEOUT_SECONDS = 2.0


class DatagramEndpoint:
    """One bound UDP socket, its receive thread, and its dispatch queue."""

    def __init__(
        self,
        port: int,
        gate: EnvelopeGate,
        dispatcher: CommandDispatcher,
        name: str = "fleetlink",
        bind_host: str = "0.0.0.0",
    ) -> None:
        self.gate = gate
        self.dispatcher = dispatcher
        self.name = name
        self._requested_port = port
        self._bind_host = bind_host
        self._sock: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._cancel = threading.Event()
        self._pending: queue.SimpleQueue[InboundCommand | InboundAck] = queue.SimpleQueue()
        self._lifecycle = threading.Lock()

    # ── Lifecycle ──────────────────────────────────────────────────

    @property
    def listening(self) -> bool:
        return self._sock is not None

    @property
    def port(self) -> int:
        """The bound port, or the requested one while not listening."""
        if self._sock is not None:
            return self._sock.getsockname()[1]
        return self._requested_port

    @property
    def bound_address(self) -> Address | None:
        if self._sock is None:
            return None
        host, port = self._sock.getsockname()[:2]
        return host, port

    def start(self) -> None:
        """Bind the socket and start receiving.

        Raises:
            BindFailure: the port is unavailable.  No other port is tried.
        """
        with self._lifecycle:
            if self._sock is not None:
                return
            try:
                sock = create_udp_socket(self._requested_port, self._bind_host)
            except OSError as e:
                logger.error("%s failed to bind UDP port %d: %s", self.name, self._requested_port, e)
                raise BindFailure(self._requested_port, str(e)) from e

            sock.settimeout(RECEIVE_POLL_SECONDS)
            self._sock = sock
            self._cancel = threading.Event()
            self._thread = threading.Thread(
                target=self._receive_loop,
                args=(sock, self._cancel),
                name=f"{self.name}-receive",
                daemon=True,
            )
            self._thread.start()
            logger.info("%s listening on UDP %s:%d", self.name, self._bind_host, self.port)

    def stop(self) -> None:
        """Cancel the receive loop, close the socket and wait for the thread."""
        with self._lifecycle:
            if self._sock is None:
                return
            sock, thread = self._sock, self._thread
            port = sock.getsockname()[1]
            self._cancel.set()
            try:
                sock.close()
            except OSError as e:
                logger.warning("%s stop warning: %s", self.name, e)

            if thread is not None and thread.is_alive() and thread is not threading.current_thread():
                thread.join(JOIN_TIMEOUT_SECONDS)
                if thread.is_alive():
                    logger.warning("%s receive thread did not exit in time", self.name)

            self._sock = None
            self._thread = None
            self.gate.freshness.clear()
            self._discard_pending()
            logger.info("%s stopped listening on UDP port %d", self.name, port)

    def rebind(self, port: int) -> Address | None:
        """Move the endpoint to *port*, tearing the old socket down first."""
        if self._sock is not None and port != 0 and port == self.port:
            return self.bound_address
        self.stop()
        self._requested_port = port
        self.start()
        return self.bound_address

    # ── Consumer side ──────────────────────────────────────────────

    def drain(self, limit: int | None = None) -> int:
        """Dispatch queued commands in arrival order. Returns how many ran."""
        count = 0
        while limit is None or count < limit:
            try:
                item = self._pending.get_nowait()
            except queue.Empty:
                break
            if isinstance(item, InboundAck):
                self.dispatcher.dispatch_ack(item)
            else:
                self.dispatcher.dispatch(item)
            count += 1
        return count

    async def run_dispatch_loop(self, interval: float = 0.05) -> None:
        """Drain the queue on every tick until cancelled."""
        try:
            while True:
                self.drain()
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            self.drain()
            raise

    def pending_count(self) -> int:
        return self._pending.qsize()

    # ── Sending ────────────────────────────────────────────────────

    def send_to(self, data: bytes, address: Address) -> int:
        """Send raw bytes from the listening socket."""
        if self._sock is None:
            raise OSError(f"{self.name} is not listening")
        return self._sock.sendto(data, address)

    # ── Producer side ──────────────────────────────────────────────

    def _receive_loop(self, sock: socket.socket, cancel: threading.Event) -> None:
        while not cancel.is_set():
            try:
                data, address = sock.recvfrom(MAX_DATAGRAM_SIZE)
            except socket.timeout:
                continue
            except OSError:
                if cancel.is_set():
                    break
                logger.warning("%s receive error", self.name, exc_info=True)
                continue

            if not data:
                continue

            try:
                self._handle_datagram(data, (address[0], address[1]))
            except Exception:
                logger.exception("%s failed to process datagram from %s", self.name, address[0])

        logger.debug("%s receive loop exited", self.name)

    def _handle_datagram(self, data: bytes, address: Address) -> None:
        ack = parse_acknowledgement(data)
        if ack is not None:
            self._pending.put(InboundAck(ack, address))
            return
        envelope = self.gate.admit(data, address)
        if envelope is not None:
            self._pending.put(InboundCommand(envelope, address))

    def _discard_pending(self) -> None:
        while True:
            try:
                self._pending.get_nowait()
            except queue.Empty:
                return
