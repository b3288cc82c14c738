"""Command dispatch: routes admitted envelopes to handlers.

Inbound:
  generic observers (every command) → the action's handler binding
  (exact, case-sensitive) → optional acknowledgement to the sender.
  Acknowledgements coming back go to ``on_ack`` observers.

Outbound:
  ``send_to_targets`` sends one envelope per recipient, sequentially, and
  reports per-target failures instead of aborting the batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from fleetlink.errors import SendFailure
from fleetlink.protocol.envelope import Acknowledgement, CommandEnvelope

logger = logging.getLogger(__name__)

Address = tuple[str, int]
CommandHandler = Callable[[CommandEnvelope], None]
CommandObserver = Callable[[CommandEnvelope, Address | None], None]
AckSender = Callable[[Acknowledgement, Address], None]
AckObserver = Callable[[Acknowledgement, Address | None], None]


@dataclass
class InboundCommand:
    """An admitted envelope waiting to be dispatched on the consumer side."""

    envelope: CommandEnvelope
    address: Address | None = None


@dataclass
class InboundAck:
    """An acknowledgement received for a command this side sent."""

    ack: Acknowledgement
    address: Address | None = None


@dataclass
class DispatchTarget:
    """One recipient of an outbound batch."""

    name: str
    address: str | None
    port: int


@dataclass
class BatchResult:
    success_count: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class _Binding:
    """All handlers registered for one action; invoked together, once."""

    def __init__(self, action: str) -> None:
        self.action = action
        self.handlers: list[CommandHandler] = []

    def invoke(self, envelope: CommandEnvelope) -> None:
        for handler in list(self.handlers):
            try:
                handler(envelope)
            except Exception:
                logger.exception("Handler error for %s", self.action)


class CommandDispatcher:
    """Routes admitted envelopes to registered handlers.

    Only the consumer side calls :meth:`dispatch`, so handlers never run
    concurrently with each other.
    """

    def __init__(
        self,
        send_acknowledgement: bool = True,
        ack_sender: AckSender | None = None,
        warn_unhandled: bool = True,
    ) -> None:
        self.send_acknowledgement = send_acknowledgement
        self.ack_sender = ack_sender
        self.warn_unhandled = warn_unhandled
        self._bindings: dict[str, _Binding] = {}
        self._observers: list[CommandObserver] = []
        self._ack_observers: list[AckObserver] = []

    # ── Registration ──────────────────────────────────────────────

    def register_handler(self, action: str, handler: CommandHandler) -> None:
        """Register a handler for *action* (exact, case-sensitive match)."""
        if not action:
            raise ValueError("Action must be non-empty.")
        if handler is None:
            raise TypeError("handler must not be None")
        binding = self._bindings.get(action)
        if binding is None:
            binding = self._bindings[action] = _Binding(action)
        binding.handlers.append(handler)

    def unregister_handler(self, action: str, handler: CommandHandler) -> None:
        binding = self._bindings.get(action)
        if binding is None or handler not in binding.handlers:
            return
        binding.handlers.remove(handler)
        if not binding.handlers:
            del self._bindings[action]

    def has_handler(self, action: str) -> bool:
        return action in self._bindings

    def on_command(self, observer: CommandObserver) -> None:
        """Register an observer that sees every admitted command."""
        self._observers.append(observer)

    def remove_observer(self, observer: CommandObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def on_ack(self, observer: AckObserver) -> None:
        """Register an observer for acknowledgements coming back."""
        self._ack_observers.append(observer)

    # ── Inbound ───────────────────────────────────────────────────

    def dispatch(self, command: InboundCommand) -> None:
        envelope = command.envelope

        for observer in list(self._observers):
            try:
                observer(envelope, command.address)
            except Exception:
                logger.exception("Command observer error for %s", envelope.action)

        binding = self._bindings.get(envelope.action)
        if binding is not None:
            binding.invoke(envelope)
        elif self.warn_unhandled:
            logger.warning("No handler for action '%s'", envelope.action)

        if self.send_acknowledgement and command.address is not None:
            self._acknowledge(envelope, command.address)

    def dispatch_ack(self, inbound: InboundAck) -> None:
        ack, address = inbound.ack, inbound.address
        source = f"{address[0]}:{address[1]}" if address else "unknown"
        logger.info("ACK %s (%s) from %s", ack.cmd_id or "-", ack.status, source)
        for observer in list(self._ack_observers):
            try:
                observer(ack, address)
            except Exception:
                logger.exception("Ack observer error for %s", ack.cmd_id)

    def _acknowledge(self, envelope: CommandEnvelope, address: Address) -> None:
        if self.ack_sender is None:
            return
        try:
            self.ack_sender(Acknowledgement.for_command(envelope), address)
        except (OSError, SendFailure) as e:
            logger.warning("Failed to send ACK for %s: %s", envelope.cmd_id or envelope.action, e)

    # ── Outbound ──────────────────────────────────────────────────

    def send_to_targets(
        self,
        targets: list[DispatchTarget],
        send: Callable[[str, int], object],
    ) -> BatchResult:
        """Call ``send(host, port)`` once per target, in order.

        A target without an address is skipped and reported; a send error on
        one target does not stop the rest.
        """
        result = BatchResult()
        for target in targets:
            host = (target.address or "").strip()
            name = target.name or host or "unknown device"
            if not host:
                message = f"{name}: missing address, skipped"
                logger.warning("%s", message)
                result.failures.append(message)
                continue
            if not 1 <= target.port <= 65535:
                message = f"{name}: invalid port {target.port}, skipped"
                logger.warning("%s", message)
                result.failures.append(message)
                continue
            try:
                send(host, target.port)
            except (OSError, SendFailure) as e:
                logger.warning("Send to %s (%s:%d) failed: %s", name, host, target.port, e)
                result.failures.append(f"{name}: {e}")
                continue
            result.success_count += 1

        if result.failures:
            logger.warning(
                "Batch send: %d succeeded, %d failed",
                result.success_count, len(result.failures),
            )
        else:
            logger.info("Batch send: sent to %d devices", result.success_count)
        return result
