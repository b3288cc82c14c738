"""Receive-side admission: codec, then authenticator, then freshness filter."""

from __future__ import annotations

import logging

from fleetlink.errors import (
    AuthenticationFailure,
    DuplicateCommand,
    MalformedEnvelope,
    StaleCommand,
)
from fleetlink.protocol.auth import verify
from fleetlink.protocol.envelope import CommandEnvelope, parse_envelope
from fleetlink.protocol.freshness import FreshnessFilter

logger = logging.getLogger(__name__)

Address = tuple[str, int]


class EnvelopeGate:
    """Turns raw datagrams into admitted envelopes.

    Rejected datagrams are dropped and logged; nothing here raises to the
    receive loop.
    """

    def __init__(
        self,
        secret: str | None = None,
        freshness: FreshnessFilter | None = None,
    ) -> None:
        self.secret = secret or ""
        self.freshness = freshness if freshness is not None else FreshnessFilter()

    def authenticate(self, envelope: CommandEnvelope) -> None:
        if not verify(self.secret, envelope):
            reason = "missing signature" if not envelope.signature else "bad signature"
            raise AuthenticationFailure(f"{reason} for action '{envelope.action}'")

    def check(self, data: bytes | str) -> CommandEnvelope:
        """Run every admission step, raising on the first rejection."""
        envelope = parse_envelope(data)
        self.authenticate(envelope)
        self.freshness.check(envelope)
        return envelope

    def admit(self, data: bytes | str, address: Address | None = None) -> CommandEnvelope | None:
        source = f"{address[0]}:{address[1]}" if address else "unknown"
        try:
            return self.check(data)
        except MalformedEnvelope as e:
            logger.warning("Dropped malformed envelope from %s: %s", source, e)
        except AuthenticationFailure as e:
            logger.warning("Rejected unauthorized command from %s: %s", source, e)
        except StaleCommand as e:
            logger.info("Dropped stale command from %s: %s", source, e)
        except DuplicateCommand as e:
            logger.debug("Ignored duplicate command from %s: %s", source, e)
        return None
