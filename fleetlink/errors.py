"""Error taxonomy for the fleetlink command protocol.

Receive-path errors (malformed, unauthenticated, stale, duplicate) are
raised internally and turned into log lines by the inbound gate; they never
reach the code that owns a listener.  ``BindFailure`` and ``SendFailure`` are
surfaced to callers.
"""

from __future__ import annotations


class FleetLinkError(Exception):
    """Base error for fleetlink failures."""


class MalformedEnvelope(FleetLinkError):
    """Raised when a datagram is not a decodable envelope or lacks an action."""


class AuthenticationFailure(FleetLinkError):
    """Raised when a signature is missing or wrong while a secret is configured."""


class StaleCommand(FleetLinkError):
    """Raised when an envelope is older than the staleness window."""


class DuplicateCommand(FleetLinkError):
    """Raised when an envelope's cmdId has already been admitted."""


class BindFailure(FleetLinkError):
    """Raised when a listening port cannot be bound."""

    def __init__(self, port: int, reason: str) -> None:
        super().__init__(f"failed to bind UDP port {port}: {reason}")
        self.port = port
        self.reason = reason


class SendFailure(FleetLinkError):
    """Raised when a single datagram could not be transmitted."""


class DiscoveryTimeout(FleetLinkError):
    """A discovery attempt received no host announcement in time."""
