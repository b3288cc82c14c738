"""Shared-secret envelope signatures (HMAC-SHA256 over the canonical string).

Authentication is opt-in per endpoint: an endpoint without a secret accepts
everything, an endpoint with one rejects unsigned or mis-signed envelopes.
Payloads are not encrypted.
"""

from __future__ import annotations

import base64
import hashlib
import hmac

from fleetlink.protocol.envelope import CommandEnvelope, canonical_string


def sign(secret: str, envelope: CommandEnvelope) -> str:
    """Return the base64 HMAC-SHA256 signature for *envelope*."""
    digest = hmac.new(
        secret.encode("utf-8"),
        canonical_string(envelope).encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def signed(secret: str | None, envelope: CommandEnvelope) -> CommandEnvelope:
    """Return *envelope* with its signature filled in when a secret is set."""
    if not secret:
        return envelope
    return envelope.with_signature(sign(secret, envelope))


def verify(secret: str | None, envelope: CommandEnvelope) -> bool:
    """Check *envelope*'s signature against *secret*."""
    if not secret:
        return True
    if not envelope.signature:
        return False
    return constant_time_equals(sign(secret, envelope), envelope.signature)


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two strings without short-circuiting on the first mismatch."""
    left = a.encode("utf-8")
    right = b.encode("utf-8")
    if len(left) != len(right):
        return False
    result = 0
    for x, y in zip(left, right):
        result |= x ^ y
    return result == 0
