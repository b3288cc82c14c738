"""fleetlink: UDP command protocol primitives.

  - envelope: wire codec, canonical signing string, acknowledgements
  - auth: HMAC-SHA256 signatures over the canonical string
  - freshness: staleness window + bounded dedup cache
  - gate: receive-side admission pipeline
  - payloads: schemas for the built-in discovery/registration actions
"""

from fleetlink.protocol.auth import sign, signed, verify
from fleetlink.protocol.envelope import (
    Acknowledgement,
    CommandEnvelope,
    canonical_string,
    new_cmd_id,
    now_ms,
    parse_envelope,
    timestamp_to_seconds,
)
from fleetlink.protocol.freshness import FreshnessFilter
from fleetlink.protocol.gate import EnvelopeGate

__all__ = [
    "Acknowledgement",
    "CommandEnvelope",
    "EnvelopeGate",
    "FreshnessFilter",
    "canonical_string",
    "new_cmd_id",
    "now_ms",
    "parse_envelope",
    "sign",
    "signed",
    "timestamp_to_seconds",
    "verify",
]
