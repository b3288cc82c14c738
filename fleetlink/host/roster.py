"""Device roster: liveness-annotated table of every device the host has heard from.

Entries are keyed by ``deviceId`` (falling back to the sender address, then
a generated placeholder), created on the first RegisterClient/Heartbeat and
updated by every later one.  Liveness is never stored: ``online`` is derived
from ``last_seen`` at read time, so an entry goes offline purely through the
passage of time.  Entries are never removed.
"""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass, fields
from typing import Any, Callable

from fleetlink.config import DEFAULT_COMMAND_PORT
from fleetlink.dispatcher import DispatchTarget
from fleetlink.protocol.payloads import ClientRecord

DEFAULT_LIVENESS_TIMEOUT = 10.0

# Record fields merged into an entry when present.
_MERGED_FIELDS = (
    "device_id",
    "device_name",
    "platform",
    "build_version",
    "ipv4",
    "scene",
    "command_port",
)


@dataclass
class RosterEntry:
    key: str
    device_id: str
    device_name: str = ""
    platform: str = ""
    build_version: str = ""
    ipv4: str = ""
    scene: str = ""
    command_port: int | None = None
    remote_address: str | None = None
    remote_port: int | None = None
    first_seen: float = 0.0
    last_seen: float = 0.0

    def is_online(self, now: float, timeout: float) -> bool:
        return now - self.last_seen <= timeout

    @property
    def display_name(self) -> str:
        return self.device_name or self.device_id or self.ipv4 or self.key

    @property
    def target_address(self) -> str:
        return (self.ipv4 or self.remote_address or "").strip()


@dataclass
class RosterView:
    """Read-only copy of an entry with liveness resolved at read time."""

    entry: RosterEntry
    online: bool
    seconds_since_seen: float

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self.entry)
        data["online"] = self.online
        data["seconds_since_seen"] = round(self.seconds_since_seen, 3)
        return data


class RosterTracker:
    """Aggregates registration/heartbeat records into the roster."""

    def __init__(
        self,
        liveness_timeout: float = DEFAULT_LIVENESS_TIMEOUT,
        default_command_port: int = DEFAULT_COMMAND_PORT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.liveness_timeout = liveness_timeout
        self.default_command_port = default_command_port
        self._clock = clock
        self._entries: dict[str, RosterEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ── Updates ───────────────────────────────────────────────────

    def apply(
        self,
        record: ClientRecord,
        source_address: str | None = None,
        source_port: int | None = None,
    ) -> RosterEntry:
        """Merge *record* into its entry and return a copy of the result.

        Present fields overwrite, absent fields never clear what is known.
        """
        now = self._clock()
        with self._lock:
            key = record.device_id or source_address or f"client-{len(self._entries) + 1}"
            entry = self._entries.get(key)
            if entry is None:
                entry = RosterEntry(
                    key=key,
                    device_id=record.device_id or key,
                    first_seen=now,
                )
                self._entries[key] = entry

            for name in _MERGED_FIELDS:
                value = getattr(record, name)
                if name == "command_port" and value is not None and not 1 <= value <= 65535:
                    continue
                if value is not None and value != "":
                    setattr(entry, name, value)

            entry.last_seen = now
            if source_address:
                entry.remote_address = source_address
            if source_port is not None:
                entry.remote_port = source_port

            if not entry.ipv4:
                entry.ipv4 = source_address or ""
            if not entry.command_port:
                entry.command_port = self.default_command_port
            if not entry.device_name:
                entry.device_name = entry.device_id

            return _copy(entry)

    # ── Queries ───────────────────────────────────────────────────

    def is_online(self, key: str, now: float | None = None) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            return entry.is_online(self._clock() if now is None else now, self.liveness_timeout)

    def get(self, key: str) -> RosterView | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            return self._view(entry, now) if entry is not None else None

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def snapshot(self) -> list[RosterView]:
        """Every entry, most recently seen first."""
        now = self._clock()
        with self._lock:
            views = [self._view(e, now) for e in self._entries.values()]
        views.sort(key=lambda v: v.entry.last_seen, reverse=True)
        return views

    def counts(self) -> tuple[int, int]:
        """Return ``(online, offline)``."""
        views = self.snapshot()
        online = sum(1 for v in views if v.online)
        return online, len(views) - online

    def targets(self, keys: list[str]) -> list[DispatchTarget]:
        """Outbound targets for the given roster keys, in the given order.

        Unknown keys become address-less targets so the batch reports them.
        """
        with self._lock:
            result = []
            for key in keys:
                entry = self._entries.get(key)
                if entry is None:
                    result.append(DispatchTarget(name=key, address=None, port=self.default_command_port))
                    continue
                result.append(DispatchTarget(
                    name=entry.display_name,
                    address=entry.target_address or None,
                    port=entry.command_port or self.default_command_port,
                ))
            return result

    def _view(self, entry: RosterEntry, now: float) -> RosterView:
        return RosterView(
            entry=_copy(entry),
            online=entry.is_online(now, self.liveness_timeout),
            seconds_since_seen=max(0.0, now - entry.last_seen),
        )


def _copy(entry: RosterEntry) -> RosterEntry:
    return RosterEntry(**{f.name: getattr(entry, f.name) for f in fields(entry)})
