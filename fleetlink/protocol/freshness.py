"""Staleness and replay suppression for inbound envelopes."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from fleetlink.errors import DuplicateCommand, StaleCommand
from fleetlink.protocol.envelope import CommandEnvelope, timestamp_to_seconds

logger = logging.getLogger(__name__)

MAX_REMEMBERED_COMMAND_IDS = 128


class FreshnessFilter:
    """Rejects envelopes that are too old or whose cmdId was already seen.

    The dedup cache maps ``cmdId`` to the wall-clock second it was admitted.
    Once it grows past *max_entries*, every entry older than the staleness
    window (at least one second) is dropped.  The receive thread writes and
    other threads may read, so insert and prune run under one lock.
    """

    def __init__(
        self,
        stale_window_seconds: float = 0.0,
        max_entries: int = MAX_REMEMBERED_COMMAND_IDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.stale_window_seconds = stale_window_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def __contains__(self, cmd_id: str) -> bool:
        with self._lock:
            return cmd_id in self._seen

    # ── Checks ────────────────────────────────────────────────────

    def age_seconds(self, envelope: CommandEnvelope) -> float:
        return self._clock() - timestamp_to_seconds(envelope.timestamp)

    def is_stale(self, envelope: CommandEnvelope) -> bool:
        if self.stale_window_seconds <= 0 or envelope.timestamp <= 0:
            return False
        return self.age_seconds(envelope) > self.stale_window_seconds

    def register_command_id(self, envelope: CommandEnvelope) -> bool:
        """Remember the envelope's cmdId. False if it was already known."""
        if not envelope.cmd_id:
            return True

        with self._lock:
            if envelope.cmd_id in self._seen:
                return False
            self._seen[envelope.cmd_id] = self._clock()
            if len(self._seen) > self.max_entries:
                self._prune()
        return True

    def check(self, envelope: CommandEnvelope) -> None:
        """Raise if the envelope must not be processed.

        Raises:
            StaleCommand: the envelope is older than the window.
            DuplicateCommand: the cmdId has been admitted before.
        """
        if self.is_stale(envelope):
            raise StaleCommand(
                f"command {envelope.cmd_id or envelope.action} is "
                f"{self.age_seconds(envelope):.1f}s old"
            )
        if not self.register_command_id(envelope):
            raise DuplicateCommand(f"command {envelope.cmd_id} already processed")

    def admit(self, envelope: CommandEnvelope) -> bool:
        try:
            self.check(envelope)
        except (StaleCommand, DuplicateCommand):
            return False
        return True

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()

    # ── Internal ──────────────────────────────────────────────────

    def _prune(self) -> None:
        cutoff = self._clock() - max(1.0, self.stale_window_seconds)
        expired = [cmd_id for cmd_id, seen_at in self._seen.items() if seen_at < cutoff]
        for cmd_id in expired:
            del self._seen[cmd_id]
        if expired:
            logger.debug("Pruned %d remembered command ids", len(expired))
