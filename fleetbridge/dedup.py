"""
Duplicate suppression for the ingestion pipeline.

A single broker event can reach the bridge more than once (re-delivery,
two clients alive across a reconnect) and the backend has no unique
constraint on notifications, so these ledgers are the only barrier
against duplicate writes, toasts and emails.

Every ledger entry expires on its own. Expiry is lazy: entries are swept
on access instead of one timer per entry.
"""

import base64
import logging
import threading
import time
from typing import Callable, Optional

from fleetbridge.config import CONFIG

log = logging.getLogger("fleet-bridge.dedup")


def fingerprint(*parts) -> str:
    """Stable key for a message: base64 of its parts joined by ``:``."""
    raw = ":".join("" if p is None else str(p) for p in parts)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def message_key(topic: str, message: str, robot_id=None, section_name=None) -> str:
    return f"{robot_id}:{section_name}:{fingerprint(topic, message)}"


class ExpiringLedger:
    """Set of keys that each expire ``ttl`` seconds after insertion."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict = {}    # key → expiry deadline
        self._lock = threading.Lock()

    def _sweep(self, now: float):
        expired = [k for k, deadline in self._entries.items() if deadline <= now]
        for k in expired:
            del self._entries[k]

    def __contains__(self, key: str) -> bool:
        with self._lock:
            now = self._clock()
            deadline = self._entries.get(key)
            if deadline is None:
                return False
            if deadline <= now:
                del self._entries[key]
                return False
            return True

    def add(self, key: str, ttl: Optional[float] = None):
        with self._lock:
            now = self._clock()
            self._sweep(now)
            self._entries[key] = now + (self.ttl if ttl is None else ttl)

    def claim(self, key: str, ttl: Optional[float] = None) -> bool:
        """Insert *key* unless it is already live. True if this call inserted it."""
        with self._lock:
            now = self._clock()
            self._sweep(now)
            if key in self._entries:
                return False
            self._entries[key] = now + (self.ttl if ttl is None else ttl)
            return True

    def discard(self, key: str):
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            self._sweep(self._clock())
            return len(self._entries)


class DedupGuard:
    """The three independent guards plus the in-flight processing set.

    * processing: fingerprints currently being handled, and for a short
      cooldown after, the ones just handled
    * toasts: human-readable toast texts recently shown
    * danger: alert-class events (robot + section + voltage or message)
    """

    def __init__(self, message_window: float = None, toast_window: float = None,
                 danger_window: float = None, half_cycle_window: float = None,
                 clock: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._in_flight: set = set()
        self.processed = ExpiringLedger(
            CONFIG["message_dedup_window"] if message_window is None else message_window, clock)
        self.toasts = ExpiringLedger(
            CONFIG["toast_window"] if toast_window is None else toast_window, clock)
        self.danger = ExpiringLedger(
            CONFIG["danger_window"] if danger_window is None else danger_window, clock)
        self.half_cycle_window = (
            CONFIG["half_cycle_window"] if half_cycle_window is None else half_cycle_window)

    # ── processing lock ──

    def is_duplicate(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight or key in self.processed

    def begin(self, key: str) -> bool:
        """Check-and-set the processing marker. False means drop the event."""
        with self._lock:
            if key in self._in_flight or key in self.processed:
                log.debug("Dropping duplicate event %s", key)
                return False
            self._in_flight.add(key)
            return True

    def end(self, key: str, cooldown: Optional[float] = None):
        """Clear the processing marker and start the cooldown for *key*."""
        with self._lock:
            self._in_flight.discard(key)
            self.processed.add(key, ttl=cooldown)

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    # ── toast guard ──

    def claim_toast(self, text: str) -> bool:
        ok = self.toasts.claim(fingerprint(text))
        if not ok:
            log.debug("Toast already shown: %s", text)
        return ok

    # ── critical-alert guard ──

    def claim_danger(self, robot_id, section_name, voltage=None, message: str = "") -> bool:
        if voltage is not None:
            key = f"danger-{robot_id}-{section_name}-{voltage}"
        else:
            key = f"danger-{robot_id}-{section_name}-{message}"
        ok = self.danger.claim(key)
        if not ok:
            log.debug("Critical alert suppressed: %s", key)
        return ok
