"""Thread-safe in-memory LRU cache with per-entry expiry.

Two callers share this:

• ``CalendlyClient`` keeps event types and event-type locations here for a
  few minutes, so a busy line does not list event types on every booking.
• ``BookingGuard`` remembers recently confirmed bookings for the dedup
  window, keyed by an idempotency hash.

Entries are bounded by count (``max_entries``) and by age (``ttl_seconds``,
per cache or per ``put``).  Expired entries are dropped lazily on read and
whenever a write needs room.

>>> cache = TTLCache(max_entries=256, ttl_seconds=300)
>>> cache.put("event_types", [{"uri": "..."}])
>>> cache.get("event_types")
[{'uri': '...'}]
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1024
DEFAULT_TTL_SECONDS = 300.0


class TTLCache:
    """Least-recently-used cache whose entries also expire after a TTL."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl_seconds: float | None = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock
        # key → (value, expires_at or None)
        self._store: OrderedDict[str, tuple[Any, float | None]] = OrderedDict()
        self._lock = threading.Lock()

    def _expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    # ── Core operations ──────────────────────────────────────────────

    def get(self, key: str) -> Any | None:
        """Return the live value (promoting it to MRU) or ``None``."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._expired(expires_at):
                del self._store[key]
                logger.debug("Cache: %s expired", key)
                return None
            self._store.move_to_end(key)
            return value

    def put(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        """Insert or overwrite *key*; evicts expired then LRU entries."""
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        expires_at = self._clock() + ttl if ttl is not None else None

        with self._lock:
            self._store.pop(key, None)
            if len(self._store) >= self._max_entries:
                self._purge_expired_locked()
            while len(self._store) >= self._max_entries:
                evicted_key, _ = self._store.popitem(last=False)
                logger.debug("Cache: evicted %s", evicted_key)
            self._store[key] = (value, expires_at)

    def invalidate(self, key: str) -> bool:
        """Remove a single key.  Returns ``True`` if the key existed."""
        with self._lock:
            return self._store.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def _purge_expired_locked(self) -> int:
        stale = [k for k, (_, exp) in self._store.items() if self._expired(exp)]
        for key in stale:
            del self._store[key]
        return len(stale)

    # ── Introspection ────────────────────────────────────────────────

    @property
    def entry_count(self) -> int:
        return len(self._store)

    def has(self, key: str) -> bool:
        """Check for a live key *without* promoting it."""
        with self._lock:
            entry = self._store.get(key)
            return entry is not None and not self._expired(entry[1])
