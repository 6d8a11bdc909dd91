from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 2 * 60 * 60  # 2 hours
DEFAULT_STALE_RETENTION_SECONDS = 24 * 60 * 60


@dataclass
class CacheEntry:
    payload: Any
    stored_at: float
    expires_at: float

    def is_live(self, now: float) -> bool:
        return now <= self.expires_at


class TTLCacheStore:
    """
    In-memory key/value store with per-entry expiry.

    Expired entries are invisible to get() but stay physically present until
    the sweeper drops them, so get_stale() can still hand them out while the
    upstream is unavailable.
    """

    def __init__(
        self,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        stale_retention: int = DEFAULT_STALE_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.default_ttl = default_ttl
        self.stale_retention = stale_retention
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._sweeper: threading.Thread | None = None
        self._stop_event = threading.Event()

    def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None or not entry.is_live(self._clock()):
            return None
        return entry

    def get_stale(self, key: str) -> CacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, payload: Any, ttl: int | None = None) -> CacheEntry:
        now = self._clock()
        ttl = self.default_ttl if ttl is None else ttl
        entry = CacheEntry(payload=payload, stored_at=now, expires_at=now + ttl)
        with self._lock:
            self._entries[key] = entry
        return entry

    def keys(self) -> set[str]:
        with self._lock:
            return set(self._entries)

    def has_entries(self) -> bool:
        with self._lock:
            return bool(self._entries)

    def flush_all(self) -> int:
        with self._lock:
            cleared = len(self._entries)
            self._entries.clear()
        logger.info(f"Cache flushed: {cleared} keys cleared")
        return cleared

    def sweep(self) -> int:
        cutoff = self._clock() - self.stale_retention
        with self._lock:
            dead = [key for key, entry in self._entries.items() if entry.expires_at < cutoff]
            for key in dead:
                del self._entries[key]
        if dead:
            logger.debug(f"Cache sweep removed {len(dead)} expired keys")
        return len(dead)

    def start_sweeper(self, interval_seconds: float) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_event.clear()

        def sweep_worker():
            while not self._stop_event.wait(interval_seconds):
                try:
                    self.sweep()
                except Exception as e:
                    logger.error(f"Cache sweep error: {e}")

        self._sweeper = threading.Thread(target=sweep_worker, name="cache-sweeper", daemon=True)
        self._sweeper.start()
        logger.info(f"Cache sweeper started (every {interval_seconds}s)")

    def stop_sweeper(self) -> None:
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1)
            self._sweeper = None
