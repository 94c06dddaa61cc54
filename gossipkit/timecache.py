"""Time-bounded caches of recently seen message ids."""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import MutableMapping

BACKGROUND_SWEEP_INTERVAL = 60.0
"""Seconds between background sweeps of expired entries."""


class Strategy(Enum):
    """Expiration strategy of a time cache."""

    FIRST_SEEN = 0
    """Entries expire counting from the time they were added."""
    LAST_SEEN = 1
    """Entries expire counting from the last add or lookup that touched them."""


def sweep(lock, entries: MutableMapping[str, float], now: float) -> None:
    """Remove every entry whose expiry lies strictly before ``now``."""
    with lock:
        expired = [key for key, expiry in entries.items() if expiry < now]
        for key in expired:
            del entries[key]


class TimeCache(ABC):
    """A cache of recently seen ids whose entries expire after a TTL."""

    @abstractmethod
    def add(self, key: str) -> bool:
        """Add ``key``; return True if it was not already present."""

    @abstractmethod
    def has(self, key: str) -> bool:
        """Return whether ``key`` is present."""

    @abstractmethod
    def done(self) -> None:
        """Stop background work and release resources."""

    def __enter__(self) -> "TimeCache":
        return self

    def __exit__(self, *exc_info) -> None:
        self.done()


class _SweptCache(TimeCache):
    """Shared storage and background sweeping for the concrete caches."""

    def __init__(self, ttl: float, sweep_interval: float = BACKGROUND_SWEEP_INTERVAL):
        self._ttl = ttl
        self._sweep_interval = sweep_interval
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._background, daemon=True)
        self._thread.start()

    def _background(self) -> None:
        while not self._stopped.wait(self._sweep_interval):
            sweep(self._lock, self._entries, time.monotonic())

    def _expiry(self) -> float:
        return time.monotonic() + self._ttl

    def _stop(self) -> None:
        self._stopped.set()
        if self._thread is not threading.current_thread():
            self._thread.join()


class FirstSeenCache(_SweptCache):
    """Time cache that fixes an entry's expiry when it is first added."""

    def add(self, key: str) -> bool:
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = self._expiry()
            return True

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def done(self) -> None:
        self._stop()


class LastSeenCache(_SweptCache):
    """Time cache that extends an entry's expiry whenever it is added or looked up."""

    def add(self, key: str) -> bool:
        with self._lock:
            present = key in self._entries
            self._entries[key] = self._expiry()
            return not present

    def has(self, key: str) -> bool:
        with self._lock:
            if key in self._entries:
                self._entries[key] = self._expiry()
                return True
            return False

    def done(self) -> None:
        self._stop()


def new_time_cache(
    ttl: float,
    strategy: Strategy = Strategy.FIRST_SEEN,
    sweep_interval: float = BACKGROUND_SWEEP_INTERVAL,
) -> TimeCache:
    """Create a time cache; any strategy other than LAST_SEEN yields a first-seen cache."""
    if strategy is Strategy.LAST_SEEN:
        return LastSeenCache(ttl, sweep_interval)
    return FirstSeenCache(ttl, sweep_interval)