from __future__ import annotations
import threading
import time
from typing import Callable, Dict, Optional


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class ScanCooldown:
    """
    De-duplicate card taps within a per-tag cooldown window. In-memory cache:
    tag -> last accepted time (ms).

    The map is shared by the broker thread and asyncio tasks, so every
    read-modify-write happens under one lock. Entries older than
    sweep_factor * window are evicted every `sweep_every` accepts so a
    long-running bridge does not grow without bound.
    """

    def __init__(
        self,
        window_ms: int = 3000,
        *,
        sweep_factor: int = 10,
        sweep_every: int = 256,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.window_ms = int(window_ms)
        self.sweep_factor = max(1, int(sweep_factor))
        self.sweep_every = max(1, int(sweep_every))
        self._clock = clock or monotonic_ms
        self._last: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._accepts_since_sweep = 0

    def should_accept(self, tag: str, now_ms: Optional[int] = None) -> bool:
        now = self._clock() if now_ms is None else int(now_ms)
        with self._lock:
            last = self._last.get(tag)
            if last is not None and now - last < self.window_ms:
                return False
            self._last[tag] = now
            self._accepts_since_sweep += 1
            if self._accepts_since_sweep >= self.sweep_every:
                self._sweep_locked(now)
            return True

    def sweep(self, now_ms: Optional[int] = None) -> int:
        """Evict stale entries now; returns how many were dropped."""
        now = self._clock() if now_ms is None else int(now_ms)
        with self._lock:
            return self._sweep_locked(now)

    def _sweep_locked(self, now: int) -> int:
        horizon = now - self.window_ms * self.sweep_factor
        stale = [t for t, ts in self._last.items() if ts < horizon]
        for t in stale:
            del self._last[t]
        self._accepts_since_sweep = 0
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._last)
