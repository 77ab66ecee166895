from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple


class SecurityCache(Protocol):
    """Shared hot state for the auth edge: IP blocklist and request throttles.

    Call sites depend only on this interface so the process-local
    implementation can be swapped for a distributed one.
    """

    async def block_ip(self, ip: str, *, reason: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def unblock_ip(self, ip: str) -> bool: ...

    async def is_ip_blocked(self, ip: str) -> bool: ...

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool: ...

    async def close(self) -> None: ...


class MemoryCache:
    """Process-local SecurityCache guarded by a lock.

    Rate limits are fixed windows; expired windows and blocks are swept at
    most once per ``SWEEP_INTERVAL`` so the maps stay bounded by live clients.
    """

    SWEEP_INTERVAL = 60.0

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        # ip -> (reason, expires_at or None)
        self._blocked: Dict[str, Tuple[str, Optional[float]]] = {}
        # key -> (count, window_expires_at)
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._next_sweep = self._clock() + self.SWEEP_INTERVAL

    async def block_ip(self, ip: str, *, reason: str, ttl_seconds: Optional[int] = None) -> None:
        expires = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._blocked[ip] = (reason, expires)

    async def unblock_ip(self, ip: str) -> bool:
        with self._lock:
            return self._blocked.pop(ip, None) is not None

    async def is_ip_blocked(self, ip: str) -> bool:
        with self._lock:
            entry = self._blocked.get(ip)
            if not entry:
                return False
            _, expires = entry
            if expires is not None and expires <= self._clock():
                self._blocked.pop(ip, None)
                return False
            return True

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            count, expires = self._windows.get(key, (0, now + window_seconds))
            if expires <= now:
                count, expires = 0, now + window_seconds
            if count >= limit:
                self._windows[key] = (count, expires)
                return False
            self._windows[key] = (count + 1, expires)
            return True

    def _sweep(self, now: float) -> None:
        self._windows = {k: v for k, v in self._windows.items() if v[1] > now}
        self._blocked = {
            ip: entry for ip, entry in self._blocked.items() if entry[1] is None or entry[1] > now
        }
        self._next_sweep = now + self.SWEEP_INTERVAL

    async def close(self) -> None:
        with self._lock:
            self._blocked.clear()
            self._windows.clear()
