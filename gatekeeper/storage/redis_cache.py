from __future__ import annotations

import hashlib
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed SecurityCache shared by every worker.

    Rate limits use the same fixed-window semantics as ``MemoryCache``: the
    first hit in a window starts a counter that expires with the window.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR and the first EXPIRE run as one step so a crash cannot leave an immortal counter
    _FIXED_WINDOW_SCRIPT = """
local hits = redis.call('INCR', KEYS[1])
if hits == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
end
if hits > tonumber(ARGV[1]) then
  return 0
end
return 1
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Ping with a throwaway sync client; the async one stays unbound to any loop."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _rate_key(key: str) -> str:
        return f"gk:rate:{hashlib.sha256(key.encode()).hexdigest()}"

    @staticmethod
    def _block_key(ip: str) -> str:
        return f"gk:blocked_ip:{ip}"

    async def block_ip(self, ip: str, *, reason: str, ttl_seconds: Optional[int] = None) -> None:
        await self.client.set(self._block_key(ip), reason, ex=ttl_seconds or None)

    async def unblock_ip(self, ip: str) -> bool:
        return bool(await self.client.delete(self._block_key(ip)))

    async def is_ip_blocked(self, ip: str) -> bool:
        return bool(await self.client.exists(self._block_key(ip)))

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        allowed = await self._fixed_window(
            keys=[self._rate_key(key)], args=[int(limit), max(int(window_seconds), 1)]
        )
        return bool(int(allowed))

    async def close(self) -> None:
        await self.client.aclose()
