import time
from typing import Dict, Optional, Tuple

from .config import REDIS_URL, TESTING

if not TESTING:
    import redis.asyncio as redis  # type: ignore
    RedisClient = redis.Redis
else:
    RedisClient = None


class AsyncInMemoryRedis:
    """Test double for the handful of Redis string commands the replay guard uses."""

    def __init__(self):
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, name: str) -> Optional[str]:
        entry = self._values.get(name)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._values[name]
            return None
        return value

    async def set(self, name: str, value: str, ex: Optional[int] = None, nx: bool = False):
        # no await between the check and the write, so this is atomic on one event loop
        if nx and self._live(name) is not None:
            return None
        expires_at = time.monotonic() + ex if ex else None
        self._values[name] = (value, expires_at)
        return True

    async def ttl(self, name: str) -> int:
        if self._live(name) is None:
            return -2
        _, expires_at = self._values[name]
        if expires_at is None:
            return -1
        return int(expires_at - time.monotonic())


# Singleton in-memory client for testing
_inmemory_client: Optional[AsyncInMemoryRedis] = None
# Shared production client, one connection pool per process
_client = None


async def get_redis():
    global _inmemory_client, _client
    if TESTING:
        if _inmemory_client is None:
            _inmemory_client = AsyncInMemoryRedis()
        return _inmemory_client
    if _client is None:
        _client = RedisClient.from_url(REDIS_URL, decode_responses=True)  # type: ignore
    return _client
