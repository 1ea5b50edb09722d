"""
TTL Cache and Rate Limiter

Per-process in-memory cache with expiry, plus a fixed-window rate limiter
stored in it. Both are constructed by the service lifespan and injected
where needed, so tests build isolated instances.

Usage:
    cache = TTLCache(default_ttl=300)
    cache.start_sweeper(interval=60)

    limiter = RateLimiter(cache, limit=5, window_seconds=900, prefix="payment")
    decision = limiter.hit(client_ip)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class TTLCache:
    """Key/value store where every entry carries its own expiry"""

    def __init__(self, default_ttl: float = 300, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self.clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._hits = 0
        self._misses = 0
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return default
        value, expires_at = entry
        if expires_at <= self.clock():
            del self._entries[key]
            self._misses += 1
            return default
        self._hits += 1
        return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = self.clock() + (ttl if ttl is not None else self.default_ttl)
        self._entries[key] = (value, expires_at)

    def expires_at(self, key: str) -> Optional[float]:
        entry = self._entries.get(key)
        return entry[1] if entry else None

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        keys = [k for k in self._entries if k.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """Drop every expired entry"""
        now = self.clock()
        expired = [k for k, (_, exp) in self._entries.items() if exp <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"TTL cache swept {len(expired)} expired entries")
        return len(expired)

    def stats(self) -> Dict[str, int]:
        return {"keys": len(self._entries), "hits": self._hits, "misses": self._misses}

    # ====================
    # Sweep lifecycle
    # ====================

    def start_sweeper(self, interval: float = 60) -> None:
        if self._sweeper and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop(interval))
        logger.info(f"TTL cache sweeper started (every {interval}s)")

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        logger.info("TTL cache sweeper stopped")


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_in: float


class RateLimiter:
    """Fixed-window request counter per client key"""

    def __init__(self, cache: TTLCache, limit: int, window_seconds: float, prefix: str = "rate"):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.cache = cache
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix

    def _key(self, client_key: str) -> str:
        return f"{self.prefix}:{client_key}"

    def hit(self, client_key: str) -> RateLimitDecision:
        """Count one request and decide whether it is allowed"""
        key = self._key(client_key)
        count = self.cache.get(key)
        if count is None:
            # New window starts on the first request
            self.cache.set(key, 1, ttl=self.window_seconds)
            count = 1
        else:
            count += 1
            expires_at = self.cache.expires_at(key)
            remaining_ttl = max(expires_at - self.cache.clock(), 0) if expires_at else self.window_seconds
            self.cache.set(key, count, ttl=remaining_ttl)

        expires_at = self.cache.expires_at(key) or self.cache.clock()
        reset_in = max(expires_at - self.cache.clock(), 0)
        allowed = count <= self.limit
        if not allowed:
            logger.warning(f"⚠️  Rate limit exceeded for {key} ({count}/{self.limit})")
        return RateLimitDecision(
            allowed=allowed,
            limit=self.limit,
            remaining=max(self.limit - count, 0),
            reset_in=reset_in,
        )

    def reset(self, client_key: str) -> None:
        self.cache.delete(self._key(client_key))
