"""Key/value cache with per-entry TTLs.

Two backends share one small interface (``get``/``set``/``delete``/``close``):
``MemoryCache`` keeps entries in-process and is the default for development and
tests, ``RedisCache`` talks to a Redis server. Values are stored as JSON text in
both, so a cache hit always hands back a fresh copy of what was stored.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Optional

import redis

from config import Settings


logger = logging.getLogger(__name__)

REPORT_MONTHLY_TTL_SECS = 3600
REPORT_YEARLY_TTL_SECS = 21600
DASHBOARD_TTL_SECS = 900
AI_INSIGHTS_TTL_SECS = 3600


def user_key(user_id: str, kind: str, params: Optional[str] = None) -> str:
    return f"user:{user_id}:{kind}:{params}" if params else f"user:{user_id}:{kind}"


def dashboard_key(user_id: str) -> str:
    return f"dashboard:{user_id}"


class MemoryCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, payload = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
        return json.loads(payload)

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        payload = json.dumps(value)
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, payload)

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
        return removed

    def close(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisCache:
    def __init__(self, client: "redis.Redis") -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str, password: Optional[str] = None) -> "RedisCache":
        client = redis.Redis.from_url(url, password=password, decode_responses=True)
        return cls(client)

    def get(self, key: str) -> Any:
        payload = self.client.get(key)
        return json.loads(payload) if payload else None

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self.client.setex(key, ttl_seconds, json.dumps(value))

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self.client.delete(*keys) or 0)

    def close(self) -> None:
        self.client.close()


Cache = MemoryCache | RedisCache


def create_cache(settings: Settings) -> Cache:
    url = settings.cache_url or "memory://"
    if url.startswith("memory://"):
        logger.info("cache_init: backend=memory")
        return MemoryCache()
    if url.startswith(("redis://", "rediss://", "unix://")):
        logger.info("cache_init: backend=redis")
        return RedisCache.from_url(url, password=settings.cache_password)
    raise ValueError(f"Unsupported cache URL: {url}")
