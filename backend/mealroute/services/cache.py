from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any

import redis

from mealroute.utils.settings import get_settings


LOGGER = logging.getLogger(__name__)

KEY_PREFIX = "mealroute:"


class CacheBackend:
    """JSON value cache shared by the traffic provider; keys are namespaced under `mealroute:`."""

    name = "base"

    def get(self, key: str) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class RedisCache(CacheBackend):
    name = "redis"

    def __init__(self, redis_url: str):
        self.client = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=1,
            socket_timeout=1,
        )
        self.client.ping()

    def get(self, key: str) -> Any:
        try:
            raw = self.client.get(KEY_PREFIX + key)
        except redis.RedisError as exc:
            LOGGER.warning("CACHE_READ_FAILED key=%s error=%s", key, exc)
            return None
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        raw = json.dumps(value, default=str)
        try:
            if ttl_seconds:
                self.client.setex(KEY_PREFIX + key, ttl_seconds, raw)
            else:
                self.client.set(KEY_PREFIX + key, raw)
        except redis.RedisError as exc:
            LOGGER.warning("CACHE_WRITE_FAILED key=%s error=%s", key, exc)

    def delete(self, key: str) -> None:
        self.client.delete(KEY_PREFIX + key)


class InMemoryCache(CacheBackend):
    name = "memory"

    def __init__(self):
        self._entries: dict[str, tuple[float | None, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at is not None and expires_at <= time.monotonic():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._entries[key] = (expires_at, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)


_CACHE: CacheBackend | None = None


def get_cache() -> CacheBackend:
    global _CACHE
    if _CACHE is not None:
        return _CACHE

    settings = get_settings()
    try:
        _CACHE = RedisCache(settings.redis_url)
    except redis.RedisError as exc:
        LOGGER.info("CACHE_FALLBACK backend=memory reason=%s", exc.__class__.__name__)
        _CACHE = InMemoryCache()
    return _CACHE
