"""TTL key/value caches holding small JSON documents such as the regime override."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import json
import logging
from typing import Any, Optional, Protocol

import redis

from strategy_engine.common import EngineClock

logger = logging.getLogger(__name__)


class TTLCache(Protocol):
    """Minimal cache protocol; ``ttl_ms`` of None stores without expiry."""

    def get(self, key: str) -> Optional[Any]:
        """Return the decoded value or None when missing/expired."""

    def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None:
        """Store a JSON-serializable value."""

    def delete(self, key: str) -> None:
        """Remove a key if present."""


class RedisTTLCache:
    """Redis-backed cache storing JSON strings with millisecond expiry."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisTTLCache":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        return cls(client)

    def get(self, key: str) -> Optional[Any]:
        raw = self._client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Cache key %s holds a non-JSON value; ignoring it", key)
            return None

    def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None:
        payload = json.dumps(value, sort_keys=True)
        if ttl_ms is not None and ttl_ms > 0:
            self._client.set(key, payload, px=ttl_ms)
        else:
            self._client.set(key, payload)

    def delete(self, key: str) -> None:
        self._client.delete(key)


@dataclass
class _CacheSlot:
    payload: str
    expires_at: datetime | None


class InMemoryTTLCache:
    """Process-local cache with clock-driven expiry for single-node runs and tests."""

    def __init__(self, clock: EngineClock | None = None) -> None:
        self._clock = clock or EngineClock()
        self._slots: dict[str, _CacheSlot] = {}

    def get(self, key: str) -> Optional[Any]:
        slot = self._slots.get(key)
        if slot is None:
            return None
        if slot.expires_at is not None and self._clock.now_utc() >= slot.expires_at:
            del self._slots[key]
            return None
        return json.loads(slot.payload)

    def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None:
        expires_at = None
        if ttl_ms is not None and ttl_ms > 0:
            expires_at = self._clock.now_utc() + timedelta(milliseconds=ttl_ms)
        self._slots[key] = _CacheSlot(payload=json.dumps(value, sort_keys=True), expires_at=expires_at)

    def delete(self, key: str) -> None:
        self._slots.pop(key, None)


MEMORY_CACHE_SCHEME = "memory://"


def cache_from_url(url: str, clock: EngineClock | None = None) -> TTLCache:
    """``memory://`` selects a process-local cache; any other URL is handed to redis-py."""
    if url.startswith(MEMORY_CACHE_SCHEME):
        logger.warning("Using process-local cache; regime overrides will not survive a restart")
        return InMemoryTTLCache(clock)
    return RedisTTLCache.from_url(url)
