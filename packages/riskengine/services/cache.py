"""Result caches keyed by (subject, metric kind, window, params).

Each metric family carries its own TTL. An expired entry is a miss; stale
values are never returned. Payloads are stored as JSON text in both
backends, and a payload that cannot be decoded raises CacheCorruptionError.
"""

from __future__ import annotations

import json
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Tuple

import redis
import structlog

from ..config import Settings
from ..risk.errors import CacheCorruptionError

logger = structlog.get_logger(__name__)

KEY_PREFIX = "riskengine"


class MetricKind(str, Enum):
    RISK_METRICS = "risk_metrics"
    VOLATILITY_FORECAST = "volatility_forecast"
    REGIME = "regime"
    CORRELATION = "correlation"
    BETA = "beta"


DEFAULT_TTLS: Dict[MetricKind, int] = {
    MetricKind.VOLATILITY_FORECAST: 24 * 3600,
    MetricKind.REGIME: 30 * 24 * 3600,
    MetricKind.CORRELATION: 3600,
    MetricKind.RISK_METRICS: 4 * 3600,
    MetricKind.BETA: 24 * 3600,
}


def ttls_from_settings(settings: Settings) -> Dict[MetricKind, int]:
    return {
        MetricKind.VOLATILITY_FORECAST: settings.TTL_VOLATILITY_FORECAST,
        MetricKind.REGIME: settings.TTL_REGIME,
        MetricKind.CORRELATION: settings.TTL_CORRELATION,
        MetricKind.RISK_METRICS: settings.TTL_RISK_METRICS,
        MetricKind.BETA: settings.TTL_BETA,
    }


def make_cache_key(
    subject: str,
    kind: MetricKind,
    window: Optional[int] = None,
    params: Optional[Mapping[str, Any]] = None,
) -> str:
    """Build a deterministic cache key.

    Params are serialized with sorted keys so argument order never changes
    the key.
    """
    encoded = json.dumps(dict(params or {}), sort_keys=True, default=str, separators=(",", ":"))
    return f"{KEY_PREFIX}:{kind.value}:{subject}:{window if window is not None else '-'}:{encoded}"


def _decode(key: str, raw: str) -> Dict[str, Any]:
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.error("result_cache: undecodable payload", key=key, error=str(e))
        raise CacheCorruptionError(f"Cached payload for {key} cannot be decoded") from e
    if not isinstance(payload, dict):
        raise CacheCorruptionError(f"Cached payload for {key} is not an object")
    return payload


class ResultCache(Protocol):
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def set(self, key: str, value: Mapping[str, Any], ttl_seconds: int) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryResultCache:
    """Process-local TTL cache.

    Expired entries are dropped when read and swept from the whole map on
    writes, at most once per ``purge_interval`` seconds.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, purge_interval: float = 60.0):
        self._clock = clock
        self._entries: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()
        self._purge_interval = purge_interval
        self._next_purge = clock() + purge_interval

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        self._next_purge = now + self._purge_interval
        if expired:
            logger.debug("result_cache: purged expired entries", purged=len(expired), remaining=len(self._entries))

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, raw = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
        return _decode(key, raw)

    def set(self, key: str, value: Mapping[str, Any], ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        raw = json.dumps(dict(value), default=str)
        with self._lock:
            now = self._clock()
            if now >= self._next_purge:
                self._purge_expired(now)
            self._entries[key] = (now + ttl_seconds, raw)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisResultCache:
    """Redis-backed TTL cache; expiry is delegated to Redis (SET ... EX)."""

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisResultCache":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._client.get(key)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        return _decode(key, raw)

    def set(self, key: str, value: Mapping[str, Any], ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        self._client.set(key, json.dumps(dict(value), default=str), ex=int(ttl_seconds))

    def delete(self, key: str) -> None:
        self._client.delete(key)


def build_result_cache(settings: Settings) -> ResultCache:
    """Redis when REDIS_URL is configured, otherwise in-memory."""
    if settings.REDIS_URL:
        logger.info("build_result_cache: using redis")
        return RedisResultCache.from_url(settings.REDIS_URL)
    return InMemoryResultCache()
