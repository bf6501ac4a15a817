"""
Read-through / write-through cache for expensive agent lookups.

Entries are keyed by a stable content hash of (agent type, normalized input)
and carry an absolute ``expires_at``; an expired entry is treated as a miss and
evicted on read. ``with_single_flight`` collapses concurrent misses on one key
into a single computation: in-process through a shared future, and across
processes through a Redis lease (SET NX PX + compare-and-delete) that expires on
its own if the holder dies.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from utils.redis_wrapper import RedisHandle, RedisOpFailed, RedisUnavailable

from . import storage
from .config import get_settings
from .errors import CacheUnavailable
from .metrics import cache_hits_total, cache_misses_total, cache_single_flight_joins_total, cache_unavailable_total
from .models import CacheEntry, TtlClass

logger = logging.getLogger(__name__)

_BACKEND_ERRORS = (RedisUnavailable, RedisOpFailed, SQLAlchemyError, OSError)

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def normalize_input(value: Any) -> Any:
    """Canonical form used for hashing: sorted keys, trimmed strings, no None values."""
    if isinstance(value, dict):
        return {str(k): normalize_input(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0])) if v is not None}
    if isinstance(value, (list, tuple)):
        return [normalize_input(v) for v in value]
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def make_cache_key(agent_type: str, payload: Dict[str, Any]) -> str:
    body = json.dumps({"agent_type": str(agent_type), "input": normalize_input(payload)}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode()).hexdigest()


# ============================================================================
# BACKENDS
# ============================================================================

class MemoryCacheBackend:
    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    async def put(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)


class SqlCacheBackend:
    """Cache entries in the structured store's ``cache_entries`` table."""

    def __init__(self, sessionmaker):
        self._sessionmaker = sessionmaker

    async def get(self, key: str) -> Optional[CacheEntry]:
        row = await storage.get_cache_entry(self._sessionmaker, key)
        return CacheEntry.from_dict(row) if row else None

    async def put(self, entry: CacheEntry) -> None:
        await storage.put_cache_entry(self._sessionmaker, entry.key, entry.payload, entry.expires_at, entry.ttl_class.value)

    async def delete(self, key: str) -> None:
        await storage.delete_cache_entry(self._sessionmaker, key)


class RedisCacheBackend:
    def __init__(self, handle: RedisHandle, prefix: Optional[str] = None):
        self._handle = handle
        self._prefix = prefix or get_settings().REDIS_CACHE_PREFIX

    async def get(self, key: str) -> Optional[CacheEntry]:
        raw = await self._handle.op(lambda r, k: r.get(k), self._prefix + key)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        return CacheEntry.from_dict(json.loads(raw))

    async def put(self, entry: CacheEntry) -> None:
        px = max(1, int((entry.expires_at - time.time()) * 1000))
        await self._handle.op(lambda r, k, v, px: r.set(k, v, px=px), self._prefix + entry.key, json.dumps(entry.to_dict(), default=str), px)

    async def delete(self, key: str) -> None:
        await self._handle.op(lambda r, k: r.delete(k), self._prefix + key)


class RedisLease:
    """Distributed per-key lease; a crashed holder releases by TTL."""

    def __init__(self, handle: RedisHandle, prefix: Optional[str] = None):
        self._handle = handle
        self._prefix = prefix or get_settings().REDIS_LEASE_PREFIX

    async def acquire(self, key: str, ttl_ms: int) -> Optional[str]:
        token = uuid4().hex
        ok = await self._handle.op(lambda r, k, v, px: r.set(k, v, nx=True, px=px), self._prefix + key, token, ttl_ms)
        return token if ok else None

    async def release(self, key: str, token: str) -> bool:
        res = await self._handle.op(lambda r, k, t: r.eval(_RELEASE_SCRIPT, 1, k, t), self._prefix + key, token)
        return bool(res)


# ============================================================================
# CACHE MANAGER
# ============================================================================

class CacheManager:
    def __init__(
        self,
        backend=None,
        lease: Optional[RedisLease] = None,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend if backend is not None else MemoryCacheBackend()
        self._lease = lease
        self._clock = clock
        self._inflight: Dict[str, asyncio.Future] = {}

    @classmethod
    def from_settings(cls, sessionmaker=None, redis_handle: Optional[RedisHandle] = None) -> "CacheManager":
        cfg = get_settings()
        if cfg.REDIS_CACHE_ENABLED and redis_handle is not None:
            return cls(RedisCacheBackend(redis_handle), RedisLease(redis_handle))
        if sessionmaker is not None:
            return cls(SqlCacheBackend(sessionmaker))
        return cls()

    make_key = staticmethod(make_cache_key)

    def ttl_seconds(self, ttl_class: TtlClass) -> float:
        cfg = get_settings()
        return {
            TtlClass.SHORT: cfg.CACHE_TTL_SHORT_SECONDS,
            TtlClass.MEDIUM: cfg.CACHE_TTL_MEDIUM_SECONDS,
            TtlClass.LONG: cfg.CACHE_TTL_LONG_SECONDS,
        }[TtlClass(ttl_class)]

    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return a live entry or None; raises CacheUnavailable if the backend fails."""
        try:
            entry = await self._backend.get(key)
        except _BACKEND_ERRORS as e:
            cache_unavailable_total.inc()
            raise CacheUnavailable(str(e)) from e
        if entry is None:
            cache_misses_total.inc()
            return None
        if entry.is_expired(self._clock()):
            cache_misses_total.inc()
            try:
                await self._backend.delete(key)
            except _BACKEND_ERRORS:
                logger.warning("failed to evict expired cache entry %s", key, exc_info=True)
            return None
        cache_hits_total.labels(ttl_class=entry.ttl_class.value).inc()
        return entry

    async def put(self, key: str, payload: Any, ttl_class: TtlClass) -> CacheEntry:
        ttl_class = TtlClass(ttl_class)
        entry = CacheEntry(key=key, payload=payload, expires_at=self._clock() + self.ttl_seconds(ttl_class), ttl_class=ttl_class)
        try:
            await self._backend.put(entry)
        except _BACKEND_ERRORS as e:
            cache_unavailable_total.inc()
            raise CacheUnavailable(str(e)) from e
        return entry

    async def with_single_flight(
        self,
        key: str,
        compute_fn: Callable[[], Awaitable[Any]],
        ttl_class: TtlClass = TtlClass.MEDIUM,
    ) -> Any:
        """Compute ``key`` at most once across concurrent callers and cache the result."""
        existing = self._inflight.get(key)
        if existing is not None:
            cache_single_flight_joins_total.inc()
            return await asyncio.shield(existing)

        fut = asyncio.get_running_loop().create_future()
        self._inflight[key] = fut
        try:
            value = await self._compute_once(key, compute_fn, ttl_class)
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except BaseException as exc:
            fut.set_exception(exc)
            # mark retrieved; joiners still receive it through await
            fut.exception()
            raise
        else:
            fut.set_result(value)
            return value
        finally:
            self._inflight.pop(key, None)

    async def _safe_get(self, key: str) -> Optional[CacheEntry]:
        try:
            return await self.get(key)
        except CacheUnavailable:
            logger.warning("cache unavailable while reading %s; continuing without it", key)
            return None

    async def _safe_put(self, key: str, value: Any, ttl_class: TtlClass) -> None:
        try:
            await self.put(key, value, ttl_class)
        except CacheUnavailable:
            logger.warning("cache unavailable while writing %s; result not cached", key)

    async def _compute_once(self, key: str, compute_fn, ttl_class: TtlClass) -> Any:
        entry = await self._safe_get(key)
        if entry is not None:
            return entry.payload

        if self._lease is None:
            value = await compute_fn()
            await self._safe_put(key, value, ttl_class)
            return value

        cfg = get_settings()
        while True:
            try:
                token = await self._lease.acquire(key, cfg.CACHE_LEASE_TTL_MS)
            except _BACKEND_ERRORS:
                cache_unavailable_total.inc()
                logger.warning("lease backend unavailable for %s; computing without distributed lock", key, exc_info=True)
                value = await compute_fn()
                await self._safe_put(key, value, ttl_class)
                return value

            if token is not None:
                try:
                    entry = await self._safe_get(key)
                    if entry is not None:
                        return entry.payload
                    value = await compute_fn()
                    await self._safe_put(key, value, ttl_class)
                    return value
                finally:
                    try:
                        await self._lease.release(key, token)
                    except _BACKEND_ERRORS:
                        logger.warning("failed to release lease for %s; it will expire by ttl", key, exc_info=True)

            # another process holds the lease: wait for its result or for the lease to lapse
            await asyncio.sleep(cfg.CACHE_LEASE_POLL_SECONDS)
            entry = await self._safe_get(key)
            if entry is not None:
                cache_single_flight_joins_total.inc()
                return entry.payload
