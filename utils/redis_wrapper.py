from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis

from planner_service.config import get_settings
from planner_service.metrics import (
    redis_circuit_opened_total,
    redis_op_calls_total,
    redis_op_errors_total,
    redis_op_retries_total,
    redis_reconnect_attempts,
)

logger = logging.getLogger(__name__)


class RedisUnavailable(Exception):
    pass


class RedisOpFailed(Exception):
    pass


class RedisHandle:
    """Owns one redis.asyncio client with reconnect backoff and a circuit breaker.

    Pass ``client`` to wrap an existing client (tests inject fakes this way);
    such a handle never reconnects on its own.
    """

    def __init__(self, url: Optional[str] = None, client: Any = None):
        self.url = url or get_settings().REDIS_URL
        self._redis = client
        self._static = client is not None
        self._redis_failure_count = 0
        self._redis_circuit_open_until = 0.0

    @property
    def client(self):
        return self._redis

    async def _ensure_redis(self, max_attempts: Optional[int] = None, base_delay: Optional[float] = None) -> None:
        """Ensure self._redis is connected, with exponential backoff on failures.

        Leaves `self._redis` as None and opens the circuit on persistent failure.
        """
        if self._static:
            return
        cfg = get_settings()
        max_attempts = int(max_attempts or cfg.REDIS_RECONNECT_MAX_ATTEMPTS)
        base_delay = float(base_delay or cfg.REDIS_RECONNECT_BASE_DELAY)
        max_delay = float(cfg.REDIS_RECONNECT_MAX_DELAY)
        jitter_ms = int(cfg.REDIS_RECONNECT_JITTER_MS)
        cooldown = float(cfg.REDIS_CIRCUIT_COOLDOWN_SECONDS)

        now = time.time()
        if self._redis_circuit_open_until and now < self._redis_circuit_open_until:
            logger.warning("redis circuit open until %s, skipping reconnect attempts", self._redis_circuit_open_until)
            self._redis = None
            return

        attempts = 0
        while attempts < max_attempts:
            try:
                self._redis = aioredis.from_url(self.url)
                if await self._redis.ping():
                    self._redis_failure_count = 0
                    self._redis_circuit_open_until = 0.0
                    return
                raise RedisUnavailable("ping returned falsy")
            except Exception:
                if self._redis is not None:
                    try:
                        await self._redis.aclose()
                    except Exception:
                        logger.debug("error closing failed redis client", exc_info=True)
                self._redis = None
                attempts += 1
                self._redis_failure_count += 1
                redis_reconnect_attempts.inc()
                delay = min(max_delay, base_delay * (2 ** (attempts - 1)))
                jitter = random.uniform(0, jitter_ms) / 1000.0
                logger.warning("redis connect attempt %d failed, retrying in %.1fs (jitter %.3f)", attempts, delay, jitter)
                await asyncio.sleep(delay + jitter)

        self._redis = None
        self._redis_circuit_open_until = time.time() + cooldown
        logger.error("could not establish redis connection after %d attempts, circuit open for %.1fs", max_attempts, cooldown)

    async def op(self, op_fn: Callable[..., Awaitable[Any]], *op_args, **op_kwargs) -> Any:
        res = await redis_op(self, op_fn, *op_args, **op_kwargs)
        return res["value"]

    async def close(self) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.aclose()
        except Exception:
            logger.exception("error closing redis client")
        self._redis = None


async def redis_op(ctx, op_fn: Callable[..., Awaitable[Any]], *op_args, retries: int = 1, **op_kwargs) -> Any:
    """Execute a redis operation with a single reconnect+retry.

    ctx: a RedisHandle (anything exposing _redis, _ensure_redis and
        _redis_circuit_open_until)
    op_fn: async callable that accepts a redis client and performs the op. Any
        additional positional/keyword args passed to redis_op will be forwarded
        to op_fn after the redis client.
    retries: number of retries after reconnect (default 1)

    Raises:
      RedisUnavailable if redis is not available after ensure step.
      RedisOpFailed if operation fails after retries.
    """
    cfg = get_settings()

    open_until = getattr(ctx, "_redis_circuit_open_until", 0.0)
    if open_until and time.time() < open_until:
        redis_circuit_opened_total.inc()
        logger.warning("redis circuit open, skipping redis op")
        raise RedisUnavailable("redis circuit open")

    redis_op_calls_total.inc()

    if ctx._redis is None:
        await ctx._ensure_redis()
        if ctx._redis is None:
            raise RedisUnavailable("no redis available after ensure")

    attempt = 0
    last_exc = None
    while attempt <= retries:
        attempt += 1
        try:
            res = op_fn(ctx._redis, *op_args, **op_kwargs)
            if asyncio.iscoroutine(res):
                res = await res
            return {"ok": True, "value": res}
        except Exception as e:
            last_exc = e
            redis_op_errors_total.inc()
            logger.exception("redis op failed on attempt %d: %s", attempt, e)
            if attempt > retries:
                break
            redis_op_retries_total.inc()
            await ctx._ensure_redis()
            if ctx._redis is None:
                raise RedisUnavailable("redis unavailable after reconnect")
            await asyncio.sleep(random.uniform(0, cfg.REDIS_RECONNECT_JITTER_MS) / 1000.0)

    raise RedisOpFailed(str(last_exc))
