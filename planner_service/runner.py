"""
AgentRunner: one agent invocation with cache, retry, timeout and context.

Order of work for ``invoke``:
  1. derive the cache key from the normalised input;
  2. a live cache entry is returned without calling the agent;
  3. on a miss the capability runs under a per-attempt timeout, collapsed with
     concurrent callers of the same key (single-flight);
  4. only transient failures and timeouts are retried, with exponential
     backoff and jitter, and the cancel token is checked before each retry;
  5. success writes through to the cache and back to the context store.

The NodeExecution handed in is advanced through its states and reported to
``recorder`` after every transition; the orchestrator persists and publishes
from there.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from .agents import AgentCapability, AgentRegistry, AgentRequest, to_agent_type
from .cache import CacheManager, make_cache_key
from .config import get_settings
from .context_store import ContextStore, plan_scope
from .errors import (
    AgentError,
    AgentTimeoutError,
    CacheUnavailable,
    ErrorKind,
    PermanentAgentError,
    RunCancelled,
)
from .metrics import node_duration_seconds, node_executions_total, node_retries_total
from .models import (
    AgentType,
    Budget,
    InvocationMetadata,
    InvocationResult,
    NodeExecution,
    NodeStatus,
    TtlClass,
)

logger = logging.getLogger("planner_service.runner")

Recorder = Callable[[NodeExecution], Awaitable[None]]


class CancelToken:
    """Cooperative cancellation flag shared by a run's coordinator and its node tasks."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.25

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        cfg = get_settings()
        return cls(
            max_attempts=max(1, int(cfg.RETRY_MAX_ATTEMPTS)),
            base_delay=float(cfg.RETRY_BASE_DELAY_SECONDS),
            multiplier=float(cfg.RETRY_MULTIPLIER),
            max_delay=float(cfg.RETRY_MAX_DELAY_SECONDS),
            jitter=float(cfg.RETRY_JITTER_SECONDS),
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        delay = min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return delay


class AgentRunner:
    def __init__(
        self,
        registry: AgentRegistry,
        cache: Optional[CacheManager] = None,
        context_store: Optional[ContextStore] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        embedding_provider: Optional[Callable[[Dict[str, Any]], Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.cache = cache
        self.context_store = context_store
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.embedding_provider = embedding_provider
        self._sleep = sleep
        # (run_id, agent_type, cache_key) -> result already produced in that run
        self._completed: Dict[Tuple[str, str, str], InvocationResult] = {}

    def forget_run(self, run_id: str) -> None:
        for k in [k for k in self._completed if k[0] == run_id]:
            del self._completed[k]

    async def invoke(
        self,
        agent_type: Union[str, AgentType],
        input: Dict[str, Any],
        budget: Optional[Budget] = None,
        *,
        run_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        execution: Optional[NodeExecution] = None,
        cancel_token: Optional[CancelToken] = None,
        recorder: Optional[Recorder] = None,
        ttl_class: Optional[TtlClass] = None,
    ) -> InvocationResult:
        at = to_agent_type(agent_type)
        capability = self.registry.get(at)
        budget = budget or Budget()
        ttl_class = TtlClass(ttl_class) if ttl_class else self.registry.ttl_class_for(at)
        key = self.cache.make_key(at, input) if self.cache is not None else make_cache_key(at, input)

        if execution is None:
            execution = NodeExecution(run_id=run_id or "adhoc", agent_type=at)
        execution.input_snapshot = dict(input)

        idem_key = (execution.run_id, at.value, key)
        previous = self._completed.get(idem_key)
        if previous is not None:
            logger.info("idempotent replay for %s in run %s", at.value, execution.run_id)
            return InvocationResult(output=dict(previous.output), metadata=replace(previous.metadata, idempotent_replay=True, cost_usd=0.0, tokens_in=0, tokens_out=0))

        if cancel_token is not None and cancel_token.cancelled:
            raise RunCancelled(execution.run_id, cancel_token.reason or "cancelled")

        meta = InvocationMetadata(agent_type=at.value, cache_key=key)
        started = time.monotonic()
        execution.transition(NodeStatus.RUNNING)
        await self._record(recorder, execution)

        # cache lookup
        if self.cache is not None:
            try:
                entry = await self.cache.get(key)
            except CacheUnavailable:
                logger.warning("cache unavailable for %s; calling agent directly", at.value)
                meta.cache_degraded = True
                entry = None
            if entry is not None:
                return await self._succeed(execution, meta, entry.payload, started, recorder, cache_hit=True, plan_id=plan_id)

        request = AgentRequest(
            agent_type=at,
            input=dict(input),
            budget=budget,
            run_id=execution.run_id,
            context=await self._read_context(plan_id, input, meta),
        )

        ran = {"value": False}

        async def compute() -> Dict[str, Any]:
            ran["value"] = True
            return await self._call_with_retry(capability, request, execution, budget, cancel_token, recorder)

        try:
            while True:
                try:
                    if self.cache is not None and not meta.cache_degraded:
                        value = await self.cache.with_single_flight(key, compute, ttl_class)
                    else:
                        value = await compute()
                    break
                except RunCancelled:
                    if ran["value"] or (cancel_token is not None and cancel_token.cancelled):
                        raise
                    # the flight we joined belonged to a run that was cancelled; lead our own
                    logger.info("shared call for %s was cancelled by its owner; retrying in run %s", at.value, execution.run_id)
        except RunCancelled:
            execution.skip_reason = "cancelled"
            execution.error_kind = ErrorKind.CANCELLED
            execution.transition(NodeStatus.SKIPPED)
            self._settled(execution, started)
            await self._record(recorder, execution)
            raise
        except AgentError as e:
            execution.error_kind = e.kind
            execution.error = str(e)
            execution.transition(NodeStatus.FAILED)
            self._settled(execution, started)
            await self._record(recorder, execution)
            raise

        meta.attempts = execution.attempt
        return await self._succeed(execution, meta, value, started, recorder, cache_hit=not ran["value"], plan_id=plan_id)

    async def _call_with_retry(
        self,
        capability: AgentCapability,
        request: AgentRequest,
        execution: NodeExecution,
        budget: Budget,
        cancel_token: Optional[CancelToken],
        recorder: Optional[Recorder],
    ) -> Dict[str, Any]:
        policy = self.retry_policy
        timeout = budget.timeout_s or float(get_settings().NODE_TIMEOUT_SECONDS)
        tries = 0
        while True:
            tries += 1
            request.attempt = execution.next_attempt()
            try:
                try:
                    response = await asyncio.wait_for(capability.run(request), timeout)
                except asyncio.TimeoutError as e:
                    raise AgentTimeoutError(f"{request.agent_type.value} timed out after {timeout:.1f}s", agent_type=request.agent_type.value) from e
                except AgentError:
                    raise
                except Exception as e:
                    logger.exception("unexpected error from %s agent", request.agent_type.value)
                    raise PermanentAgentError(str(e), agent_type=request.agent_type.value) from e
            except AgentError as e:
                execution.cost_usd = round(execution.cost_usd + e.cost_usd, 8)
                if not e.retryable or tries >= policy.max_attempts:
                    logger.warning("%s failed on attempt %d (%s), giving up", request.agent_type.value, execution.attempt, e.kind.value)
                    raise
                node_retries_total.labels(agent_type=request.agent_type.value, error_kind=e.kind.value).inc()
                delay = policy.delay_for(tries)
                logger.info("%s attempt %d failed (%s), retrying in %.2fs", request.agent_type.value, execution.attempt, e.kind.value, delay)
                execution.error_kind = e.kind
                execution.error = str(e)
                await self._record(recorder, execution)
                await self._sleep(delay)
                if cancel_token is not None and cancel_token.cancelled:
                    raise RunCancelled(execution.run_id, cancel_token.reason or "cancelled")
                continue

            cost = response.resolved_cost()
            execution.tokens_in += response.tokens_in
            execution.tokens_out += response.tokens_out
            execution.cost_usd = round(execution.cost_usd + cost, 8)
            return {
                "output": response.output,
                "tokens_in": response.tokens_in,
                "tokens_out": response.tokens_out,
                "cost_usd": cost,
                "model": response.model,
            }

    async def _succeed(
        self,
        execution: NodeExecution,
        meta: InvocationMetadata,
        value: Dict[str, Any],
        started: float,
        recorder: Optional[Recorder],
        *,
        cache_hit: bool,
        plan_id: Optional[str],
    ) -> InvocationResult:
        output = dict(value.get("output") or {})
        meta.cache_hit = cache_hit
        meta.model = value.get("model")
        if not cache_hit:
            meta.tokens_in = execution.tokens_in
            meta.tokens_out = execution.tokens_out
        meta.cost_usd = execution.cost_usd
        meta.attempts = execution.attempt
        meta.duration_ms = int((time.monotonic() - started) * 1000)

        execution.cache_hit = cache_hit
        execution.output_snapshot = output
        execution.error_kind = None
        execution.error = None
        execution.transition(NodeStatus.SUCCEEDED)
        self._settled(execution, started)
        await self._record(recorder, execution)

        result = InvocationResult(output=output, metadata=meta)
        self._completed[(execution.run_id, execution.agent_type.value, meta.cache_key)] = result
        if not cache_hit:
            await self._write_context(plan_id, execution, output)
        return result

    def _settled(self, execution: NodeExecution, started: float) -> None:
        node_executions_total.labels(agent_type=execution.agent_type.value, status=execution.status.value).inc()
        node_duration_seconds.labels(agent_type=execution.agent_type.value).observe(time.monotonic() - started)

    async def _record(self, recorder: Optional[Recorder], execution: NodeExecution) -> None:
        if recorder is None:
            return
        try:
            await recorder(execution)
        except Exception:
            logger.exception("failed to record node execution %s", execution.id)

    async def _read_context(self, plan_id: Optional[str], input: Dict[str, Any], meta: InvocationMetadata):
        if self.context_store is None or self.embedding_provider is None or not plan_id:
            return []
        try:
            embedding = self.embedding_provider(input)
            if asyncio.iscoroutine(embedding):
                embedding = await embedding
            records = await self.context_store.search(plan_scope(plan_id), list(embedding))
        except Exception:
            logger.exception("context search failed for plan %s; continuing without context", plan_id)
            return []
        meta.context_records = len(records)
        meta.context_stale = any(r.stale for r in records)
        return [
            {"id": r.id, "content_type": r.content_type, "payload": r.payload, "score": r.score, "stale": r.stale}
            for r in records
        ]

    async def _write_context(self, plan_id: Optional[str], execution: NodeExecution, output: Dict[str, Any]) -> None:
        if self.context_store is None or self.embedding_provider is None or not plan_id:
            return
        try:
            await self.context_store.upsert(
                plan_scope(plan_id),
                {"agent_type": execution.agent_type.value, "output": output},
                self.embedding_provider,
                content_type=execution.agent_type.value,
                source_run_id=execution.run_id,
            )
        except Exception:
            logger.exception("failed to write context for %s in run %s", execution.agent_type.value, execution.run_id)
