"""
PlanOrchestrator: runs an agent graph for a travel plan.

Each run gets one coordinator task that alone owns the run's PlanState. Node
tasks call the AgentRunner and report back over an asyncio.Queue; the
coordinator applies their patches one at a time in completion order, decides
which nodes are ready next (in the graph's topological order, so the same
inputs always schedule the same way) and settles the run:

  - a required node failing after retries fails the run;
  - an optional node failing is recorded as degraded and merges proceed;
  - cancellation stops new nodes from starting, lets running calls finish,
    discards their results and settles the run as Cancelled;
  - the wall-clock budget cancels the run when exceeded.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Optional, Set, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from utils.redis_wrapper import RedisHandle

from . import storage
from .agents import AgentRegistry, to_agent_type
from .cache import CacheManager
from .config import get_settings
from .context_store import ChromaSimilarityIndex, ContextReconciler, ContextStore
from .errors import (
    BudgetExceeded,
    ErrorKind,
    PlannerError,
    RunCancelled,
    RunNotFound,
    classify_exception,
)
from .events import EventPublisher, Subscription
from .graph import CONDITIONS, EdgeSpec, GraphDefinition, GraphRegistry, default_registry
from .ledger import CostLedger
from .metrics import runs_finished_total, start_metrics_server_if_enabled
from .models import (
    AgentType,
    Budget,
    InvocationResult,
    NodeExecution,
    NodeStatus,
    PlanRun,
    PlanState,
    RunState,
    RunStatus,
    StatePatch,
)
from .runner import AgentRunner, CancelToken

logger = logging.getLogger("planner_service.orchestrator")

_WAKE = object()

CANCEL_USER = "cancelled"
CANCEL_WALL_CLOCK = "wall_clock"
CANCEL_FAILURE = "failure"
CANCEL_SHUTDOWN = "shutdown"


@dataclass
class _RunContext:
    run: PlanRun
    graph: GraphDefinition
    state: PlanState
    token: CancelToken
    semaphore: asyncio.Semaphore
    executions: Dict[AgentType, NodeExecution] = field(default_factory=dict)
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    # nodes the coordinator has resolved; dependents wait on this, not on status
    settled: Set[AgentType] = field(default_factory=set)
    # (error kind, message) once the run is going to fail
    failure: Optional[Tuple[ErrorKind, str]] = None


class PlanOrchestrator:
    def __init__(
        self,
        runner: AgentRunner,
        *,
        graphs: Optional[GraphRegistry] = None,
        ledger: Optional[CostLedger] = None,
        publisher: Optional[EventPublisher] = None,
        sessionmaker=None,
        engine=None,
        reconciler: Optional[ContextReconciler] = None,
        redis_handle: Optional[RedisHandle] = None,
    ):
        cfg = get_settings()
        self.runner = runner
        self.graphs = graphs or default_registry()
        self.ledger = ledger or CostLedger(sessionmaker)
        self.publisher = publisher or EventPublisher(redis_handle)
        self.reconciler = reconciler
        self._sessionmaker = sessionmaker
        self._engine = engine
        self._redis = redis_handle
        self._global_semaphore = asyncio.Semaphore(max(1, int(cfg.GLOBAL_MAX_CONCURRENCY)))
        self._runs: Dict[str, _RunContext] = {}
        self._finished: Deque[str] = deque()
        self._retention = max(1, int(cfg.RUN_RETENTION_COUNT))

    @property
    def sessionmaker(self):
        return self._sessionmaker

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------

    async def start(self, plan_id: str, graph_definition_version: str, initial_input: Dict[str, Any]) -> str:
        """Create a run and start its coordinator; returns the run id."""
        graph = self.graphs.get(graph_definition_version)
        if not isinstance(initial_input, dict):
            raise PlannerError("initial_input must be a mapping")
        run = PlanRun(plan_id=plan_id, graph_definition_version=graph.version)
        ctx = self._new_context(run, graph, PlanState(request=dict(initial_input)))
        for spec in graph.nodes:
            ctx.executions[spec.agent_type] = NodeExecution(run_id=run.id, agent_type=spec.agent_type)
        await self._launch(ctx)
        return run.id

    async def retrigger(self, run_id: str, agent_types: Iterable[Union[str, AgentType]]) -> str:
        """Start a new run seeded with a finished run's state, re-executing only
        ``agent_types`` and whatever depends on them."""
        parent = self._context(run_id)
        if not parent.run.is_terminal:
            raise PlannerError(f"run {run_id} is still {parent.run.status.value}")
        targets = [to_agent_type(t) for t in agent_types]
        rerun = parent.graph.downstream_of(targets)

        run = PlanRun(plan_id=parent.run.plan_id, graph_definition_version=parent.graph.version, parent_run_id=parent.run.id)
        state = PlanState(request=dict(parent.state.request))
        ctx = self._new_context(run, parent.graph, state)
        for spec in parent.graph.nodes:
            at = spec.agent_type
            execution = NodeExecution(run_id=run.id, agent_type=at)
            previous = parent.executions.get(at)
            if at not in rerun and previous is not None and self._reusable(previous):
                self._carry_over(ctx, execution, previous)
            ctx.executions[at] = execution
        await self._launch(ctx)
        logger.info("run %s retriggers %s from run %s", run.id, sorted(t.value for t in rerun), run_id)
        return run.id

    async def cancel(self, run_id: str, reason: str = CANCEL_USER) -> RunState:
        ctx = self._context(run_id)
        if not ctx.run.is_terminal:
            logger.info("cancel requested for run %s: %s", run_id, reason)
            ctx.token.cancel(reason)
            ctx.queue.put_nowait(_WAKE)
        return self._run_state(ctx)

    async def get_run_state(self, run_id: str) -> RunState:
        ctx = self._runs.get(run_id)
        if ctx is not None:
            return self._run_state(ctx)
        return await self._stored_run_state(run_id)

    def subscribe(self, run_id: str) -> Subscription:
        self._context(run_id)
        return self.publisher.subscribe(run_id)

    async def wait(self, run_id: str, timeout: Optional[float] = None) -> RunState:
        ctx = self._runs.get(run_id)
        if ctx is None:
            return await self._stored_run_state(run_id)
        await asyncio.wait_for(ctx.done.wait(), timeout)
        return self._run_state(ctx)

    async def close(self, timeout: float = 5.0) -> None:
        for ctx in self._runs.values():
            if not ctx.run.is_terminal:
                ctx.token.cancel(CANCEL_SHUTDOWN)
                ctx.queue.put_nowait(_WAKE)
        tasks = [ctx.task for ctx in self._runs.values() if ctx.task is not None and not ctx.task.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            for task in pending:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.exception("error stopping run coordinator")
        if self.reconciler is not None:
            await self.reconciler.stop()
        try:
            await self.runner.registry.close()
        except Exception:
            logger.exception("error closing agent capabilities")
        if self._redis is not None:
            await self._redis.close()
        if self._engine is not None:
            await self._engine.dispose()

    # ------------------------------------------------------------------
    # run bookkeeping
    # ------------------------------------------------------------------

    def _context(self, run_id: str) -> _RunContext:
        try:
            return self._runs[run_id]
        except KeyError:
            raise RunNotFound(run_id) from None

    def _new_context(self, run: PlanRun, graph: GraphDefinition, state: PlanState) -> _RunContext:
        cfg = get_settings()
        return _RunContext(
            run=run,
            graph=graph,
            state=state,
            token=CancelToken(),
            semaphore=asyncio.Semaphore(max(1, int(cfg.RUN_MAX_CONCURRENCY))),
        )

    @staticmethod
    def _reusable(previous: NodeExecution) -> bool:
        # anything cancelled, skipped or failed on a required path runs again
        if previous.discarded:
            return False
        if previous.status == NodeStatus.SUCCEEDED:
            return True
        return previous.status == NodeStatus.FAILED and previous.degraded

    def _carry_over(self, ctx: _RunContext, execution: NodeExecution, previous: NodeExecution) -> None:
        execution.status = previous.status
        execution.output_snapshot = previous.output_snapshot
        execution.error_kind = previous.error_kind
        execution.error = previous.error
        execution.degraded = previous.degraded
        execution.skip_reason = previous.skip_reason
        if previous.status == NodeStatus.SUCCEEDED and previous.output_snapshot is not None:
            ctx.state.apply(StatePatch(previous.agent_type, execution.id, previous.output_snapshot))
        self._mark_outcome(ctx, execution)
        ctx.settled.add(execution.agent_type)

    async def _launch(self, ctx: _RunContext) -> None:
        self._runs[ctx.run.id] = ctx
        await self._persist_run(ctx.run)
        await self.publisher.publish_run(ctx.run)
        ctx.task = asyncio.create_task(self._coordinate(ctx))

    def _run_state(self, ctx: _RunContext) -> RunState:
        return RunState(
            run=ctx.run,
            plan_state=ctx.state.snapshot(),
            nodes={at.value: ex.to_dict() for at, ex in ctx.executions.items()},
            degraded=list(ctx.run.degraded),
            failed=list(ctx.run.failed),
            total_cost_usd=self.ledger.total_for_run(ctx.run.id),
        )

    async def _stored_run_state(self, run_id: str) -> RunState:
        if self._sessionmaker is None:
            raise RunNotFound(run_id)
        run = await storage.get_plan_run(self._sessionmaker, run_id)
        if run is None:
            raise RunNotFound(run_id)
        executions = await storage.get_node_executions(self._sessionmaker, run_id)
        outputs = {
            ex.agent_type.value: ex.output_snapshot
            for ex in executions
            if ex.status == NodeStatus.SUCCEEDED and not ex.discarded and ex.output_snapshot is not None
        }
        return RunState(
            run=run,
            plan_state={"request": {}, "outputs": outputs, "version": len(outputs), "applied": []},
            nodes={ex.agent_type.value: ex.to_dict() for ex in executions},
            degraded=list(run.degraded),
            failed=list(run.failed),
            total_cost_usd=round(sum(ex.cost_usd for ex in executions), 8),
        )

    async def _persist_run(self, run: PlanRun) -> None:
        if self._sessionmaker is None:
            return
        try:
            await storage.save_plan_run(self._sessionmaker, run)
        except SQLAlchemyError:
            logger.exception("failed to persist run %s", run.id)

    async def _persist_node(self, execution: NodeExecution) -> None:
        if self._sessionmaker is None:
            return
        try:
            await storage.save_node_execution(self._sessionmaker, execution)
        except SQLAlchemyError:
            logger.exception("failed to persist node execution %s", execution.id)

    async def _record_node(self, execution: NodeExecution) -> None:
        await self._persist_node(execution)
        await self.publisher.publish_node(execution)

    async def _annotate_node(self, execution: NodeExecution, event_type: str) -> None:
        await self._persist_node(execution)
        await self.publisher.publish(execution.run_id, event_type, execution.to_dict())

    def _mark_outcome(self, ctx: _RunContext, execution: NodeExecution) -> None:
        name = execution.agent_type.value
        if execution.status == NodeStatus.FAILED and name not in ctx.run.failed:
            ctx.run.failed.append(name)
        if execution.degraded and name not in ctx.run.degraded:
            ctx.run.degraded.append(name)

    # ------------------------------------------------------------------
    # coordinator
    # ------------------------------------------------------------------

    async def _coordinate(self, ctx: _RunContext) -> None:
        run = ctx.run
        loop = asyncio.get_running_loop()
        deadline = loop.time() + float(get_settings().RUN_WALL_CLOCK_SECONDS)
        running: Dict[AgentType, asyncio.Task] = {}
        try:
            run.transition(RunStatus.RUNNING)
            await self._persist_run(run)
            await self.publisher.publish_run(run)

            while True:
                if ctx.token.cancelled:
                    await self._skip_pending(ctx, running)
                else:
                    try:
                        await self._schedule(ctx, running)
                    except BudgetExceeded as e:
                        logger.warning("run %s aborted: %s", run.id, e)
                        self._fail(ctx, ErrorKind.BUDGET_EXCEEDED, str(e))
                        continue

                if not running:
                    break

                timeout = None
                if not ctx.token.cancelled:
                    timeout = max(0.0, deadline - loop.time())
                try:
                    item = await asyncio.wait_for(ctx.queue.get(), timeout)
                except asyncio.TimeoutError:
                    logger.warning("run %s exceeded its wall-clock budget", run.id)
                    ctx.token.cancel(CANCEL_WALL_CLOCK)
                    continue
                if item is _WAKE:
                    continue
                at, result, exc = item
                running.pop(at, None)
                await self._on_completion(ctx, at, result, exc)

            await self._settle(ctx)
        except asyncio.CancelledError:
            for task in running.values():
                task.cancel()
            if not run.is_terminal:
                run.transition(RunStatus.CANCELLED, error_kind=ErrorKind.CANCELLED, error=CANCEL_SHUTDOWN)
                await self._persist_run(run)
                await self.publisher.publish_run(run)
            raise
        except Exception as e:
            logger.exception("coordinator for run %s crashed", run.id)
            for task in running.values():
                task.cancel()
            if not run.is_terminal:
                run.transition(RunStatus.FAILED, error_kind=ErrorKind.PERMANENT, error=str(e))
                runs_finished_total.labels(status=run.status.value).inc()
                await self._persist_run(run)
                await self.publisher.publish_run(run)
        finally:
            self.runner.forget_run(run.id)
            ctx.done.set()
            self._retire(run.id)

    def _retire(self, run_id: str) -> None:
        """Keep the newest RUN_RETENTION_COUNT finished runs in memory; evict the rest."""
        self._finished.append(run_id)
        while len(self._finished) > self._retention:
            old = self._finished.popleft()
            self._runs.pop(old, None)
            self.publisher.drop(old)
            self.ledger.forget(old)
            logger.debug("evicted finished run %s", old)

    def _fail(self, ctx: _RunContext, kind: ErrorKind, message: str) -> None:
        if ctx.failure is None:
            ctx.failure = (kind, message)
        ctx.token.cancel(CANCEL_FAILURE)

    async def _schedule(self, ctx: _RunContext, running: Dict[AgentType, asyncio.Task]) -> None:
        """Start or skip every pending node whose predecessors are all settled."""
        graph = ctx.graph
        for at in graph.topological_order():
            execution = ctx.executions[at]
            if execution.status != NodeStatus.PENDING or at in running:
                continue
            incoming = graph.incoming(at)
            if not all(e.source in ctx.settled for e in incoming):
                continue

            skip_reason = self._skip_reason(ctx, incoming)
            if skip_reason is not None:
                execution.skip_reason = skip_reason
                execution.transition(NodeStatus.SKIPPED)
                ctx.settled.add(at)
                await self._record_node(execution)
                continue

            spec = graph.node(at)
            if not self.ledger.check_budget(ctx.run.id, spec.estimated_cost_usd, optional=not spec.required):
                execution.skip_reason = "budget"
                execution.degraded = True
                execution.transition(NodeStatus.SKIPPED)
                self._mark_outcome(ctx, execution)
                ctx.settled.add(at)
                await self._record_node(execution)
                continue

            running[at] = asyncio.create_task(self._run_node(ctx, at, execution))

    def _skip_reason(self, ctx: _RunContext, incoming: List[EdgeSpec]) -> Optional[str]:
        for edge in incoming:
            source = ctx.executions[edge.source]
            if source.status == NodeStatus.SKIPPED and not source.degraded and not edge.allow_skipped:
                return f"upstream_skipped:{edge.source.value}"
        view = None
        for edge in incoming:
            if edge.condition is None:
                continue
            if view is None:
                view = ctx.state.view()
            if not CONDITIONS[edge.condition](view):
                return f"condition:{edge.condition}"
        return None

    def _node_input(self, ctx: _RunContext, at: AgentType) -> Dict[str, Any]:
        upstream = {}
        for edge in ctx.graph.incoming(at):
            output = ctx.state.outputs.get(edge.source.value)
            if output is not None:
                upstream[edge.source.value] = output
        return {"request": ctx.state.request, "upstream": upstream}

    async def _run_node(self, ctx: _RunContext, at: AgentType, execution: NodeExecution) -> None:
        spec = ctx.graph.node(at)
        budget = Budget(timeout_s=float(get_settings().NODE_TIMEOUT_SECONDS))
        if self.ledger.enabled:
            budget.max_cost_usd = max(0.0, self.ledger.ceiling_usd - self.ledger.total_for_run(ctx.run.id))
        try:
            async with self._global_semaphore:
                async with ctx.semaphore:
                    result = await self.runner.invoke(
                        at,
                        self._node_input(ctx, at),
                        budget,
                        run_id=ctx.run.id,
                        plan_id=ctx.run.plan_id,
                        execution=execution,
                        cancel_token=ctx.token,
                        recorder=self._record_node,
                        ttl_class=spec.ttl_class,
                    )
        except Exception as e:
            ctx.queue.put_nowait((at, None, e))
        else:
            ctx.queue.put_nowait((at, result, None))

    async def _on_completion(self, ctx: _RunContext, at: AgentType, result: Optional[InvocationResult], exc: Optional[BaseException]) -> None:
        try:
            await self._resolve(ctx, at, result, exc)
        finally:
            ctx.settled.add(at)

    async def _resolve(self, ctx: _RunContext, at: AgentType, result: Optional[InvocationResult], exc: Optional[BaseException]) -> None:
        execution = ctx.executions[at]
        spec = ctx.graph.node(at)

        if execution.status == NodeStatus.PENDING and ctx.token.cancelled:
            # never started: cancelled while waiting for a slot
            execution.skip_reason = ctx.token.reason or "cancelled"
            execution.transition(NodeStatus.SKIPPED)
            await self._record_node(execution)
            return
        if execution.status in (NodeStatus.PENDING, NodeStatus.RUNNING):
            # the runner did not settle it, e.g. no capability registered
            execution.error_kind = classify_exception(exc) if exc is not None else ErrorKind.PERMANENT
            execution.error = str(exc) if exc is not None else "no result"
            execution.transition(NodeStatus.FAILED)
            await self._record_node(execution)

        try:
            await self.ledger.append(execution)
        except SQLAlchemyError:
            logger.exception("failed to persist ledger entry for %s", execution.id)

        if exc is None and result is not None:
            if ctx.token.cancelled:
                execution.discarded = True
                await self._annotate_node(execution, "node.discarded")
            else:
                ctx.state.apply(StatePatch(at, execution.id, result.output))
        elif isinstance(exc, RunCancelled) and ctx.token.cancelled:
            pass
        elif isinstance(exc, RunCancelled):
            # stopped by a cancellation that is not this run's
            logger.warning("node %s in run %s was cancelled from outside the run", at.value, ctx.run.id)
            if spec.required:
                self._fail(ctx, ErrorKind.PERMANENT, f"{at.value}: cancelled outside the run")
                if at.value not in ctx.run.failed:
                    ctx.run.failed.append(at.value)
            else:
                execution.degraded = True
                await self._annotate_node(execution, "node.degraded")
                self._mark_outcome(ctx, execution)
        else:
            kind = execution.error_kind or classify_exception(exc)
            if spec.required and ctx.token.cancelled and ctx.failure is None:
                logger.info("required node %s failed in cancelled run %s", at.value, ctx.run.id)
            elif spec.required:
                logger.warning("required node %s failed in run %s: %s", at.value, ctx.run.id, exc)
                self._fail(ctx, kind, f"{at.value}: {exc}")
            else:
                logger.info("optional node %s failed in run %s, continuing degraded", at.value, ctx.run.id)
                execution.degraded = True
                await self._annotate_node(execution, "node.degraded")
            self._mark_outcome(ctx, execution)

        try:
            self.ledger.check_actual(ctx.run.id)
        except BudgetExceeded as e:
            logger.warning("run %s aborted: %s", ctx.run.id, e)
            self._fail(ctx, ErrorKind.BUDGET_EXCEEDED, str(e))

    async def _skip_pending(self, ctx: _RunContext, running: Dict[AgentType, asyncio.Task]) -> None:
        reason = ctx.token.reason or "cancelled"
        for at in ctx.graph.topological_order():
            execution = ctx.executions[at]
            if execution.status == NodeStatus.PENDING and at not in running:
                execution.skip_reason = reason
                execution.transition(NodeStatus.SKIPPED)
                ctx.settled.add(at)
                await self._record_node(execution)

    def _skipped_by_condition(self, ctx: _RunContext, at: AgentType) -> bool:
        reason = ctx.executions[at].skip_reason or ""
        if reason.startswith("condition:"):
            return True
        if reason.startswith("upstream_skipped:"):
            return self._skipped_by_condition(ctx, AgentType(reason.split(":", 1)[1]))
        return False

    async def _settle(self, ctx: _RunContext) -> None:
        run = ctx.run
        if ctx.failure is None and not ctx.token.cancelled:
            # a required node may only be missing because a condition excluded it
            for spec in ctx.graph.nodes:
                execution = ctx.executions[spec.agent_type]
                if spec.required and execution.status == NodeStatus.SKIPPED and not self._skipped_by_condition(ctx, spec.agent_type):
                    name = spec.agent_type.value
                    if name not in run.failed:
                        run.failed.append(name)
                    if ctx.failure is None:
                        ctx.failure = (ErrorKind.PERMANENT, f"required node {name} skipped: {execution.skip_reason}")
        if ctx.failure is not None:
            kind, message = ctx.failure
            run.transition(RunStatus.FAILED, error_kind=kind, error=message)
        elif ctx.token.cancelled:
            run.transition(RunStatus.CANCELLED, error_kind=ErrorKind.CANCELLED, error=ctx.token.reason)
        else:
            run.transition(RunStatus.COMPLETED)
        runs_finished_total.labels(status=run.status.value).inc()
        logger.info("run %s %s (degraded=%s failed=%s cost=%.4f)", run.id, run.status.value, run.degraded, run.failed, self.ledger.total_for_run(run.id))
        await self._persist_run(run)
        await self.publisher.publish_run(run)


async def build_orchestrator(
    registry: AgentRegistry,
    *,
    dsn: Optional[str] = None,
    graphs: Optional[GraphRegistry] = None,
    embedding_provider=None,
    redis_handle: Optional[RedisHandle] = None,
    start_reconciler: bool = True,
) -> PlanOrchestrator:
    """Wire storage, cache, context store, runner, ledger and events into an orchestrator."""
    engine, sm = await storage.create_engine_and_sessionmaker(dsn)
    await storage.init_models(engine)
    cache = CacheManager.from_settings(sm, redis_handle)
    context_store = ContextStore(sm, ChromaSimilarityIndex())
    reconciler = ContextReconciler(context_store)
    runner = AgentRunner(registry, cache, context_store, embedding_provider=embedding_provider)
    orchestrator = PlanOrchestrator(
        runner,
        graphs=graphs,
        ledger=CostLedger(sm),
        publisher=EventPublisher(redis_handle),
        sessionmaker=sm,
        engine=engine,
        reconciler=reconciler,
        redis_handle=redis_handle,
    )
    if start_reconciler and embedding_provider is not None:
        reconciler.start()
    start_metrics_server_if_enabled()
    logger.info("Orchestrator setup complete")
    return orchestrator
