"""Prometheus metrics shared by the orchestrator, runner, cache and reconciler."""

from __future__ import annotations
import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from .config import get_settings

logger = logging.getLogger(__name__)


# Runs and nodes
runs_finished_total = Counter("planner_runs_finished_total", "Plan runs reaching a terminal state", ["status"])
node_executions_total = Counter("planner_node_executions_total", "Node executions settled", ["agent_type", "status"])
node_retries_total = Counter("planner_node_retries_total", "Agent invocation retries", ["agent_type", "error_kind"])
node_duration_seconds = Histogram("planner_node_duration_seconds", "Agent invocation wall time", ["agent_type"])
run_cost_usd_total = Counter("planner_run_cost_usd_total", "Accumulated agent cost in USD", ["agent_type"])
budget_blocks_total = Counter("planner_budget_blocks_total", "Nodes blocked or runs aborted by the budget ceiling", ["policy"])

# Cache
cache_hits_total = Counter("planner_cache_hits_total", "Cache hits", ["ttl_class"])
cache_misses_total = Counter("planner_cache_misses_total", "Cache misses")
cache_single_flight_joins_total = Counter("planner_cache_single_flight_joins_total", "Callers that joined an in-flight computation")
cache_unavailable_total = Counter("planner_cache_unavailable_total", "Cache backend failures degraded to direct calls")

# Context outbox
outbox_backlog = Gauge("planner_outbox_backlog", "Pending context outbox entries")
outbox_retries_total = Counter("planner_outbox_retries_total", "Outbox reconciliation retries")
outbox_dead_total = Counter("planner_outbox_dead_total", "Outbox entries dropped after max retries")

# Redis
redis_reconnect_attempts = Counter("planner_redis_reconnect_attempts", "Redis reconnect attempts")
redis_op_errors_total = Counter("planner_redis_op_errors_total", "Redis operation errors")
redis_op_retries_total = Counter("planner_redis_op_retries_total", "Redis operation retries")
redis_circuit_opened_total = Counter("planner_redis_circuit_opened_total", "Redis circuit opened events")
redis_op_calls_total = Counter("planner_redis_op_calls_total", "Redis operation calls")


def start_metrics_server_if_enabled():
    cfg = get_settings()
    try:
        if cfg.METRICS_PORT:
            start_http_server(cfg.METRICS_PORT)
    except OSError:
        logger.exception("failed to start metrics server")
