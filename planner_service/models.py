"""
Data model for plan runs, node executions, plan state, cache and context records.

PlanRun and NodeExecution are mutable records owned by the orchestrator and the
agent runner; PlanState is only ever changed through ``apply`` with an immutable
StatePatch, and only the run's coordinator calls it.
"""

from __future__ import annotations

import copy
import hashlib
import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .errors import ErrorKind, InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# ============================================================================
# ENUMS
# ============================================================================

class AgentType(str, Enum):
    """Closed set of planning agents the engine can dispatch to."""
    LOCATION = "location"
    ACCOMMODATION = "accommodation"
    ACTIVITY = "activity"
    TRANSPORT = "transport"
    BUDGET = "budget"
    WEATHER = "weather"


class RunStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class TtlClass(str, Enum):
    SHORT = "short"      # volatile data, e.g. weather
    MEDIUM = "medium"
    LONG = "long"        # near-static reference data, e.g. locations


RUN_TERMINAL = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})
NODE_TERMINAL = frozenset({NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED})

_RUN_TRANSITIONS = {
    RunStatus.CREATED: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED},
}

_NODE_TRANSITIONS = {
    NodeStatus.PENDING: {NodeStatus.RUNNING, NodeStatus.SKIPPED, NodeStatus.SUCCEEDED, NodeStatus.FAILED},
    NodeStatus.RUNNING: {NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED},
}


# ============================================================================
# RUNS AND NODE EXECUTIONS
# ============================================================================

@dataclass
class PlanRun:
    plan_id: str
    graph_definition_version: str
    id: str = field(default_factory=new_id)
    status: RunStatus = RunStatus.CREATED
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    degraded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    parent_run_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in RUN_TERMINAL

    def transition(self, new_status: RunStatus, *, error_kind: Optional[ErrorKind] = None, error: Optional[str] = None) -> None:
        """Move the run to ``new_status``; terminal states never change again."""
        allowed = _RUN_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidTransition(f"run {self.id}: {self.status.value} -> {new_status.value}")
        self.status = new_status
        if new_status in RUN_TERMINAL:
            self.completed_at = utcnow()
            self.error_kind = error_kind
            self.error = error

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["error_kind"] = self.error_kind.value if self.error_kind else None
        d["started_at"] = self.started_at.isoformat()
        d["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        return d


@dataclass
class NodeExecution:
    run_id: str
    agent_type: AgentType
    id: str = field(default_factory=new_id)
    attempt: int = 0
    status: NodeStatus = NodeStatus.PENDING
    input_snapshot: Dict[str, Any] = field(default_factory=dict)
    output_snapshot: Optional[Dict[str, Any]] = None
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    degraded: bool = False
    skip_reason: Optional[str] = None
    cache_hit: bool = False
    # completed after cancellation; output was not applied to the plan state
    discarded: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in NODE_TERMINAL

    def transition(self, new_status: NodeStatus) -> None:
        allowed = _NODE_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidTransition(f"node {self.agent_type.value}/{self.id}: {self.status.value} -> {new_status.value}")
        self.status = new_status
        if new_status == NodeStatus.RUNNING:
            self.started_at = utcnow()
        elif new_status in NODE_TERMINAL:
            self.completed_at = utcnow()

    def next_attempt(self) -> int:
        self.attempt += 1
        return self.attempt

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "agent_type": self.agent_type.value,
            "attempt": self.attempt,
            "status": self.status.value,
            "input_snapshot": self.input_snapshot,
            "output_snapshot": self.output_snapshot,
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "cost_usd": self.cost_usd,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
            "degraded": self.degraded,
            "skip_reason": self.skip_reason,
            "cache_hit": self.cache_hit,
            "discarded": self.discarded,
        }


# ============================================================================
# PLAN STATE
# ============================================================================

@dataclass(frozen=True)
class StatePatch:
    """Immutable output of one node, submitted to the coordinator."""
    agent_type: AgentType
    execution_id: str
    output: Dict[str, Any]


@dataclass
class PlanState:
    request: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    version: int = 0
    applied: List[str] = field(default_factory=list)

    def apply(self, patch: StatePatch) -> int:
        self.outputs[patch.agent_type.value] = copy.deepcopy(patch.output)
        self.applied.append(patch.execution_id)
        self.version += 1
        return self.version

    def view(self) -> Dict[str, Any]:
        """Read-only copy handed to conditions and node inputs."""
        return {"request": copy.deepcopy(self.request), "outputs": copy.deepcopy(self.outputs), "version": self.version}

    def fingerprint(self) -> str:
        body = json.dumps({"request": self.request, "outputs": self.outputs}, sort_keys=True, default=str)
        return hashlib.sha256(body.encode()).hexdigest()

    def snapshot(self) -> Dict[str, Any]:
        d = self.view()
        d["applied"] = list(self.applied)
        d["fingerprint"] = self.fingerprint()
        return d


# ============================================================================
# AGENT INVOCATION
# ============================================================================

@dataclass
class Budget:
    """Per-invocation limits handed to a capability."""
    max_cost_usd: Optional[float] = None
    max_tokens: Optional[int] = None
    timeout_s: Optional[float] = None


@dataclass
class InvocationMetadata:
    agent_type: str
    cache_key: str
    attempts: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    model: Optional[str] = None
    cache_hit: bool = False
    cache_degraded: bool = False
    idempotent_replay: bool = False
    context_records: int = 0
    context_stale: bool = False
    duration_ms: int = 0


@dataclass
class InvocationResult:
    output: Dict[str, Any]
    metadata: InvocationMetadata


# ============================================================================
# CACHE AND CONTEXT RECORDS
# ============================================================================

@dataclass
class CacheEntry:
    key: str
    payload: Any
    expires_at: float
    ttl_class: TtlClass

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "payload": self.payload, "expires_at": self.expires_at, "ttl_class": self.ttl_class.value}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CacheEntry":
        return cls(key=d["key"], payload=d["payload"], expires_at=float(d["expires_at"]), ttl_class=TtlClass(d["ttl_class"]))


@dataclass
class ContextRecord:
    scope: str
    payload: Dict[str, Any]
    embedding: List[float] = field(default_factory=list)
    source_run_id: Optional[str] = None
    content_type: str = "note"
    id: str = field(default_factory=new_id)
    version: int = 1
    score: Optional[float] = None
    stale: bool = False


# ============================================================================
# RUN STATE VIEW
# ============================================================================

@dataclass
class RunState:
    """What callers see: the run, partial plan state and degraded/failed nodes."""
    run: PlanRun
    plan_state: Dict[str, Any]
    nodes: Dict[str, Dict[str, Any]]
    degraded: List[str]
    failed: List[str]
    total_cost_usd: float

    @property
    def status(self) -> RunStatus:
        return self.run.status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run": self.run.to_dict(),
            "plan_state": self.plan_state,
            "nodes": self.nodes,
            "degraded": list(self.degraded),
            "failed": list(self.failed),
            "total_cost_usd": self.total_cost_usd,
        }
