"""
Versioned agent graph definitions.

A graph is a set of nodes (one per AgentType) and dependency edges. Edges may
carry a named condition from CONDITIONS, evaluated against the live plan state
when the target becomes ready, and may allow a skipped source so that an
optional branch switched off by a condition does not block a merge node.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import GraphValidationError
from .models import AgentType, TtlClass


def _needs_transport(view: Dict[str, Any]) -> bool:
    return not bool(view.get("request", {}).get("self_guided", False))


def _has_activities(view: Dict[str, Any]) -> bool:
    activity = view.get("outputs", {}).get(AgentType.ACTIVITY.value) or {}
    return bool(activity.get("activities"))


def _multi_destination(view: Dict[str, Any]) -> bool:
    return len(view.get("request", {}).get("destinations") or []) > 1


# Closed registry of edge conditions; graphs reference them by name.
CONDITIONS: Dict[str, Callable[[Dict[str, Any]], bool]] = {
    "always": lambda view: True,
    "needs_transport": _needs_transport,
    "has_activities": _has_activities,
    "multi_destination": _multi_destination,
}


class NodeSpec(BaseModel):
    agent_type: AgentType
    required: bool = True
    ttl_class: Optional[TtlClass] = None
    # projected cost used by the ledger before the node is scheduled
    estimated_cost_usd: float = Field(0.0, ge=0.0)

    model_config = {"frozen": True}


class EdgeSpec(BaseModel):
    source: AgentType
    target: AgentType
    condition: Optional[str] = None
    allow_skipped: bool = False

    model_config = {"frozen": True}

    @field_validator("condition")
    @classmethod
    def _known_condition(cls, v):
        if v is not None and v not in CONDITIONS:
            raise ValueError(f"unknown condition {v!r}")
        return v


class GraphDefinition(BaseModel):
    version: str = Field(..., min_length=1)
    nodes: List[NodeSpec]
    edges: List[EdgeSpec] = Field(default_factory=list)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_structure(self):
        seen: Set[AgentType] = set()
        for node in self.nodes:
            if node.agent_type in seen:
                raise ValueError(f"duplicate node {node.agent_type.value}")
            seen.add(node.agent_type)
        for edge in self.edges:
            for end in (edge.source, edge.target):
                if end not in seen:
                    raise ValueError(f"edge references unknown node {end.value}")
            if edge.source == edge.target:
                raise ValueError(f"self-loop on {edge.source.value}")
        if len(self._kahn_order()) != len(self.nodes):
            raise ValueError("graph contains a cycle")
        return self

    def _kahn_order(self) -> List[AgentType]:
        # ties resolved by declaration order so scheduling is deterministic
        declared = [n.agent_type for n in self.nodes]
        indegree = {t: 0 for t in declared}
        for e in self.edges:
            indegree[e.target] += 1
        order: List[AgentType] = []
        ready = [t for t in declared if indegree[t] == 0]
        while ready:
            current = ready.pop(0)
            order.append(current)
            for e in self.edges:
                if e.source == current:
                    indegree[e.target] -= 1
                    if indegree[e.target] == 0:
                        ready.append(e.target)
            ready.sort(key=declared.index)
        return order

    def topological_order(self) -> List[AgentType]:
        return self._kahn_order()

    def node(self, agent_type: AgentType) -> NodeSpec:
        for n in self.nodes:
            if n.agent_type == agent_type:
                return n
        raise GraphValidationError(f"node {agent_type} not in graph {self.version}")

    def incoming(self, agent_type: AgentType) -> List[EdgeSpec]:
        return [e for e in self.edges if e.target == agent_type]

    def outgoing(self, agent_type: AgentType) -> List[EdgeSpec]:
        return [e for e in self.edges if e.source == agent_type]

    def downstream_of(self, agent_types: Iterable[AgentType]) -> Set[AgentType]:
        """The given agent types plus every node reachable from them."""
        result: Set[AgentType] = set(AgentType(t) for t in agent_types)
        frontier = list(result)
        while frontier:
            current = frontier.pop()
            for e in self.outgoing(current):
                if e.target not in result:
                    result.add(e.target)
                    frontier.append(e.target)
        return result


def parse_graph(data: Dict[str, Any]) -> GraphDefinition:
    try:
        return GraphDefinition.model_validate(data)
    except ValueError as e:
        raise GraphValidationError(str(e)) from e


class GraphRegistry:
    """Graph definitions by version."""

    def __init__(self, graphs: Optional[Iterable[GraphDefinition]] = None):
        self._graphs: Dict[str, GraphDefinition] = {}
        for g in graphs or ():
            self.register(g)

    def register(self, graph: GraphDefinition) -> None:
        if graph.version in self._graphs and self._graphs[graph.version] != graph:
            raise GraphValidationError(f"graph version {graph.version} already registered with a different shape")
        self._graphs[graph.version] = graph

    def get(self, version: str) -> GraphDefinition:
        try:
            return self._graphs[version]
        except KeyError:
            raise GraphValidationError(f"unknown graph version {version!r}") from None

    def versions(self) -> List[str]:
        return sorted(self._graphs)


DEFAULT_GRAPH_VERSION = "travel-v1"


def default_travel_graph() -> GraphDefinition:
    return parse_graph({
        "version": DEFAULT_GRAPH_VERSION,
        "nodes": [
            {"agent_type": "location", "required": True},
            {"agent_type": "weather", "required": False},
            {"agent_type": "accommodation", "required": True},
            {"agent_type": "activity", "required": False},
            {"agent_type": "transport", "required": False},
            {"agent_type": "budget", "required": True},
        ],
        "edges": [
            {"source": "location", "target": "accommodation"},
            {"source": "location", "target": "activity"},
            {"source": "location", "target": "transport", "condition": "needs_transport"},
            {"source": "accommodation", "target": "budget"},
            {"source": "weather", "target": "budget"},
            {"source": "activity", "target": "budget", "allow_skipped": True},
            {"source": "transport", "target": "budget", "allow_skipped": True},
        ],
    })


def default_registry() -> GraphRegistry:
    return GraphRegistry([default_travel_graph()])
