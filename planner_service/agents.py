"""
Agent capabilities and the registry that dispatches AgentType to them.

Every planning agent (location, accommodation, ...) is a capability with a
single async ``run(request) -> AgentResponse``. The registry is closed over
AgentType: registering or resolving anything else raises UnknownAgentType.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiohttp

from .config import get_settings
from .errors import (
    AgentTimeoutError,
    PermanentAgentError,
    QuotaExceededError,
    TransientAgentError,
    UnknownAgentType,
)
from .models import AgentType, Budget, TtlClass

logger = logging.getLogger("planner_service.agents")


# USD per token
MODEL_RATES: Dict[str, Dict[str, float]] = {
    "gpt-4o-mini": {"input": 0.15 / 1_000_000.0, "output": 0.60 / 1_000_000.0},
    "gpt-4o": {"input": 2.50 / 1_000_000.0, "output": 10.00 / 1_000_000.0},
    "o4-mini": {"input": 1.10 / 1_000_000.0, "output": 4.40 / 1_000_000.0},
}


def estimate_cost(model: Optional[str], tokens_in: int, tokens_out: int) -> float:
    rates = MODEL_RATES.get(model or "")
    if not rates:
        return 0.0
    return round(tokens_in * rates["input"] + tokens_out * rates["output"], 8)


DEFAULT_TTL_CLASSES: Dict[AgentType, TtlClass] = {
    AgentType.WEATHER: TtlClass.SHORT,
    AgentType.LOCATION: TtlClass.LONG,
    AgentType.ACCOMMODATION: TtlClass.MEDIUM,
    AgentType.ACTIVITY: TtlClass.MEDIUM,
    AgentType.TRANSPORT: TtlClass.MEDIUM,
    AgentType.BUDGET: TtlClass.MEDIUM,
}


def to_agent_type(value: Union[str, AgentType]) -> AgentType:
    try:
        return AgentType(value)
    except ValueError:
        raise UnknownAgentType(f"unknown agent type {value!r}") from None


@dataclass
class AgentRequest:
    agent_type: AgentType
    input: Dict[str, Any]
    context: List[Dict[str, Any]] = field(default_factory=list)
    budget: Budget = field(default_factory=Budget)
    run_id: Optional[str] = None
    attempt: int = 1


@dataclass
class AgentResponse:
    output: Dict[str, Any]
    tokens_in: int = 0
    tokens_out: int = 0
    # None means derive from MODEL_RATES
    cost_usd: Optional[float] = None
    model: Optional[str] = None

    def resolved_cost(self) -> float:
        if self.cost_usd is not None:
            return float(self.cost_usd)
        return estimate_cost(self.model, self.tokens_in, self.tokens_out)


class AgentCapability:
    """Base class for an external planning agent."""

    async def run(self, request: AgentRequest) -> AgentResponse:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class FunctionCapability(AgentCapability):
    """Adapts an async callable; a plain dict result is wrapped as the output."""

    def __init__(self, fn: Callable[[AgentRequest], Awaitable[Any]], model: Optional[str] = None):
        self._fn = fn
        self._model = model

    async def run(self, request: AgentRequest) -> AgentResponse:
        result = await self._fn(request)
        if isinstance(result, AgentResponse):
            return result
        return AgentResponse(output=dict(result or {}), model=self._model)


class HttpAgentCapability(AgentCapability):
    """Calls a remote agent endpoint over HTTP and maps failures to the error taxonomy.

    The endpoint receives ``{"agent_type", "input", "context", "budget"}`` and
    answers ``{"output", "usage": {"prompt_tokens", "completion_tokens"}, "model", "cost_usd"}``.
    """

    def __init__(self, agent_type: AgentType, url: str, api_key: Optional[str] = None, session: Optional[aiohttp.ClientSession] = None):
        self.agent_type = to_agent_type(agent_type)
        self.url = url
        self.api_key = api_key
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self):
        self._get_session()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self._owns_session = True
        return self.session

    async def close(self) -> None:
        if self._owns_session and self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None

    async def run(self, request: AgentRequest) -> AgentResponse:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "agent_type": self.agent_type.value,
            "input": request.input,
            "context": request.context,
            "budget": {"max_cost_usd": request.budget.max_cost_usd, "max_tokens": request.budget.max_tokens},
        }
        timeout = aiohttp.ClientTimeout(total=request.budget.timeout_s) if request.budget.timeout_s else None
        session = self._get_session()
        try:
            async with session.post(self.url, headers=headers, json=payload, timeout=timeout) as resp:
                if resp.status == 200:
                    data = await resp.json()
                    usage = data.get("usage") or {}
                    return AgentResponse(
                        output=data.get("output") or {},
                        tokens_in=int(usage.get("prompt_tokens", 0)),
                        tokens_out=int(usage.get("completion_tokens", 0)),
                        cost_usd=data.get("cost_usd"),
                        model=data.get("model"),
                    )
                body = await resp.text()
                logger.error("%s agent error: %s %s", self.agent_type.value, resp.status, body[:200])
                if resp.status == 429:
                    raise QuotaExceededError(f"quota exceeded ({resp.status})", agent_type=self.agent_type.value)
                if resp.status >= 500:
                    raise TransientAgentError(f"upstream error {resp.status}", agent_type=self.agent_type.value)
                raise PermanentAgentError(f"rejected request {resp.status}: {body[:200]}", agent_type=self.agent_type.value)
        except asyncio.TimeoutError as e:
            raise AgentTimeoutError(f"{self.agent_type.value} agent timed out", agent_type=self.agent_type.value) from e
        except aiohttp.ClientError as e:
            logger.warning("%s agent request failed: %s", self.agent_type.value, e)
            raise TransientAgentError(str(e), agent_type=self.agent_type.value) from e


class AgentRegistry:
    """Maps each AgentType to the capability that serves it."""

    def __init__(self, capabilities: Optional[Dict[Union[str, AgentType], AgentCapability]] = None, ttl_classes: Optional[Dict[AgentType, TtlClass]] = None):
        self._capabilities: Dict[AgentType, AgentCapability] = {}
        self._ttl_classes = dict(DEFAULT_TTL_CLASSES)
        if ttl_classes:
            self._ttl_classes.update({to_agent_type(k): TtlClass(v) for k, v in ttl_classes.items()})
        for agent_type, capability in (capabilities or {}).items():
            self.register(agent_type, capability)

    @classmethod
    def from_settings(cls) -> "AgentRegistry":
        """HTTP capabilities for every agent type under AGENT_BASE_URL; empty when unset."""
        cfg = get_settings()
        registry = cls()
        base = cfg.AGENT_BASE_URL.rstrip("/")
        if not base:
            logger.warning("AGENT_BASE_URL not set; no agent capabilities registered")
            return registry
        for agent_type in AgentType:
            registry.register(agent_type, HttpAgentCapability(agent_type, f"{base}/{agent_type.value}", api_key=cfg.AGENT_API_KEY or None))
        return registry

    def register(self, agent_type: Union[str, AgentType], capability: AgentCapability) -> None:
        self._capabilities[to_agent_type(agent_type)] = capability

    def get(self, agent_type: Union[str, AgentType]) -> AgentCapability:
        at = to_agent_type(agent_type)
        try:
            return self._capabilities[at]
        except KeyError:
            raise UnknownAgentType(f"no capability registered for {at.value}") from None

    def ttl_class_for(self, agent_type: Union[str, AgentType]) -> TtlClass:
        return self._ttl_classes.get(to_agent_type(agent_type), TtlClass.MEDIUM)

    def registered(self) -> List[AgentType]:
        return [t for t in AgentType if t in self._capabilities]

    async def close(self) -> None:
        for capability in self._capabilities.values():
            try:
                await capability.close()
            except Exception:
                logger.exception("error closing capability")
