import asyncio
import os
import sys

import aiohttp
import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from planner_service.agents import AgentRegistry, AgentRequest, HttpAgentCapability, estimate_cost
from planner_service.errors import (
    AgentTimeoutError,
    PermanentAgentError,
    QuotaExceededError,
    TransientAgentError,
    UnknownAgentType,
)
from planner_service.models import AgentType, Budget, TtlClass


class FakeResponse:
    def __init__(self, status, data=None, text=""):
        self.status = status
        self._data = data or {}
        self._text = text

    async def json(self):
        return self._data

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.closed = False
        self.posts = []

    def post(self, url, headers=None, json=None, timeout=None):
        self.posts.append({"url": url, "headers": headers, "json": json})
        if self.error is not None:
            raise self.error
        return self.response

    async def close(self):
        self.closed = True


def _request():
    return AgentRequest(agent_type=AgentType.WEATHER, input={"city": "Lisbon"}, budget=Budget(timeout_s=2.0))


@pytest.mark.asyncio
async def test_http_capability_parses_usage_and_sends_auth():
    session = FakeSession(FakeResponse(200, {
        "output": {"temp": 24},
        "usage": {"prompt_tokens": 120, "completion_tokens": 30},
        "model": "gpt-4o-mini",
    }))
    cap = HttpAgentCapability(AgentType.WEATHER, "http://agents.local/weather", api_key="k", session=session)
    response = await cap.run(_request())
    assert response.output == {"temp": 24}
    assert response.tokens_in == 120
    assert response.resolved_cost() == pytest.approx(estimate_cost("gpt-4o-mini", 120, 30))
    assert session.posts[0]["headers"]["Authorization"] == "Bearer k"
    assert session.posts[0]["json"]["input"] == {"city": "Lisbon"}
    # injected sessions belong to the caller
    await cap.close()
    assert session.closed is False


@pytest.mark.asyncio
@pytest.mark.parametrize("status,error", [
    (429, QuotaExceededError),
    (503, TransientAgentError),
    (400, PermanentAgentError),
])
async def test_http_status_maps_to_error_kind(status, error):
    cap = HttpAgentCapability(AgentType.WEATHER, "http://agents.local/weather", session=FakeSession(FakeResponse(status, text="nope")))
    with pytest.raises(error):
        await cap.run(_request())


@pytest.mark.asyncio
@pytest.mark.parametrize("exc,error", [
    (asyncio.TimeoutError(), AgentTimeoutError),
    (aiohttp.ClientConnectionError("reset"), TransientAgentError),
])
async def test_transport_failures_map_to_error_kind(exc, error):
    cap = HttpAgentCapability(AgentType.WEATHER, "http://agents.local/weather", session=FakeSession(error=exc))
    with pytest.raises(error):
        await cap.run(_request())


def test_registry_is_closed_over_agent_types():
    registry = AgentRegistry(ttl_classes={"location": "short"})
    with pytest.raises(UnknownAgentType):
        registry.register("spaceship", object())
    with pytest.raises(UnknownAgentType):
        registry.get(AgentType.BUDGET)
    assert registry.ttl_class_for("location") == TtlClass.SHORT
    assert registry.ttl_class_for("weather") == TtlClass.SHORT
    assert registry.ttl_class_for("budget") == TtlClass.MEDIUM


def test_estimate_cost_unknown_model_is_free():
    assert estimate_cost("mystery", 1000, 1000) == 0.0
    assert estimate_cost("gpt-4o", 1_000_000, 0) == pytest.approx(2.5)
