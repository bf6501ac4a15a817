import asyncio
import json
import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from planner_service.events import EventDeduplicator, EventPublisher
from planner_service.models import AgentType, NodeExecution, NodeStatus, PlanRun, RunStatus
from utils.redis_wrapper import RedisHandle


class FakeStreamRedis:
    def __init__(self, fail=False):
        self.streams = {}
        self.fail = fail

    async def xadd(self, key, fields):
        if self.fail:
            raise ConnectionError("redis gone")
        self.streams.setdefault(key, []).append(fields)
        return f"{len(self.streams[key])}-0"


@pytest.mark.asyncio
async def test_late_subscriber_gets_replay_and_terminal_ends_stream():
    pub = EventPublisher()
    run = PlanRun(plan_id="p1", graph_definition_version="travel-v1")
    run.transition(RunStatus.RUNNING)
    await pub.publish_run(run)
    node = NodeExecution(run_id=run.id, agent_type=AgentType.LOCATION)
    node.transition(NodeStatus.RUNNING)
    await pub.publish_node(node)

    sub = pub.subscribe(run.id)
    run.transition(RunStatus.COMPLETED)
    await pub.publish_run(run)

    events = await sub.collect(timeout=1)
    assert [e.event_type for e in events] == ["run.running", "node.running", "run.completed"]
    assert [e.sequence for e in events] == [1, 2, 3]
    assert events[-1].terminal is True


@pytest.mark.asyncio
async def test_live_subscriber_receives_events_in_order():
    pub = EventPublisher()
    sub = pub.subscribe("r1", replay=False)
    received = []

    async def consume():
        async for event in sub:
            received.append(event.event_type)

    consumer = asyncio.create_task(consume())
    await pub.publish("r1", "node.running", {})
    await pub.publish("r1", "node.succeeded", {})
    await pub.publish("r1", "run.completed", {}, terminal=True)
    await asyncio.wait_for(consumer, timeout=1)
    assert received == ["node.running", "node.succeeded", "run.completed"]


@pytest.mark.asyncio
async def test_publish_after_terminal_is_dropped_and_subscribe_after_close_ends():
    pub = EventPublisher()
    await pub.publish("r1", "run.failed", {}, terminal=True)
    assert await pub.publish("r1", "node.succeeded", {}) is None
    events = await pub.subscribe("r1").collect(timeout=1)
    assert [e.event_type for e in events] == ["run.failed"]


@pytest.mark.asyncio
async def test_replay_buffer_is_bounded():
    pub = EventPublisher(replay_limit=2)
    for i in range(4):
        await pub.publish("r1", f"tick.{i}", {})
    assert [e.event_type for e in pub.history("r1")] == ["tick.2", "tick.3"]


@pytest.mark.asyncio
async def test_deduplicator_drops_redelivered_events():
    pub = EventPublisher()
    first = await pub.publish("r1", "node.running", {})
    second = await pub.publish("r1", "node.succeeded", {})
    dedup = EventDeduplicator(capacity=10)
    assert dedup.filter([first, second, first, second]) == [first, second]


@pytest.mark.asyncio
async def test_events_are_mirrored_to_redis_stream(fast_settings, monkeypatch):
    monkeypatch.setattr(fast_settings, "REDIS_EVENTS_ENABLED", True)
    fake = FakeStreamRedis()
    pub = EventPublisher(RedisHandle(client=fake))
    event = await pub.publish("r9", "node.running", {"agent_type": "weather"})
    key = fast_settings.REDIS_EVENTS_PREFIX + "r9"
    [fields] = fake.streams[key]
    assert fields["id"] == event.id
    assert json.loads(fields["data"]) == {"agent_type": "weather"}


@pytest.mark.asyncio
async def test_mirror_failure_does_not_break_local_delivery(fast_settings, monkeypatch):
    monkeypatch.setattr(fast_settings, "REDIS_EVENTS_ENABLED", True)
    pub = EventPublisher(RedisHandle(client=FakeStreamRedis(fail=True)))
    await pub.publish("r1", "node.running", {})
    assert len(pub.history("r1")) == 1


@pytest.mark.asyncio
async def test_drop_forgets_history_and_ends_open_subscriptions():
    pub = EventPublisher()
    await pub.publish("r1", "run.running", {})
    sub = pub.subscribe("r1")
    pub.drop("r1")
    events = await sub.collect(timeout=1)
    assert [e.event_type for e in events] == ["run.running"]
    assert pub.history("r1") == []
