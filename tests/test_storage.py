import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from planner_service import storage as st
from planner_service.errors import ErrorKind
from planner_service.models import AgentType, ContextRecord, NodeExecution, NodeStatus, PlanRun, RunStatus

pytestmark = pytest.mark.asyncio


async def _db(db_url):
    engine, sessionmaker = await st.create_engine_and_sessionmaker(db_url)
    await st.init_models(engine)
    return engine, sessionmaker


async def test_plan_run_round_trip_and_update(db_url):
    engine, sm = await _db(db_url)
    try:
        run = PlanRun(plan_id="plan-1", graph_definition_version="travel-v1")
        await st.save_plan_run(sm, run)
        run.transition(RunStatus.RUNNING)
        run.degraded.append("weather")
        run.failed.append("weather")
        run.transition(RunStatus.FAILED, error_kind=ErrorKind.PERMANENT, error="budget: bad")
        await st.save_plan_run(sm, run)

        got = await st.get_plan_run(sm, run.id)
        assert got.status == RunStatus.FAILED
        assert got.error_kind == ErrorKind.PERMANENT
        assert got.degraded == ["weather"]
        assert got.failed == ["weather"]
        assert await st.get_plan_run(sm, "missing") is None
    finally:
        await engine.dispose()


async def test_node_executions_are_upserted(db_url):
    engine, sm = await _db(db_url)
    try:
        ex = NodeExecution(run_id="r1", agent_type=AgentType.LOCATION)
        ex.transition(NodeStatus.RUNNING)
        await st.save_node_execution(sm, ex)
        ex.cost_usd = 0.25
        ex.output_snapshot = {"city": "Lisbon"}
        ex.transition(NodeStatus.SUCCEEDED)
        await st.save_node_execution(sm, ex)
        other = NodeExecution(run_id="r1", agent_type=AgentType.WEATHER, cost_usd=0.05)
        other.transition(NodeStatus.SKIPPED)
        await st.save_node_execution(sm, other)

        rows = await st.get_node_executions(sm, "r1")
        assert [r.agent_type for r in rows] == [AgentType.LOCATION, AgentType.WEATHER]
        assert rows[0].status == NodeStatus.SUCCEEDED
        assert rows[0].output_snapshot == {"city": "Lisbon"}
        assert await st.sum_node_execution_cost(sm, "r1") == pytest.approx(0.30)
    finally:
        await engine.dispose()


async def test_context_fact_versions_and_outbox_rows(db_url):
    engine, sm = await _db(db_url)
    try:
        rec = ContextRecord(scope="plan:p1", payload={"a": 1}, embedding=[0.1, 0.2], id="f1")
        first = await st.write_context_fact(sm, rec, searchable=True)
        assert first.version == 1
        second = await st.write_context_fact(sm, ContextRecord(scope="plan:p1", payload={"a": 2}, embedding=[0.3, 0.4], id="f1"), searchable=True)
        assert second.version == 2

        due = await st.fetch_due_outbox(sm, now=0.0)
        assert [(d["fact_id"], d["fact_version"]) for d in due] == [("f1", 1), ("f1", 2)]
        assert due[1]["embedding"] == [0.3, 0.4]

        await st.mark_outbox_done(sm, due[0]["id"])
        await st.reschedule_outbox(sm, due[1]["id"], 1, 50.0, "boom")
        assert await st.fetch_due_outbox(sm, now=10.0) == []
        assert len(await st.fetch_due_outbox(sm, now=50.0)) == 1
        await st.reschedule_outbox(sm, due[1]["id"], 2, 60.0, "boom", dead=True)
        assert await st.count_outbox(sm, "dead") == 1
        assert await st.count_outbox(sm, "done") == 1

        facts = await st.find_context_facts(sm, "plan:p1")
        assert [f.payload for f in facts] == [{"a": 2}]
    finally:
        await engine.dispose()


async def test_cache_entries(db_url):
    engine, sm = await _db(db_url)
    try:
        await st.put_cache_entry(sm, "k", {"v": 1}, 123.0, "short")
        got = await st.get_cache_entry(sm, "k")
        assert got["payload"] == {"v": 1}
        assert got["expires_at"] == 123.0
        await st.delete_cache_entry(sm, "k")
        assert await st.get_cache_entry(sm, "k") is None
    finally:
        await engine.dispose()


async def test_ledger_sums(db_url):
    engine, sm = await _db(db_url)
    try:
        for agent, cost in [("weather", 0.1), ("weather", 0.2), ("budget", 0.05)]:
            await st.insert_ledger_entry(sm, run_id="r1", execution_id=agent + str(cost), agent_type=agent, tokens_in=1, tokens_out=1, cost_usd=cost)
        assert await st.sum_ledger(sm, "r1") == pytest.approx(0.35)
        assert await st.sum_ledger(sm, "r2") == 0.0
        assert await st.sum_ledger_by_agent(sm, "r1") == {"weather": pytest.approx(0.3), "budget": pytest.approx(0.05)}
    finally:
        await engine.dispose()
