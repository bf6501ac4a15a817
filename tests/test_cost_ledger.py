import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from planner_service import storage
from planner_service.errors import BudgetExceeded
from planner_service.ledger import CostLedger
from planner_service.models import AgentType, NodeExecution


def _execution(run_id, agent_type, cost, tokens_in=0, tokens_out=0):
    ex = NodeExecution(run_id=run_id, agent_type=agent_type)
    ex.cost_usd = cost
    ex.tokens_in = tokens_in
    ex.tokens_out = tokens_out
    return ex


@pytest.mark.asyncio
async def test_append_is_deduplicated_per_execution():
    ledger = CostLedger()
    ex = _execution("r1", AgentType.WEATHER, 0.02)
    assert await ledger.append(ex) is not None
    assert await ledger.append(ex) is None
    assert len(ledger.entries("r1")) == 1
    assert ledger.total_for_run("r1") == pytest.approx(0.02)


@pytest.mark.asyncio
async def test_totals_per_run_and_per_agent():
    ledger = CostLedger()
    await ledger.append(_execution("r1", AgentType.WEATHER, 0.01))
    await ledger.append(_execution("r1", AgentType.WEATHER, 0.02))
    await ledger.append(_execution("r1", AgentType.BUDGET, 0.05))
    await ledger.append(_execution("r2", AgentType.BUDGET, 1.0))
    assert ledger.total_for_run("r1") == pytest.approx(0.08)
    assert ledger.totals_by_agent("r1") == {"weather": pytest.approx(0.03), "budget": pytest.approx(0.05)}
    assert ledger.total_for_run("missing") == 0


@pytest.mark.asyncio
async def test_persisted_total_matches_memory(db_url):
    engine, sm = await storage.create_engine_and_sessionmaker(db_url)
    await storage.init_models(engine)
    try:
        ledger = CostLedger(sm)
        await ledger.append(_execution("r1", AgentType.LOCATION, 0.003, 100, 20))
        await ledger.append(_execution("r1", AgentType.ACTIVITY, 0.007))
        assert await ledger.persisted_total("r1") == pytest.approx(ledger.total_for_run("r1"))
        by_agent = await storage.sum_ledger_by_agent(sm, "r1")
        assert by_agent == {"location": pytest.approx(0.003), "activity": pytest.approx(0.007)}
    finally:
        await engine.dispose()


def test_disabled_ceiling_allows_everything():
    ledger = CostLedger(policy="hard", ceiling_usd=0)
    assert ledger.enabled is False
    assert ledger.check_budget("r1", 1000.0) is True
    ledger.check_actual("r1")


@pytest.mark.asyncio
async def test_soft_policy_blocks_only_optional_nodes():
    ledger = CostLedger(policy="soft", ceiling_usd=0.10)
    await ledger.append(_execution("r1", AgentType.LOCATION, 0.08))
    assert ledger.check_budget("r1", 0.01, optional=True) is True
    assert ledger.check_budget("r1", 0.05, optional=True) is False
    assert ledger.check_budget("r1", 0.05, optional=False) is True
    # soft never aborts on recorded spend
    await ledger.append(_execution("r1", AgentType.BUDGET, 0.50))
    ledger.check_actual("r1")


@pytest.mark.asyncio
async def test_hard_policy_raises():
    ledger = CostLedger(policy="hard", ceiling_usd=0.10)
    await ledger.append(_execution("r1", AgentType.LOCATION, 0.08))
    with pytest.raises(BudgetExceeded):
        ledger.check_budget("r1", 0.05)
    await ledger.append(_execution("r1", AgentType.WEATHER, 0.05))
    with pytest.raises(BudgetExceeded):
        ledger.check_actual("r1")


def test_unknown_policy_is_rejected():
    with pytest.raises(ValueError):
        CostLedger(policy="lenient")


@pytest.mark.asyncio
async def test_forget_drops_only_that_runs_entries():
    ledger = CostLedger()
    ex = _execution("r1", AgentType.WEATHER, 0.02)
    await ledger.append(ex)
    await ledger.append(_execution("r2", AgentType.BUDGET, 0.05))
    ledger.forget("r1")
    assert ledger.entries("r1") == []
    assert ledger.total_for_run("r2") == pytest.approx(0.05)
    # the execution id is released with the run
    assert await ledger.append(ex) is not None
