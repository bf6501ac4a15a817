"""
Append-only cost ledger.

One entry per NodeExecution that ran; aggregates per run and per agent type.
The ceiling policy comes from configuration: ``soft`` blocks optional nodes
whose projected cost would cross the ceiling, ``hard`` aborts the run with
BudgetExceeded.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from . import storage
from .config import get_settings
from .errors import BudgetExceeded
from .metrics import budget_blocks_total, run_cost_usd_total
from .models import NodeExecution, utcnow

logger = logging.getLogger("planner_service.ledger")

POLICY_SOFT = "soft"
POLICY_HARD = "hard"


@dataclass(frozen=True)
class LedgerEntry:
    run_id: str
    execution_id: str
    agent_type: str
    tokens_in: int
    tokens_out: int
    cost_usd: float
    recorded_at: datetime = field(default_factory=utcnow)


class CostLedger:
    def __init__(self, sessionmaker=None, *, policy: Optional[str] = None, ceiling_usd: Optional[float] = None):
        cfg = get_settings()
        self._sessionmaker = sessionmaker
        self.policy = (policy or cfg.BUDGET_POLICY or POLICY_SOFT).lower()
        if self.policy not in (POLICY_SOFT, POLICY_HARD):
            raise ValueError(f"unknown budget policy {self.policy!r}")
        self.ceiling_usd = float(cfg.BUDGET_CEILING_USD if ceiling_usd is None else ceiling_usd)
        self._entries: Dict[str, List[LedgerEntry]] = {}
        self._seen: set = set()

    @property
    def enabled(self) -> bool:
        return self.ceiling_usd > 0

    async def append(self, execution: NodeExecution) -> Optional[LedgerEntry]:
        """Record the cost of a finished execution; a second append for the same execution is ignored."""
        if execution.id in self._seen:
            return None
        entry = LedgerEntry(
            run_id=execution.run_id,
            execution_id=execution.id,
            agent_type=execution.agent_type.value,
            tokens_in=execution.tokens_in,
            tokens_out=execution.tokens_out,
            cost_usd=float(execution.cost_usd),
        )
        self._seen.add(execution.id)
        self._entries.setdefault(entry.run_id, []).append(entry)
        if entry.cost_usd:
            run_cost_usd_total.labels(agent_type=entry.agent_type).inc(entry.cost_usd)
        if self._sessionmaker is not None:
            await storage.insert_ledger_entry(
                self._sessionmaker,
                run_id=entry.run_id,
                execution_id=entry.execution_id,
                agent_type=entry.agent_type,
                tokens_in=entry.tokens_in,
                tokens_out=entry.tokens_out,
                cost_usd=entry.cost_usd,
            )
        return entry

    def entries(self, run_id: str) -> List[LedgerEntry]:
        return list(self._entries.get(run_id, []))

    def total_for_run(self, run_id: str) -> float:
        return round(sum(e.cost_usd for e in self._entries.get(run_id, [])), 8)

    def totals_by_agent(self, run_id: str) -> Dict[str, float]:
        totals: Dict[str, float] = {}
        for e in self._entries.get(run_id, []):
            totals[e.agent_type] = round(totals.get(e.agent_type, 0.0) + e.cost_usd, 8)
        return totals

    def forget(self, run_id: str) -> None:
        """Drop a finished run's in-memory entries; persisted rows are kept."""
        for entry in self._entries.pop(run_id, []):
            self._seen.discard(entry.execution_id)

    async def persisted_total(self, run_id: str) -> float:
        if self._sessionmaker is None:
            return self.total_for_run(run_id)
        return await storage.sum_ledger(self._sessionmaker, run_id)

    def check_budget(self, run_id: str, projected_usd: float = 0.0, *, optional: bool = False) -> bool:
        """Whether a node with ``projected_usd`` may be scheduled.

        Returns False when the soft policy blocks an optional node. Raises
        BudgetExceeded under the hard policy.
        """
        if not self.enabled:
            return True
        total = self.total_for_run(run_id)
        if total + projected_usd <= self.ceiling_usd:
            return True
        if self.policy == POLICY_HARD:
            budget_blocks_total.labels(policy=POLICY_HARD).inc()
            raise BudgetExceeded(run_id, total + projected_usd, self.ceiling_usd)
        if optional:
            budget_blocks_total.labels(policy=POLICY_SOFT).inc()
            logger.info("soft budget blocks optional node in run %s: %.4f + %.4f > %.4f", run_id, total, projected_usd, self.ceiling_usd)
            return False
        return True

    def check_actual(self, run_id: str) -> None:
        """Raise BudgetExceeded under the hard policy once recorded spend crosses the ceiling."""
        if not self.enabled or self.policy != POLICY_HARD:
            return
        total = self.total_for_run(run_id)
        if total > self.ceiling_usd:
            budget_blocks_total.labels(policy=POLICY_HARD).inc()
            raise BudgetExceeded(run_id, total, self.ceiling_usd)
